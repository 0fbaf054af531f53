"""Operational event logging and the recent-failure debug ring."""

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any


def log_ops_event(logger: logging.Logger, event: str, **fields: Any) -> None:
    """One greppable line per operational event: event=NAME key=value ..."""
    parts = " ".join(f"{key}={value}" for key, value in fields.items() if value is not None)
    logger.info("event=%s %s", event, parts)


class DebugRing:
    """Bounded in-memory list of recent entries, newest last."""

    def __init__(self, size: int = 50):
        self._entries: deque[dict[str, Any]] = deque(maxlen=size)

    def push(self, entry: dict[str, Any]) -> None:
        self._entries.append({"at": datetime.now(timezone.utc).isoformat(), **entry})

    def snapshot(self) -> list[dict[str, Any]]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
