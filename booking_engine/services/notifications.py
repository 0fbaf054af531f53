"""
Customer / dispatcher notifications.

SMS goes through ServiceM8's platform SMS service; job notes are posted as
job activity records so the office can see what was sent.
"""

import logging
import re
from typing import Any, Protocol

import httpx

from booking_engine.config import settings
from booking_engine.services.servicem8 import Directory, auth_headers

logger = logging.getLogger(__name__)

_AU_LOCAL_MOBILE = re.compile(r"^04\d{8}$")
_AU_E164_MOBILE = re.compile(r"^\+614\d{8}$")
_AU_INTL_MOBILE = re.compile(r"^614\d{8}$")


def normalize_mobile(value: str | None) -> str | None:
    """Australian mobile -> E.164 (+614XXXXXXXX), or None if it isn't one."""
    if not value:
        return None
    trimmed = value.strip()
    digits = re.sub(r"\D", "", trimmed)
    normalized = f"+{digits}" if trimmed.startswith("+") else digits

    if _AU_LOCAL_MOBILE.match(normalized):
        return f"+61{normalized[1:]}"
    if _AU_E164_MOBILE.match(normalized):
        return normalized
    if _AU_INTL_MOBILE.match(normalized):
        return f"+{normalized}"
    return None


class SmsSendError(Exception):
    def __init__(self, status: int | None, body: Any):
        self.status = status
        self.body = body
        super().__init__(f"ServiceM8 SMS failed: HTTP {status}")


class SmsSender(Protocol):
    async def send_sms(
        self, tenant_id: str, to_mobile: str, message: str, related_job_id: str | None = None
    ) -> None: ...


class ServiceM8SmsSender:
    def __init__(
        self,
        base_url: str | None = None,
        *,
        api_key: str | None = None,
        access_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.servicem8_sms_base_url).rstrip("/")
        self.headers = {"Content-Type": "application/json"}
        self.headers.update(
            auth_headers(
                api_key if api_key is not None else settings.servicem8_api_key,
                access_token if access_token is not None else settings.servicem8_access_token,
            )
        )
        self._transport = transport

    async def send_sms(
        self, tenant_id: str, to_mobile: str, message: str, related_job_id: str | None = None
    ) -> None:
        body: dict[str, Any] = {"to": to_mobile, "message": message}
        if related_job_id:
            body["regardingJobUUID"] = related_job_id

        async with httpx.AsyncClient(
            timeout=settings.servicem8_timeout_seconds, transport=self._transport
        ) as client:
            try:
                resp = await client.post(
                    f"{self.base_url}/platform_service_sms", headers=self.headers, json=body
                )
            except httpx.HTTPError as e:
                raise SmsSendError(None, str(e)) from e

        if resp.is_error:
            raise SmsSendError(resp.status_code, resp.text)
        logger.info("SMS sent tenant_id=%s related_job_id=%s", tenant_id, related_job_id)


async def append_job_note(directory: Directory, job_id: str, note: str) -> None:
    await directory.post("/jobactivity.json", {"job_uuid": job_id, "type": "note", "note": note})
