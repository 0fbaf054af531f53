"""
Migration: bring an existing database up to the current booking schema.

init_db() creates missing tables on startup but never alters existing ones.
Run this ONCE against a database created by an earlier version:
    python migrate.py

It is safe to run multiple times — uses IF NOT EXISTS logic.
"""

import asyncio
import os
from dotenv import load_dotenv  # pip install python-dotenv  (only needed to run this script)

load_dotenv()  # reads your .env file

import asyncpg

COLUMNS = [
    # (table, column, definition)
    ("tool_run", "error_code", "VARCHAR(64) DEFAULT NULL"),
    ("tenant_config", "cutoff_today_afternoon", "VARCHAR(5) NOT NULL DEFAULT '14:30'"),
    ("allocation_window_map", "raw_windows_json", "JSONB DEFAULT NULL"),
    ("overrun_monitor_state", "tenant_id", "VARCHAR(64) DEFAULT NULL"),
    ("overrun_monitor_state", "thirty_away_sent_at", "TIMESTAMPTZ DEFAULT NULL"),
    ("overrun_monitor_state", "delay_sms_sent_at", "TIMESTAMPTZ DEFAULT NULL"),
    ("overrun_sms_event", "target_allocation_id", "VARCHAR(64) DEFAULT NULL"),
]


async def migrate():
    conn = await asyncpg.connect(
        host=os.environ["DB_HOST"],
        port=int(os.environ.get("DB_PORT", 5432)),
        database=os.environ["DB_NAME"],
        user=os.environ["DB_USER"],
        password=os.environ["DB_PASSWORD"],
    )

    print("Connected to database. Running migration...")

    for table, column, definition in COLUMNS:
        await conn.execute(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {column} {definition};")
        print(f"  ✓ Column '{table}.{column}' ensured.")

    # Metrics are tenant-scoped
    await conn.execute("""
        CREATE INDEX IF NOT EXISTS ix_overrun_monitor_state_tenant_id
        ON overrun_monitor_state (tenant_id);
    """)
    print("  ✓ Index 'ix_overrun_monitor_state_tenant_id' ensured.")

    await conn.close()
    print("\nMigration complete. You can now restart your FastAPI server.")


if __name__ == "__main__":
    asyncio.run(migrate())
