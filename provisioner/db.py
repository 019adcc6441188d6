import json
from datetime import datetime, timezone
from typing import Any, Optional

import aiosqlite


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        return default


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS execution_records(
                    id TEXT PRIMARY KEY,
                    client TEXT NOT NULL,
                    criteria_json TEXT NOT NULL DEFAULT '{}',
                    status TEXT NOT NULL DEFAULT 'pending_review',
                    provider_task_id TEXT,
                    provider_table_id TEXT,
                    provider_workbook_id TEXT,
                    provider_source_id TEXT,
                    match_count INTEGER,
                    table_name TEXT,
                    raw_response_json TEXT,
                    error_message TEXT,
                    submitted_at TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_execution_records_client ON execution_records(client);
                CREATE INDEX IF NOT EXISTS idx_execution_records_status ON execution_records(status);
                CREATE TABLE IF NOT EXISTS provider_sessions(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_cookie TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS plan_runs(
                    run_id TEXT PRIMARY KEY,
                    status TEXT,
                    fail_fast INTEGER DEFAULT 0,
                    plan_json TEXT,
                    created_at TEXT,
                    updated_at TEXT,
                    finished_at TEXT
                );
                CREATE TABLE IF NOT EXISTS plan_run_steps(
                    run_id TEXT,
                    step_order INTEGER,
                    state TEXT,
                    outcome_json TEXT,
                    updated_at TEXT,
                    PRIMARY KEY (run_id, step_order)
                );
                """
            )
            await db.commit()
