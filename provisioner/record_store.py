import uuid
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite

from .db import json_dumps, json_loads, utc_now
from .errors import RecordNotFound
from .schemas import ExecutionRecord

# Record field -> (column, is_json)
_COLUMNS = {
    "client": ("client", False),
    "criteria": ("criteria_json", True),
    "status": ("status", False),
    "provider_task_id": ("provider_task_id", False),
    "provider_table_id": ("provider_table_id", False),
    "provider_workbook_id": ("provider_workbook_id", False),
    "provider_source_id": ("provider_source_id", False),
    "match_count": ("match_count", False),
    "table_name": ("table_name", False),
    "raw_response": ("raw_response_json", True),
    "error_message": ("error_message", False),
    "submitted_at": ("submitted_at", False),
}

_SELECT = (
    "SELECT id, client, criteria_json, status, provider_task_id, provider_table_id, provider_workbook_id, "
    "provider_source_id, match_count, table_name, raw_response_json, error_message, submitted_at, "
    "created_at, updated_at FROM execution_records"
)


def _row_to_record(row: aiosqlite.Row) -> ExecutionRecord:
    return ExecutionRecord(
        id=row["id"],
        client=row["client"],
        criteria=json_loads(row["criteria_json"], {}),
        status=row["status"],
        provider_task_id=row["provider_task_id"],
        provider_table_id=row["provider_table_id"],
        provider_workbook_id=row["provider_workbook_id"],
        provider_source_id=row["provider_source_id"],
        match_count=row["match_count"],
        table_name=row["table_name"],
        raw_response=json_loads(row["raw_response_json"], None),
        error_message=row["error_message"],
        submitted_at=row["submitted_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _assignments(fields: Dict[str, Any]) -> tuple:
    columns: List[str] = []
    params: List[Any] = []
    for key, value in fields.items():
        if key not in _COLUMNS:
            raise KeyError(f"Unknown execution record field: {key}")
        column, is_json = _COLUMNS[key]
        columns.append(column)
        params.append(json_dumps(value) if is_json and value is not None else value)
    return columns, params


class ExecutionRecordStore:
    """Durable execution records, one per submitted configuration."""

    def __init__(self, path: str):
        self.path = path

    async def create(
        self,
        client: str,
        criteria: Dict[str, Any],
        *,
        record_id: Optional[str] = None,
        table_name: Optional[str] = None,
        status: str = "pending_review",
    ) -> str:
        record_id = record_id or str(uuid.uuid4())
        created_at = utc_now()
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT INTO execution_records(id, client, criteria_json, status, table_name, created_at, updated_at) "
                "VALUES (?,?,?,?,?,?,?)",
                (record_id, client, json_dumps(criteria or {}), status, table_name, created_at, created_at),
            )
            await db.commit()
        return record_id

    async def get(self, record_id: str) -> Optional[ExecutionRecord]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(f"{_SELECT} WHERE id=?", (record_id,))
            row = await cursor.fetchone()
            await cursor.close()
        return _row_to_record(row) if row else None

    async def require(self, record_id: str) -> ExecutionRecord:
        record = await self.get(record_id)
        if record is None:
            raise RecordNotFound(record_id)
        return record

    async def upsert(self, record_id: str, fields: Dict[str, Any]) -> None:
        """Last-write-wins update; inserts the row when it does not exist yet."""
        if not fields:
            return
        columns, params = _assignments(fields)
        now = utc_now()
        async with aiosqlite.connect(self.path) as db:
            assignments = ", ".join(f"{column}=?" for column in columns)
            cursor = await db.execute(
                f"UPDATE execution_records SET {assignments}, updated_at=? WHERE id=?",
                (*params, now, record_id),
            )
            if cursor.rowcount == 0:
                insert_fields = {"client": "", "criteria": {}, "status": "pending_review", **fields}
                columns, params = _assignments(insert_fields)
                placeholders = ",".join("?" for _ in range(len(columns) + 3))
                await db.execute(
                    f"INSERT INTO execution_records(id, {', '.join(columns)}, created_at, updated_at) "
                    f"VALUES ({placeholders})",
                    (record_id, *params, now, now),
                )
            await cursor.close()
            await db.commit()

    async def compare_and_set_status(
        self,
        record_id: str,
        expected: Iterable[str],
        new_status: str,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Move ``status`` to ``new_status`` only if it is currently one of ``expected``."""
        expected = list(expected)
        columns, params = _assignments(dict(fields or {}))
        assignments = "".join(f", {column}=?" for column in columns)
        placeholders = ",".join("?" for _ in expected)
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                f"UPDATE execution_records SET status=?{assignments}, updated_at=? "
                f"WHERE id=? AND status IN ({placeholders})",
                (new_status, *params, utc_now(), record_id, *expected),
            )
            changed = cursor.rowcount > 0
            await cursor.close()
            await db.commit()
        return changed

    async def approve(self, record_id: str) -> bool:
        return await self.compare_and_set_status(record_id, ["pending_review"], "approved")

    async def reset_for_retry(self, record_id: str) -> bool:
        # Keeps provider_task_id so a retry can skip an already successful preview.
        return await self.compare_and_set_status(
            record_id, ["failed"], "approved", {"error_message": None}
        )

    async def list(
        self,
        client: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[ExecutionRecord]:
        clauses: List[str] = []
        params: List[Any] = []
        if client:
            clauses.append("client=?")
            params.append(client)
        if status:
            clauses.append("status=?")
            params.append(status)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                f"{_SELECT}{where} ORDER BY created_at DESC LIMIT ?",
                (*params, limit),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [_row_to_record(row) for row in rows]
