import uuid
from typing import Any, Dict, Optional

import aiosqlite

from .db import json_dumps, json_loads, utc_now
from .schemas import StepOutcome


class PlanRunStore:
    """Persist plan runs and the latest outcome of each of their steps."""

    def __init__(self, path: str):
        self.path = path

    async def create(self, plan: Dict[str, Any], *, fail_fast: bool = False, run_id: Optional[str] = None) -> str:
        run_id = run_id or str(uuid.uuid4())
        now = utc_now()
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT INTO plan_runs(run_id, status, fail_fast, plan_json, created_at, updated_at) "
                "VALUES (?,?,?,?,?,?)",
                (run_id, "running", 1 if fail_fast else 0, json_dumps(plan), now, now),
            )
            await db.commit()
        return run_id

    async def save_outcome(self, run_id: str, outcome: StepOutcome) -> None:
        now = utc_now()
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO plan_run_steps(run_id, step_order, state, outcome_json, updated_at) "
                "VALUES (?,?,?,?,?)",
                (run_id, outcome.order, outcome.state, json_dumps(outcome.model_dump()), now),
            )
            await db.execute("UPDATE plan_runs SET updated_at=? WHERE run_id=?", (now, run_id))
            await db.commit()

    async def finish(self, run_id: str, status: str) -> None:
        now = utc_now()
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "UPDATE plan_runs SET status=?, updated_at=?, finished_at=? WHERE run_id=?",
                (status, now, now, run_id),
            )
            await db.commit()

    async def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT run_id, status, fail_fast, plan_json, created_at, updated_at, finished_at "
                "FROM plan_runs WHERE run_id=?",
                (run_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
            if not row:
                return None
            cursor = await db.execute(
                "SELECT outcome_json FROM plan_run_steps WHERE run_id=? ORDER BY step_order",
                (run_id,),
            )
            steps = await cursor.fetchall()
            await cursor.close()
        return {
            "run_id": row["run_id"],
            "status": row["status"],
            "fail_fast": bool(row["fail_fast"]),
            "plan": json_loads(row["plan_json"], {}),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "finished_at": row["finished_at"],
            "steps": [json_loads(step["outcome_json"], {}) for step in steps],
        }
