import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple

from provisioner.errors import ProviderError
from provisioner.provider import (
    CreateTableResult,
    PopulateResult,
    PreviewResult,
    ProviderResponse,
    normalize_operation,
)

BASE_URL = "https://api.provider.test/v3"
WORKSPACE_ID = "ws_test"
SESSION = "claysession=test-session"


def make_response(status_code: int = 200, body: Any = None, method: str = "POST", path: str = "/") -> ProviderResponse:
    text = body if isinstance(body, str) else json.dumps(body if body is not None else {})
    parsed = None if isinstance(body, str) else body
    return ProviderResponse(method=method, path=path, status_code=status_code, text=text, body=parsed)


class FakeProviderClient:
    """In-memory stand-in for ProviderClient that records every call."""

    def __init__(
        self,
        *,
        task_id: Optional[str] = "task_1",
        match_count: int = 10,
        table_id: str = "tbl_1",
        workbook_id: Optional[str] = "wb_1",
        source_id: Optional[str] = "src_1",
        populate_status: int = 200,
        delay_seconds: float = 0.0,
    ) -> None:
        self.base_url = BASE_URL
        self.workspace_id = WORKSPACE_ID
        self.request_timeout = 30.0
        self.create_timeout = 120.0
        self.populate_timeout = 30.0
        self.task_id = task_id
        self.match_count = match_count
        self.table_id = table_id
        self.workbook_id = workbook_id
        self.source_id = source_id
        self.populate_status = populate_status
        self.delay_seconds = delay_seconds
        self.calls: List[Tuple[Any, ...]] = []
        self.timeouts: Dict[str, Optional[float]] = {}
        # path -> (status, body) for generic operations
        self.operations: Dict[str, Tuple[int, Any]] = {}
        # call name or operation path -> exception raised instead of responding
        self.errors: Dict[str, Exception] = {}
        self.create_started = asyncio.Event()
        self.create_gate: Optional[asyncio.Event] = None
        # call name -> event the call waits on before responding
        self.gates: Dict[str, asyncio.Event] = {}
        self.entered: Dict[str, asyncio.Event] = {}
        self.active = 0
        self.max_active = 0
        self.closed = False

    def names(self) -> List[str]:
        return [call[0] for call in self.calls]

    async def wait_entered(self, name: str) -> None:
        await self.entered.setdefault(name, asyncio.Event()).wait()

    async def _enter(self, name: str) -> None:
        self.entered.setdefault(name, asyncio.Event()).set()
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        error = self.errors.get(name)
        if error is not None:
            raise error
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

    async def preview(self, criteria: Dict[str, Any], *, timeout: Optional[float] = None) -> PreviewResult:
        self.calls.append(("preview", criteria))
        self.timeouts["preview"] = timeout
        await self._enter("preview")
        body = {"taskId": self.task_id, "matchCount": self.match_count}
        return PreviewResult(
            task_id=self.task_id,
            match_count=self.match_count,
            response=make_response(200, body, path="/actions/run-enrichment"),
        )

    async def create_table(
        self,
        criteria: Dict[str, Any],
        task_id: str,
        field_template: Optional[List[Dict[str, Any]]] = None,
        *,
        session_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CreateTableResult:
        self.calls.append(("create_table", task_id))
        self.timeouts["create_table"] = timeout
        self.create_started.set()
        if self.create_gate is not None:
            await self.create_gate.wait()
        await self._enter("create_table")
        body = {"table": {"tableId": self.table_id}, "workbookId": self.workbook_id}
        if self.source_id:
            body["sourceId"] = self.source_id
        return CreateTableResult(
            table_id=self.table_id,
            workbook_id=self.workbook_id,
            source_id=self.source_id,
            records_imported=None,
            response=make_response(200, body, path=f"/workspaces/{WORKSPACE_ID}/wizard/evaluate-step"),
        )

    async def _populate(self, name: str, path: str, timeout: Optional[float]) -> PopulateResult:
        self.calls.append((name, path))
        self.timeouts[name] = timeout
        await self._enter(name)
        resp = make_response(self.populate_status, {"ok": self.populate_status < 300}, path=path)
        return PopulateResult(ok=resp.ok, response=resp)

    async def populate(self, table_id: str, source_id: Optional[str] = None, *, timeout: Optional[float] = None):
        return await self._populate("populate", f"/tables/{table_id}/bulk-fetch-records", timeout)

    async def run_source(self, source_id: str, *, timeout: Optional[float] = None):
        return await self._populate("run_source", f"/sources/{source_id}/run", timeout)

    async def run_table_source(self, table_id: str, source_id: str, *, timeout: Optional[float] = None):
        return await self._populate("run_table_source", f"/tables/{table_id}/sources/{source_id}/run", timeout)

    async def fetch_table_source(self, table_id: str, source_id: str, *, timeout: Optional[float] = None):
        return await self._populate("fetch_table_source", f"/tables/{table_id}/sources/{source_id}/fetch", timeout)

    async def call_operation(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        phase: str,
        timeout: Optional[float] = None,
    ) -> ProviderResponse:
        method, path = normalize_operation(method, path, self.base_url)
        self.calls.append(("call_operation", method, path, payload))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await self._enter(path)
            status, body = self.operations.get(path, (200, {}))
        finally:
            self.active -= 1
        resp = make_response(status, body, method=method, path=path)
        if not resp.ok:
            raise ProviderError(phase, status, resp.text)
        return resp

    async def close(self) -> None:
        self.closed = True
