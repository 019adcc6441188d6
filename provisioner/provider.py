import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .credentials import CredentialProvider
from .errors import ConfigurationError, CredentialError, ProviderError
from .extraction import (
    MATCH_COUNT_RULES,
    RECORD_COUNT_RULES,
    SOURCE_ID_RULES,
    TABLE_ID_RULES,
    TASK_ID_RULES,
    WORKBOOK_ID_RULES,
    extract_first,
)
from .templates import BASIC_FIELDS, build_preview_payload, build_wizard_payload

logger = logging.getLogger("uvicorn.error")

_METHOD_PREFIX = re.compile(r"^(GET|POST|PUT|PATCH|DELETE)\s+", re.IGNORECASE)
_ABSOLUTE_URL = re.compile(r"^https?://[^/]+(/v\d+)?", re.IGNORECASE)
_BODYLESS = {"GET", "HEAD"}
_LOG_BODY_LIMIT = 1000


@dataclass
class ProviderResponse:
    method: str
    path: str
    status_code: int
    text: str
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def audit_body(self) -> Any:
        """Parsed JSON when available, otherwise the verbatim response text."""
        return self.body if self.body is not None else self.text


@dataclass
class PreviewResult:
    task_id: Optional[str]
    match_count: int
    response: ProviderResponse


@dataclass
class CreateTableResult:
    table_id: str
    workbook_id: Optional[str]
    source_id: Optional[str]
    records_imported: Optional[int]
    response: ProviderResponse


@dataclass
class PopulateResult:
    ok: bool
    response: ProviderResponse


def normalize_operation(method: str, path: str, base_url: str = "") -> tuple:
    """Clean up planner-supplied endpoints: ``"POST https://host/v3/x"`` -> ``("POST", "/x")``."""
    method = (method or "POST").upper()
    path = (path or "").strip()
    match = _METHOD_PREFIX.match(path)
    if match:
        method = match.group(1).upper()
        path = path[match.end():]
    base = base_url.rstrip("/")
    if base and path.lower().startswith(base.lower()):
        path = path[len(base):]
    else:
        path = _ABSOLUTE_URL.sub("", path)
    if not path.startswith("/"):
        path = f"/{path}"
    return method, path


class ProviderClient:
    """Request/response wrapper around the provider's private JSON API."""

    def __init__(
        self,
        base_url: str,
        credentials: CredentialProvider,
        *,
        workspace_id: Optional[str] = None,
        app_origin: str = "https://app.clay.com",
        auth_scheme: str = "cookie",
        request_timeout: float = 30.0,
        create_timeout: float = 120.0,
        populate_timeout: float = 30.0,
        default_row_limit: int = 100,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self.workspace_id = workspace_id
        self.app_origin = app_origin.rstrip("/")
        self.auth_scheme = auth_scheme
        self.request_timeout = request_timeout
        self.create_timeout = create_timeout
        self.populate_timeout = populate_timeout
        self.default_row_limit = default_row_limit
        self.client = client or httpx.AsyncClient(
            timeout=request_timeout,
            limits=httpx.Limits(max_connections=8, max_keepalive_connections=4),
        )

    async def _headers(self) -> Dict[str, str]:
        credential = await self.credentials.get()
        if not credential:
            raise CredentialError("Provider session is not available. Refresh the stored session first.")
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            # The private API only answers requests that look like they come from the web app.
            "Origin": self.app_origin,
            "Referer": f"{self.app_origin}/",
        }
        if self.auth_scheme == "bearer":
            headers["Authorization"] = f"Bearer {credential}"
        else:
            headers["Cookie"] = credential
        return headers

    def _require_workspace(self) -> str:
        if not self.workspace_id:
            raise ConfigurationError("Provider workspace id is not configured.")
        return self.workspace_id

    async def request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        phase: str = "request",
        timeout: Optional[float] = None,
    ) -> ProviderResponse:
        method = method.upper()
        headers = await self._headers()
        url = f"{self.base_url}{path}"
        body = None if method in _BODYLESS else (payload if payload is not None else {})
        try:
            resp = await self.client.request(
                method,
                url,
                json=body,
                headers=headers,
                timeout=timeout if timeout is not None else self.request_timeout,
            )
        except httpx.TimeoutException as exc:
            raise ProviderError(phase, None, str(exc), message=f"{method} {path} timed out") from exc
        except httpx.RequestError as exc:
            raise ProviderError(phase, None, str(exc), message=f"{method} {path} request failed: {exc}") from exc
        text = resp.text
        try:
            parsed = resp.json() if text else None
        except ValueError:
            parsed = None
        logger.info("Provider %s %s -> %s", method, path, resp.status_code)
        if not (200 <= resp.status_code < 300):
            logger.warning("Provider %s %s body: %s", method, path, text[:_LOG_BODY_LIMIT])
        return ProviderResponse(method=method, path=path, status_code=resp.status_code, text=text, body=parsed)

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
        resp = await self.request(method, path, payload, phase=phase, timeout=timeout)
        if not resp.ok:
            raise ProviderError(phase, resp.status_code, resp.text)
        return resp

    async def preview(self, criteria: Dict[str, Any], *, timeout: Optional[float] = None) -> PreviewResult:
        payload = build_preview_payload(self._require_workspace(), criteria, self.default_row_limit)
        resp = await self.request("POST", "/actions/run-enrichment", payload, phase="preview", timeout=timeout)
        if not resp.ok:
            raise ProviderError("preview", resp.status_code, resp.text)
        task_id = extract_first(resp.body, TASK_ID_RULES)
        match_count = extract_first(resp.body, MATCH_COUNT_RULES, 0)
        return PreviewResult(task_id=task_id, match_count=int(match_count), response=resp)

    async def create_table(
        self,
        criteria: Dict[str, Any],
        task_id: str,
        field_template: Optional[List[Dict[str, Any]]] = None,
        *,
        session_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CreateTableResult:
        workspace_id = self._require_workspace()
        payload = build_wizard_payload(
            criteria,
            task_id,
            field_template if field_template is not None else BASIC_FIELDS,
            session_id or str(uuid.uuid4()),
            default_limit=self.default_row_limit,
        )
        resp = await self.request(
            "POST",
            f"/workspaces/{workspace_id}/wizard/evaluate-step",
            payload,
            phase="create",
            timeout=timeout if timeout is not None else self.create_timeout,
        )
        if not resp.ok:
            raise ProviderError("create", resp.status_code, resp.text)
        table_id = extract_first(resp.body, TABLE_ID_RULES)
        if not table_id:
            raise ProviderError("create", resp.status_code, resp.text, message="response did not include a tableId")
        records = extract_first(resp.body, RECORD_COUNT_RULES)
        return CreateTableResult(
            table_id=table_id,
            workbook_id=extract_first(resp.body, WORKBOOK_ID_RULES),
            source_id=extract_first(resp.body, SOURCE_ID_RULES),
            records_imported=int(records) if records is not None else None,
            response=resp,
        )

    async def _populate_call(
        self, method: str, path: str, payload: Dict[str, Any], phase: str, timeout: Optional[float]
    ) -> PopulateResult:
        resp = await self.request(
            method,
            path,
            payload,
            phase=phase,
            timeout=timeout if timeout is not None else self.populate_timeout,
        )
        return PopulateResult(ok=resp.ok, response=resp)

    async def populate(
        self, table_id: str, source_id: Optional[str] = None, *, timeout: Optional[float] = None
    ) -> PopulateResult:
        body = {"sourceId": source_id} if source_id else {}
        return await self._populate_call("POST", f"/tables/{table_id}/bulk-fetch-records", body, "populate", timeout)

    async def run_source(self, source_id: str, *, timeout: Optional[float] = None) -> PopulateResult:
        return await self._populate_call("POST", f"/sources/{source_id}/run", {}, "force_populate", timeout)

    async def run_table_source(
        self, table_id: str, source_id: str, *, timeout: Optional[float] = None
    ) -> PopulateResult:
        return await self._populate_call(
            "PATCH", f"/tables/{table_id}/sources/{source_id}/run", {}, "force_populate", timeout
        )

    async def fetch_table_source(
        self, table_id: str, source_id: str, *, timeout: Optional[float] = None
    ) -> PopulateResult:
        return await self._populate_call(
            "POST", f"/tables/{table_id}/sources/{source_id}/fetch", {}, "force_populate", timeout
        )

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
