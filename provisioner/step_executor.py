import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .db import utc_now
from .errors import (
    AlreadySubmitted,
    CredentialError,
    NoMatchError,
    PopulationWarning,
    ProviderError,
    RecordStateError,
)
from .extraction import (
    FIELD_ID_RULES,
    SOURCE_ID_RULES,
    TABLE_ID_RULES,
    TASK_ID_RULES,
    VIEW_ID_RULES,
    WORKBOOK_ID_RULES,
    extract_first,
)
from .provider import PopulateResult, ProviderClient, ProviderResponse
from .record_store import ExecutionRecordStore
from .schemas import SUBMITTABLE_STATUSES, ExecutionRecord, PlanStep, StepOutcome, SubmitResult
from .templates import BASIC_FIELDS, NO_MATCH_MESSAGE, NO_MATCH_SUGGESTIONS, default_table_name, summarize_filters

logger = logging.getLogger("uvicorn.error")

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")
_WARNING_BODY_LIMIT = 200

# Context keys filled from a generic step's response, per step type.
_CONTEXT_RULES = {
    "run_enrichment": (("TASK_ID", TASK_ID_RULES),),
    "create_workbook": (
        ("TABLE_ID", TABLE_ID_RULES),
        ("VIEW_ID", VIEW_ID_RULES),
        ("WORKBOOK_ID", WORKBOOK_ID_RULES),
    ),
    "add_source": (
        ("TABLE_ID", TABLE_ID_RULES),
        ("SOURCE_ID", SOURCE_ID_RULES),
        ("WORKBOOK_ID", WORKBOOK_ID_RULES),
        ("VIEW_ID", VIEW_ID_RULES),
    ),
}


class Deadline:
    """Cooperative time budget shared by every provider call of one step."""

    def __init__(self, budget: Optional[float], clock: Callable[[], float] = time.monotonic):
        self.budget = budget
        self._clock = clock
        self._started = clock()

    def remaining(self) -> Optional[float]:
        if self.budget is None:
            return None
        return self.budget - (self._clock() - self._started)

    def bound(self, timeout: Optional[float], phase: str) -> Optional[float]:
        """Per-call timeout clipped to the remaining budget."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if remaining <= 0:
            raise ProviderError(phase, None, None, message="step time budget exhausted")
        return remaining if timeout is None else min(timeout, remaining)


@dataclass(frozen=True)
class Attempt:
    name: str
    call: Callable[..., Awaitable[PopulateResult]]


async def run_attempts(
    phase: str,
    attempts: List[Attempt],
    deadline: Optional[Deadline] = None,
    timeout: Optional[float] = None,
) -> Tuple[List[PopulationWarning], Optional[ProviderResponse]]:
    """Run best-effort attempts in order. One failing attempt never stops the next."""
    warnings: List[PopulationWarning] = []
    last: Optional[ProviderResponse] = None
    for attempt in attempts:
        try:
            limit = deadline.bound(timeout, phase) if deadline else timeout
            result = await attempt.call(timeout=limit)
        except (ProviderError, CredentialError) as exc:
            warnings.append(PopulationWarning(phase, attempt.name, str(exc)))
            continue
        last = result.response
        if result.ok:
            logger.info("%s/%s -> %s", phase, attempt.name, result.response.status_code)
        else:
            snippet = result.response.text[:_WARNING_BODY_LIMIT]
            warnings.append(
                PopulationWarning(phase, attempt.name, f"HTTP {result.response.status_code}: {snippet}")
            )
    return warnings, last


def substitute(value: Any, context: Dict[str, str]) -> Any:
    """Replace ``{{NAME}}`` placeholders in strings nested anywhere in ``value``."""
    if isinstance(value, str):
        return _PLACEHOLDER.sub(lambda match: str(context.get(match.group(1).upper(), match.group(0))), value)
    if isinstance(value, dict):
        return {key: substitute(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [substitute(item, context) for item in value]
    return value


def field_key(name: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9]+", "_", name.strip()).strip("_").upper()
    return f"FIELD_{cleaned}"


@dataclass
class _Progress:
    phase: str = "preview"
    fatal: bool = True
    task_id: Optional[str] = None
    match_count: Optional[int] = None
    # Provider ids persisted after create; Phase 5 writes them again on finalize.
    created: Optional[Dict[str, Any]] = None


@dataclass
class _StepResult:
    ok: bool
    result: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None


class StepExecutor:
    """Runs one plan step against the provider.

    ``add_source`` steps bound to an execution record go through ``submit``:

    1. preview the search and persist the task id (zero matches ends here),
    2. create the table through the import wizard (fatal on failure),
    3. trigger population (best effort),
    4. try the source-level populate endpoints (best effort, needs a sourceId),
    5. mark the record submitted with a compare-and-set on its status.

    Every other step runs its planner-supplied operation directly.
    """

    def __init__(
        self,
        provider: ProviderClient,
        records: ExecutionRecordStore,
        *,
        field_template: Optional[List[Dict[str, Any]]] = None,
        step_timeout: Optional[float] = None,
        fallbacks_enabled: bool = True,
        reuse_preview: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.records = records
        self.field_template = field_template if field_template is not None else BASIC_FIELDS
        self.step_timeout = step_timeout
        self.fallbacks_enabled = fallbacks_enabled
        self.reuse_preview = reuse_preview
        self._clock = clock
        self._handlers = {
            "add_source": self._run_add_source,
        }

    def _already_submitted(self, record: ExecutionRecord) -> SubmitResult:
        logger.info("Record %s already submitted (table %s)", record.id, record.provider_table_id)
        return SubmitResult(
            record_id=record.id,
            status="submitted",
            table_id=record.provider_table_id,
            workbook_id=record.provider_workbook_id,
            source_id=record.provider_source_id,
            task_id=record.provider_task_id,
            match_count=record.match_count,
            table_name=record.table_name,
            already_submitted=True,
        )

    async def _mark_failed(self, record_id: str, message: str, raw: Any = None) -> None:
        fields: Dict[str, Any] = {"error_message": message}
        if raw is not None:
            fields["raw_response"] = raw
        changed = await self.records.compare_and_set_status(record_id, SUBMITTABLE_STATUSES, "failed", fields)
        if not changed:
            logger.warning("Record %s changed status before it could be marked failed", record_id)

    async def _finalize(self, record_id: str, created: Dict[str, Any]) -> bool:
        return await self.records.compare_and_set_status(
            record_id,
            SUBMITTABLE_STATUSES,
            "submitted",
            {**created, "error_message": None, "submitted_at": utc_now()},
        )

    async def _guarded_write(
        self, record_id: str, status: str, fields: Dict[str, Any], orphan_table: Optional[str] = None
    ) -> None:
        """Persist progress only while the record still holds ``status``."""
        if await self.records.compare_and_set_status(record_id, [status], status, fields):
            return
        current = await self.records.require(record_id)
        if current.status == "submitted":
            if orphan_table:
                logger.warning(
                    "Record %s: table %s orphaned, another attempt already submitted table %s",
                    record_id,
                    orphan_table,
                    current.provider_table_id,
                )
            raise AlreadySubmitted(record_id, current.provider_table_id)
        raise RecordStateError(record_id, current.status, [status])

    async def submit(self, record_id: str, *, reuse_preview: Optional[bool] = None) -> SubmitResult:
        record = await self.records.require(record_id)
        if record.status == "submitted":
            return self._already_submitted(record)
        if record.status not in SUBMITTABLE_STATUSES:
            raise RecordStateError(record_id, record.status, list(SUBMITTABLE_STATUSES))
        deadline = Deadline(self.step_timeout, clock=self._clock)
        reuse = self.reuse_preview if reuse_preview is None else reuse_preview
        progress = _Progress()
        try:
            return await self._submit_phases(record, deadline, reuse, progress)
        except AlreadySubmitted:
            return self._already_submitted(await self.records.require(record_id))
        except NoMatchError as exc:
            message = exc.to_error_message()
            logger.info("Record %s: preview returned no matches", record_id)
            await self._mark_failed(record_id, message)
            return SubmitResult(
                record_id=record_id,
                status="failed",
                task_id=progress.task_id,
                match_count=0,
                suggestions=exc.suggestions,
                error=message,
                error_kind=type(exc).__name__,
                phase="preview",
            )
        except ProviderError as exc:
            logger.warning("Record %s: %s (status=%s)", record_id, exc, exc.status)
            await self._mark_failed(record_id, str(exc), raw=exc.body_text() or None)
            return SubmitResult(
                record_id=record_id,
                status="failed",
                task_id=progress.task_id,
                match_count=progress.match_count,
                error=str(exc),
                error_kind=type(exc).__name__,
                phase=exc.phase,
            )
        except asyncio.CancelledError:
            if progress.fatal:
                await asyncio.shield(self._mark_failed(record_id, f"{progress.phase} cancelled"))
            elif progress.created is not None:
                # The table exists: a cancelled populate is only a warning.
                logger.warning("Record %s: %s cancelled, finalizing", record_id, progress.phase)
                finalized = await asyncio.shield(self._finalize(record_id, progress.created))
                if not finalized:
                    logger.warning("Record %s changed status before it could be finalized", record_id)
            raise

    async def _submit_phases(
        self, record: ExecutionRecord, deadline: Deadline, reuse: bool, progress: _Progress
    ) -> SubmitResult:
        record_id = record.id
        records_imported: Optional[int] = None
        if record.provider_table_id:
            # An earlier attempt created the table but never finalized it.
            logger.info(
                "Record %s: table %s already created, resuming at populate", record_id, record.provider_table_id
            )
            progress.task_id = record.provider_task_id
            progress.match_count = record.match_count
            progress.created = {
                "provider_table_id": record.provider_table_id,
                "provider_workbook_id": record.provider_workbook_id,
                "provider_source_id": record.provider_source_id,
                "raw_response": record.raw_response,
            }
            table_name = record.table_name or default_table_name(record.client)
        else:
            await self._preview_phase(record, deadline, reuse, progress)

            current = await self.records.require(record_id)
            if current.status == "submitted":
                raise AlreadySubmitted(record_id, current.provider_table_id)

            progress.phase = "create"
            logger.info("Record %s: creating table", record_id)
            created = await self.provider.create_table(
                record.criteria,
                progress.task_id,
                self.field_template,
                timeout=deadline.bound(self.provider.create_timeout, "create"),
            )
            table_name = current.table_name or default_table_name(current.client)
            progress.created = {
                "provider_table_id": created.table_id,
                "provider_workbook_id": created.workbook_id,
                "provider_source_id": created.source_id,
                "raw_response": created.response.audit_body(),
            }
            await self._guarded_write(
                record_id,
                current.status,
                {**progress.created, "table_name": table_name},
                orphan_table=created.table_id,
            )
            records_imported = created.records_imported
            logger.info(
                "Record %s: table %s created (workbook=%s source=%s records=%s)",
                record_id,
                created.table_id,
                created.workbook_id,
                created.source_id,
                created.records_imported,
            )
        progress.fatal = False
        table_id = progress.created["provider_table_id"]
        workbook_id = progress.created["provider_workbook_id"]
        source_id = progress.created["provider_source_id"]

        progress.phase = "populate"
        warnings, _ = await run_attempts(
            "populate",
            [Attempt("bulk_fetch_records", partial(self.provider.populate, table_id, source_id))],
            deadline,
            self.provider.populate_timeout,
        )
        if source_id and self.fallbacks_enabled:
            progress.phase = "force_populate"
            fallback_warnings, _ = await run_attempts(
                "force_populate",
                [
                    Attempt("source_run", partial(self.provider.run_source, source_id)),
                    Attempt("table_source_run", partial(self.provider.run_table_source, table_id, source_id)),
                    Attempt("table_source_fetch", partial(self.provider.fetch_table_source, table_id, source_id)),
                ],
                deadline,
                self.provider.populate_timeout,
            )
            warnings.extend(fallback_warnings)
        elif not source_id:
            logger.info("Record %s: no sourceId in create response, skipping force populate", record_id)
        for warning in warnings:
            logger.warning("Record %s: %s", record_id, warning)

        progress.phase = "finalize"
        if not await self._finalize(record_id, progress.created):
            current = await self.records.require(record_id)
            if current.status == "submitted":
                raise AlreadySubmitted(record_id, current.provider_table_id)
            raise RecordStateError(record_id, current.status, list(SUBMITTABLE_STATUSES))
        logger.info("Record %s submitted (table %s)", record_id, table_id)
        return SubmitResult(
            record_id=record_id,
            status="submitted",
            table_id=table_id,
            workbook_id=workbook_id,
            source_id=source_id,
            task_id=progress.task_id,
            match_count=progress.match_count,
            records_imported=records_imported,
            table_name=table_name,
            warnings=[str(warning) for warning in warnings],
        )

    async def _preview_phase(
        self, record: ExecutionRecord, deadline: Deadline, reuse: bool, progress: _Progress
    ) -> None:
        record_id = record.id
        if reuse and record.provider_task_id and (record.match_count or 0) > 0:
            progress.task_id = record.provider_task_id
            progress.match_count = record.match_count
            logger.info("Record %s: reusing preview task %s", record_id, progress.task_id)
            return
        logger.info("Record %s: running preview", record_id)
        preview = await self.provider.preview(
            record.criteria, timeout=deadline.bound(self.provider.request_timeout, "preview")
        )
        progress.task_id = preview.task_id
        progress.match_count = preview.match_count
        await self._guarded_write(
            record_id,
            record.status,
            {
                "provider_task_id": preview.task_id,
                "match_count": preview.match_count,
                "raw_response": preview.response.audit_body(),
            },
        )
        logger.info("Record %s: preview found %s matches (task %s)", record_id, preview.match_count, preview.task_id)
        if preview.match_count == 0:
            raise NoMatchError(NO_MATCH_MESSAGE, NO_MATCH_SUGGESTIONS, summarize_filters(record.criteria))
        if not preview.task_id:
            raise ProviderError(
                "preview",
                preview.response.status_code,
                preview.response.text,
                message="response did not include a taskId",
            )

    async def run_step(
        self, step: PlanStep, context: Dict[str, str], record_id: Optional[str] = None
    ) -> StepOutcome:
        """Execute one step and fold discovered identifiers into ``context``.

        Expected failures come back as a failed outcome. Credential and
        record-state errors propagate.
        """
        started_at = utc_now()
        handler = self._handlers.get(step.type)
        if handler is not None and record_id:
            result = await handler(step, context, record_id)
        else:
            result = await self._run_operation(step, context)
        return StepOutcome(
            order=step.order,
            state="succeeded" if result.ok else "failed",
            started_at=started_at,
            finished_at=utc_now(),
            error=result.error,
            error_kind=result.error_kind,
            result=result.result,
            warnings=result.warnings,
        )

    async def _run_add_source(self, step: PlanStep, context: Dict[str, str], record_id: str) -> _StepResult:
        submitted = await self.submit(record_id)
        discovered = {
            "TASK_ID": submitted.task_id,
            "TABLE_ID": submitted.table_id,
            "WORKBOOK_ID": submitted.workbook_id,
            "SOURCE_ID": submitted.source_id,
        }
        if submitted.ok:
            context.update({key: value for key, value in discovered.items() if value})
        result = submitted.model_dump(
            include={"record_id", "table_id", "workbook_id", "source_id", "task_id", "match_count", "already_submitted"}
        )
        if submitted.ok:
            return _StepResult(ok=True, result=result, warnings=list(submitted.warnings))
        return _StepResult(ok=False, result=result, error=submitted.error, error_kind=submitted.error_kind)

    async def _run_operation(self, step: PlanStep, context: Dict[str, str]) -> _StepResult:
        deadline = Deadline(self.step_timeout, clock=self._clock)
        path = substitute(step.operation.path, context)
        payload = substitute(step.payload, context)
        logger.info("Step %s (%s): %s %s", step.order, step.type, step.operation.method, path)
        try:
            resp = await self.provider.call_operation(
                step.operation.method,
                path,
                payload,
                phase=step.type,
                timeout=deadline.bound(self.provider.request_timeout, step.type),
            )
        except ProviderError as exc:
            logger.warning("Step %s (%s) failed: %s", step.order, step.type, exc)
            return _StepResult(ok=False, error=str(exc), error_kind=type(exc).__name__)
        discovered: Dict[str, Any] = {}
        for key, rules in _CONTEXT_RULES.get(step.type, ()):
            value = extract_first(resp.body, rules)
            if value:
                discovered[key] = value
        if step.type == "add_column":
            name = payload.get("name") if isinstance(payload, dict) else None
            field_id = extract_first(resp.body, FIELD_ID_RULES)
            if name and field_id:
                discovered[field_key(str(name))] = field_id
        context.update(discovered)
        return _StepResult(ok=True, result={key.lower(): value for key, value in discovered.items()})
