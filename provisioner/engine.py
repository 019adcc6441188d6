import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx

from .config import AppSettings
from .credentials import SessionStore, StoredCredentialProvider
from .db import Database
from .errors import CredentialError
from .provider import ProviderClient
from .record_store import ExecutionRecordStore
from .run_store import PlanRunStore
from .scheduler import PlanScheduler, RecordResolver, UpdateCallback
from .schemas import Plan, StepOutcome, SubmitResult
from .step_executor import StepExecutor
from .validator import parse_plan, validate_plan

logger = logging.getLogger("uvicorn.error")

PlanDocument = Union[Plan, Dict[str, Any]]


class ProvisioningEngine:
    """Entry point tying the record store, provider client, executor and scheduler together."""

    def __init__(
        self,
        provider: ProviderClient,
        records: ExecutionRecordStore,
        *,
        runs: Optional[PlanRunStore] = None,
        database: Optional[Database] = None,
        sessions: Optional[SessionStore] = None,
        max_parallel: int = 1,
        fail_fast: bool = False,
        step_timeout: Optional[float] = None,
        fallbacks_enabled: bool = True,
        field_template: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self.provider = provider
        self.records = records
        self.runs = runs or PlanRunStore(records.path)
        self.database = database or Database(records.path)
        self.sessions = sessions or SessionStore(records.path)
        self.max_parallel = max(1, max_parallel)
        self.fail_fast = fail_fast
        self.executor = StepExecutor(
            provider,
            records,
            field_template=field_template,
            step_timeout=step_timeout,
            fallbacks_enabled=fallbacks_enabled,
        )

    @classmethod
    def from_settings(
        cls, settings: AppSettings, *, client: Optional[httpx.AsyncClient] = None
    ) -> "ProvisioningEngine":
        sessions = SessionStore(settings.database_path)
        provider = ProviderClient(
            settings.provider_base_url,
            StoredCredentialProvider(sessions, fallback=settings.session_cookie),
            workspace_id=settings.workspace_id,
            app_origin=settings.app_origin,
            auth_scheme=settings.auth_scheme,
            request_timeout=settings.request_timeout_s,
            create_timeout=settings.create_timeout_s,
            populate_timeout=settings.populate_timeout_s,
            default_row_limit=settings.default_row_limit,
            client=client,
        )
        return cls(
            provider,
            ExecutionRecordStore(settings.database_path),
            runs=PlanRunStore(settings.database_path),
            database=Database(settings.database_path),
            sessions=sessions,
            max_parallel=settings.max_parallel,
            fail_fast=settings.fail_fast,
            step_timeout=settings.step_timeout_s,
            fallbacks_enabled=settings.fallbacks_enabled,
        )

    async def init(self) -> None:
        await self.database.init()

    async def submit_record(self, record_id: str, *, reuse_preview: Optional[bool] = None) -> SubmitResult:
        return await self.executor.submit(record_id, reuse_preview=reuse_preview)

    async def submit(self, record_id: str, *, reuse_preview: Optional[bool] = None) -> StepOutcome:
        """Run the add_source protocol for one record outside of any plan (order 0)."""
        result = await self.submit_record(record_id, reuse_preview=reuse_preview)
        return StepOutcome(
            order=0,
            state="succeeded" if result.ok else "failed",
            error=result.error,
            error_kind=result.error_kind,
            result=result.model_dump(exclude={"warnings", "error", "error_kind"}),
            warnings=list(result.warnings),
        )

    async def execute(
        self,
        plan: PlanDocument,
        record_resolver: Optional[RecordResolver] = None,
        *,
        fail_fast: Optional[bool] = None,
        on_update: Optional[UpdateCallback] = None,
        context: Optional[Dict[str, str]] = None,
    ) -> Dict[int, StepOutcome]:
        scheduler = PlanScheduler(
            self.executor,
            max_parallel=self.max_parallel,
            fail_fast=self.fail_fast if fail_fast is None else fail_fast,
            on_update=on_update,
        )
        run_context = dict(context or {})
        if self.provider.workspace_id:
            run_context.setdefault("WORKSPACE_ID", self.provider.workspace_id)
        return await scheduler.execute(parse_plan(plan), record_resolver, context=run_context)

    async def create_run(self, plan: PlanDocument, *, fail_fast: Optional[bool] = None) -> Tuple[Plan, str]:
        parsed = parse_plan(plan)
        validate_plan(parsed)
        document = plan if isinstance(plan, dict) else parsed.model_dump()
        flag = self.fail_fast if fail_fast is None else fail_fast
        run_id = await self.runs.create(document, fail_fast=flag)
        return parsed, run_id

    async def complete_run(
        self,
        plan: Plan,
        run_id: str,
        *,
        fail_fast: Optional[bool] = None,
        record_resolver: Optional[RecordResolver] = None,
    ) -> Dict[str, Any]:
        async def _save(outcome: StepOutcome) -> None:
            await self.runs.save_outcome(run_id, outcome)

        try:
            outcomes = await self.execute(plan, record_resolver, fail_fast=fail_fast, on_update=_save)
        except CredentialError:
            await self.runs.finish(run_id, "aborted")
            raise
        except asyncio.CancelledError:
            await asyncio.shield(self.runs.finish(run_id, "cancelled"))
            raise
        failed = [order for order, outcome in outcomes.items() if outcome.state != "succeeded"]
        status = "completed_with_errors" if failed else "completed"
        await self.runs.finish(run_id, status)
        logger.info("Plan run %s %s (%s steps, %s not succeeded)", run_id, status, len(outcomes), len(failed))
        return await self.runs.get(run_id)

    async def run_plan(
        self,
        plan: PlanDocument,
        *,
        fail_fast: Optional[bool] = None,
        record_resolver: Optional[RecordResolver] = None,
    ) -> Dict[str, Any]:
        parsed, run_id = await self.create_run(plan, fail_fast=fail_fast)
        return await self.complete_run(parsed, run_id, fail_fast=fail_fast, record_resolver=record_resolver)

    async def close(self) -> None:
        await self.provider.close()
