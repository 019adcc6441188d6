import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request

from .config import AppSettings, load_settings
from .engine import ProvisioningEngine
from .errors import CredentialError, EngineError, PlanValidationError, RecordNotFound, RecordStateError
from .schemas import CreateRecordRequest, RunPlanRequest, SessionRequest
from .templates import default_table_name
from .validator import parse_plan, topological_order, validate_plan

logger = logging.getLogger("uvicorn.error")


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_engine(request: Request) -> ProvisioningEngine:
    return request.app.state.engine


def get_run_tasks(request: Request) -> Dict[str, asyncio.Task]:
    return request.app.state.run_tasks


def http_error(exc: EngineError) -> HTTPException:
    if isinstance(exc, RecordNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, RecordStateError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, PlanValidationError):
        return HTTPException(status_code=400, detail={"kind": exc.kind, "message": str(exc)})
    if isinstance(exc, CredentialError):
        return HTTPException(status_code=401, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


router = APIRouter()


@router.get("/health")
async def health():
    return {"ok": True}


@router.get("/settings")
async def get_settings_view(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.put("/api/session")
async def put_session(payload: SessionRequest, engine: ProvisioningEngine = Depends(get_engine)):
    if not payload.session_cookie.strip():
        raise HTTPException(status_code=400, detail="Session cookie is required.")
    try:
        expires_at = await engine.sessions.save(payload.session_cookie.strip(), payload.expires_at)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid expires_at timestamp.")
    return {"ok": True, "expires_at": expires_at}


@router.post("/api/records")
async def create_record(payload: CreateRecordRequest, engine: ProvisioningEngine = Depends(get_engine)):
    if not payload.client.strip():
        raise HTTPException(status_code=400, detail="Client is required.")
    record_id = await engine.records.create(
        payload.client,
        payload.criteria,
        table_name=payload.table_name or default_table_name(payload.client),
        status=payload.status,
    )
    return await engine.records.require(record_id)


@router.get("/api/records")
async def list_records(
    client: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    engine: ProvisioningEngine = Depends(get_engine),
):
    records = await engine.records.list(client=client, status=status, limit=max(1, min(limit, 500)))
    return {"records": records}


@router.get("/api/records/{record_id}")
async def get_record(record_id: str, engine: ProvisioningEngine = Depends(get_engine)):
    try:
        return await engine.records.require(record_id)
    except RecordNotFound as exc:
        raise http_error(exc)


async def _transition(engine: ProvisioningEngine, record_id: str, changed: bool, expected: str) -> Any:
    record = await engine.records.require(record_id)
    if not changed:
        raise RecordStateError(record_id, record.status, [expected])
    return record


@router.post("/api/records/{record_id}/approve")
async def approve_record(record_id: str, engine: ProvisioningEngine = Depends(get_engine)):
    try:
        changed = await engine.records.approve(record_id)
        return await _transition(engine, record_id, changed, "pending_review")
    except EngineError as exc:
        raise http_error(exc)


@router.post("/api/records/{record_id}/retry")
async def retry_record(record_id: str, engine: ProvisioningEngine = Depends(get_engine)):
    try:
        changed = await engine.records.reset_for_retry(record_id)
        return await _transition(engine, record_id, changed, "failed")
    except EngineError as exc:
        raise http_error(exc)


@router.post("/api/records/{record_id}/submit")
async def submit_record(
    record_id: str,
    reuse_preview: bool = False,
    engine: ProvisioningEngine = Depends(get_engine),
):
    try:
        return await engine.submit_record(record_id, reuse_preview=reuse_preview)
    except EngineError as exc:
        raise http_error(exc)


@router.post("/api/plans/validate")
async def validate_plan_route(payload: Dict[str, Any]):
    try:
        plan = parse_plan(payload)
        validate_plan(plan)
    except PlanValidationError as exc:
        raise http_error(exc)
    return {
        "ok": True,
        "order": topological_order(plan),
        "estimated_total_cost": plan.estimated_total_cost,
        "step_cost": plan.total_step_cost(),
        "warnings": plan.warnings,
    }


@router.post("/api/plans/run")
async def run_plan(
    payload: RunPlanRequest,
    engine: ProvisioningEngine = Depends(get_engine),
    run_tasks: Dict[str, asyncio.Task] = Depends(get_run_tasks),
):
    try:
        plan, run_id = await engine.create_run(payload.plan, fail_fast=payload.fail_fast)
    except PlanValidationError as exc:
        raise http_error(exc)

    async def run_and_cleanup() -> None:
        try:
            await engine.complete_run(plan, run_id, fail_fast=payload.fail_fast)
        except EngineError as exc:
            logger.warning("Plan run %s aborted: %s", run_id, exc)
        except Exception:
            logger.exception("Plan run %s crashed", run_id)
            await engine.runs.finish(run_id, "failed")
        finally:
            run_tasks.pop(run_id, None)

    run_tasks[run_id] = asyncio.create_task(run_and_cleanup())
    return {"run_id": run_id, "status": "running"}


@router.get("/api/runs/{run_id}")
async def get_run(run_id: str, engine: ProvisioningEngine = Depends(get_engine)):
    run = await engine.runs.get(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


def create_app(settings: AppSettings, *, engine: Optional[ProvisioningEngine] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.engine.init()
        try:
            yield
        finally:
            tasks = list(app.state.run_tasks.values())
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            await app.state.engine.close()

    app = FastAPI(title="Enrichment Table Provisioner", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine or ProvisioningEngine.from_settings(settings)
    app.state.run_tasks = {}
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("PROVISIONER_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "provisioner.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
