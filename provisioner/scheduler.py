import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from .db import utc_now
from .errors import CredentialError, DependencyFailure, EngineError
from .schemas import Plan, PlanStep, StepOutcome
from .step_executor import StepExecutor
from .validator import topological_order, validate_plan

logger = logging.getLogger("uvicorn.error")

RecordResolver = Callable[[PlanStep], Any]
UpdateCallback = Callable[[StepOutcome], Awaitable[None]]

_HALTED = "Not started: run halted after an earlier step failed"


def payload_record_id(step: PlanStep) -> Optional[str]:
    value = step.payload.get("record_id") or step.payload.get("recordId")
    return str(value) if value else None


class PlanScheduler:
    """Dispatch plan steps in dependency order with bounded parallelism."""

    def __init__(
        self,
        executor: StepExecutor,
        *,
        max_parallel: int = 1,
        fail_fast: bool = False,
        on_update: Optional[UpdateCallback] = None,
    ) -> None:
        self.executor = executor
        self.max_parallel = max(1, max_parallel)
        self.fail_fast = fail_fast
        self.on_update = on_update

    async def _resolve_record(self, step: PlanStep, resolver: Optional[RecordResolver]) -> Optional[str]:
        if step.type != "add_source":
            return None
        value = (resolver or payload_record_id)(step)
        if inspect.isawaitable(value):
            value = await value
        return value

    async def execute(
        self,
        plan: Plan,
        record_resolver: Optional[RecordResolver] = None,
        *,
        context: Optional[Dict[str, str]] = None,
    ) -> Dict[int, StepOutcome]:
        validate_plan(plan)
        ordering = topological_order(plan)
        steps = {step.order: step for step in plan.steps}
        outcomes: Dict[int, StepOutcome] = {order: StepOutcome(order=order) for order in ordering}
        context = context if context is not None else {}
        running: Dict[int, asyncio.Task] = {}
        halted = False

        async def _update(outcome: StepOutcome) -> None:
            outcomes[outcome.order] = outcome
            if self.on_update:
                await self.on_update(outcome)

        async def _run(step: PlanStep) -> StepOutcome:
            record_id = await self._resolve_record(step, record_resolver)
            return await self.executor.run_step(step, context, record_id)

        try:
            while True:
                for order in ordering:
                    if outcomes[order].state != "ready":
                        continue
                    step = steps[order]
                    blocked = next(
                        (dep for dep in step.depends_on if outcomes[dep].state in ("failed", "skipped")),
                        None,
                    )
                    if blocked is not None:
                        await _update(
                            StepOutcome(
                                order=order,
                                state="skipped",
                                finished_at=utc_now(),
                                error=str(DependencyFailure(order, blocked)),
                                error_kind="DependencyFailure",
                            )
                        )
                        continue
                    if halted:
                        await _update(
                            StepOutcome(order=order, state="skipped", finished_at=utc_now(), error=_HALTED)
                        )
                        continue
                    if len(running) >= self.max_parallel:
                        continue
                    if all(outcomes[dep].state == "succeeded" for dep in step.depends_on):
                        await _update(StepOutcome(order=order, state="running", started_at=utc_now()))
                        running[order] = asyncio.create_task(_run(step))
                if not running:
                    break
                done, _ = await asyncio.wait(list(running.values()), return_when=asyncio.FIRST_COMPLETED)
                for order, task in list(running.items()):
                    if task not in done:
                        continue
                    running.pop(order)
                    try:
                        outcome = task.result()
                    except CredentialError:
                        raise
                    except EngineError as exc:
                        logger.warning("Step %s failed: %s", order, exc)
                        outcome = self._crashed(order, outcomes[order], exc)
                    except Exception as exc:
                        logger.exception("Step %s crashed", order)
                        outcome = self._crashed(order, outcomes[order], exc)
                    await _update(outcome)
                    if outcome.state == "failed" and self.fail_fast:
                        halted = True
        finally:
            if running:
                for task in running.values():
                    task.cancel()
                await asyncio.gather(*running.values(), return_exceptions=True)
        return outcomes

    def _crashed(self, order: int, current: StepOutcome, exc: Exception) -> StepOutcome:
        return StepOutcome(
            order=order,
            state="failed",
            started_at=current.started_at,
            finished_at=utc_now(),
            error=str(exc),
            error_kind=type(exc).__name__,
        )
