from dataclasses import dataclass
from typing import Any, Dict, List, Optional


class EngineError(Exception):
    """Base class for every error the provisioning engine raises or records."""


class PlanValidationError(EngineError):
    kind = "invalid_plan"


class EmptyPlan(PlanValidationError):
    kind = "empty_plan"

    def __init__(self) -> None:
        super().__init__("Plan has no steps.")


class InvalidStepOrder(PlanValidationError):
    kind = "invalid_order"

    def __init__(self, orders: List[int]):
        self.orders = orders
        super().__init__(f"Step order must be a positive integer: {orders}")


class DuplicateStepOrder(PlanValidationError):
    kind = "duplicate_order"

    def __init__(self, orders: List[int]):
        self.orders = orders
        super().__init__(f"Duplicate step order values: {orders}")


class UnknownDependency(PlanValidationError):
    kind = "unknown_dependency"

    def __init__(self, order: int, missing: List[int]):
        self.order = order
        self.missing = missing
        super().__init__(f"Step {order} depends on unknown steps {missing}")


class CycleDetected(PlanValidationError):
    kind = "cycle_detected"

    def __init__(self, cycle: List[int]):
        self.cycle = cycle
        path = " -> ".join(str(order) for order in cycle)
        super().__init__(f"Dependency cycle detected: {path}")


class NoMatchError(EngineError):
    def __init__(
        self,
        message: str,
        suggestions: List[str],
        filters_summary: Optional[Dict[str, Any]] = None,
    ):
        self.suggestions = list(suggestions)
        self.filters_summary = filters_summary or {}
        super().__init__(message)

    def to_error_message(self) -> str:
        lines = [str(self), "Suggestions:"]
        lines.extend(f"- {item}" for item in self.suggestions)
        return "\n".join(lines)


class ProviderError(EngineError):
    """Non-success response (or transport failure) from a provider call."""

    def __init__(self, phase: str, status: Optional[int], body: Any, message: Optional[str] = None):
        self.phase = phase
        self.status = status
        self.body = body
        detail = message or (f"HTTP {status}" if status is not None else "request failed")
        super().__init__(f"{phase} failed: {detail}")

    def body_text(self) -> str:
        if self.body is None:
            return ""
        return self.body if isinstance(self.body, str) else str(self.body)


class AlreadySubmitted(EngineError):
    def __init__(self, record_id: str, table_id: Optional[str]):
        self.record_id = record_id
        self.table_id = table_id
        super().__init__(f"Record {record_id} already submitted (table {table_id})")


class DependencyFailure(EngineError):
    def __init__(self, order: int, dependency: int):
        self.order = order
        self.dependency = dependency
        super().__init__(f"Step {order} skipped: dependency {dependency} did not succeed")


class CredentialError(EngineError):
    pass


class ConfigurationError(EngineError):
    pass


class RecordNotFound(EngineError):
    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"Execution record not found: {record_id}")


class RecordStateError(EngineError):
    def __init__(self, record_id: str, status: str, expected: List[str]):
        self.record_id = record_id
        self.status = status
        self.expected = expected
        super().__init__(f"Record {record_id} is {status}; expected one of {expected}")


@dataclass
class PopulationWarning:
    phase: str
    attempt: str
    message: str

    def __str__(self) -> str:
        return f"{self.phase}/{self.attempt}: {self.message}"
