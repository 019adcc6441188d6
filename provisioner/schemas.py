from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field, model_validator


StepType = Literal["create_workbook", "add_source", "add_column", "run_enrichment"]
StepState = Literal["ready", "running", "succeeded", "failed", "skipped"]
RecordStatus = Literal["pending_review", "approved", "submitted", "failed"]

TERMINAL_STATES = {"succeeded", "failed", "skipped"}
SUBMITTABLE_STATUSES = ("pending_review", "approved")

# Tags emitted by older planner prompts.
STEP_TYPE_ALIASES = {
    "wizard_import": "add_source",
    "create_table": "create_workbook",
}


class StepOperation(BaseModel):
    path: str = ""
    method: str = "POST"

    model_config = {"frozen": True}


class PlanStep(BaseModel):
    order: int
    type: StepType
    operation: StepOperation = Field(default_factory=StepOperation)
    payload: Dict[str, Any] = Field(default_factory=dict)
    estimated_cost: float = Field(
        default=0.0, validation_alias=AliasChoices("estimated_cost", "estimatedCost", "estimatedCredits")
    )
    depends_on: List[int] = Field(default_factory=list, validation_alias=AliasChoices("depends_on", "dependsOn"))
    description: str = ""

    model_config = {"frozen": True, "populate_by_name": True, "extra": "ignore"}

    @model_validator(mode="before")
    @classmethod
    def _normalize_planner_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        step_type = data.get("type")
        if isinstance(step_type, str):
            cleaned = step_type.strip().lower()
            data["type"] = STEP_TYPE_ALIASES.get(cleaned, cleaned)
        if "operation" not in data and ("apiEndpoint" in data or "apiMethod" in data):
            data["operation"] = {
                "path": data.get("apiEndpoint") or "",
                "method": str(data.get("apiMethod") or "POST").upper(),
            }
        if data.get("depends_on") is None and data.get("dependsOn") is None:
            data.pop("depends_on", None)
            data.pop("dependsOn", None)
        return data


class Plan(BaseModel):
    steps: List[PlanStep] = Field(default_factory=list)
    estimated_total_cost: float = Field(
        default=0.0,
        validation_alias=AliasChoices("estimated_total_cost", "estimatedTotalCost", "estimatedTotalCredits"),
    )
    estimated_row_count: int = Field(
        default=0, validation_alias=AliasChoices("estimated_row_count", "estimatedRowCount", "estimatedRows")
    )
    warnings: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    workbook_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("workbook_name", "workbookName"))
    summary: Optional[str] = None

    model_config = {"populate_by_name": True, "extra": "ignore"}

    def step(self, order: int) -> Optional[PlanStep]:
        for step in self.steps:
            if step.order == order:
                return step
        return None

    def total_step_cost(self) -> float:
        return sum(step.estimated_cost for step in self.steps)


class StepOutcome(BaseModel):
    order: int
    state: StepState = "ready"
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    result: Dict[str, Any] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class ExecutionRecord(BaseModel):
    id: str
    client: str
    criteria: Dict[str, Any] = Field(default_factory=dict)
    status: RecordStatus = "pending_review"
    provider_task_id: Optional[str] = None
    provider_table_id: Optional[str] = None
    provider_workbook_id: Optional[str] = None
    provider_source_id: Optional[str] = None
    match_count: Optional[int] = None
    table_name: Optional[str] = None
    raw_response: Optional[Any] = None
    error_message: Optional[str] = None
    submitted_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class SubmitResult(BaseModel):
    record_id: str
    status: RecordStatus
    table_id: Optional[str] = None
    workbook_id: Optional[str] = None
    source_id: Optional[str] = None
    task_id: Optional[str] = None
    match_count: Optional[int] = None
    records_imported: Optional[int] = None
    table_name: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    phase: Optional[str] = None
    already_submitted: bool = False

    @property
    def ok(self) -> bool:
        return self.status == "submitted"


class CreateRecordRequest(BaseModel):
    client: str
    criteria: Dict[str, Any] = Field(default_factory=dict)
    table_name: Optional[str] = None
    status: Literal["pending_review", "approved"] = "pending_review"


class RunPlanRequest(BaseModel):
    plan: Dict[str, Any]
    fail_fast: Optional[bool] = None


class SessionRequest(BaseModel):
    session_cookie: str
    expires_at: Optional[str] = None
