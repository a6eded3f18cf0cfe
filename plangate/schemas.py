from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator


PlanStatus = Literal[
    "proposed",
    "approved",
    "executing",
    "completed",
    "failed",
    "rejected",
    "cancelled",
    "stalled",
    "needs_review",
]
ScriptStatus = Literal["pending", "in_progress", "done", "failed"]

PLAN_STATUSES = (
    "proposed",
    "approved",
    "executing",
    "completed",
    "failed",
    "rejected",
    "cancelled",
    "stalled",
    "needs_review",
)
TERMINAL_STATUSES = frozenset({"completed", "failed", "rejected", "cancelled"})
NON_TERMINAL_STATUSES = tuple(s for s in PLAN_STATUSES if s not in TERMINAL_STATUSES)
SCRIPT_STATUSES = ("pending", "in_progress", "done", "failed")

# operation -> (statuses it may start from, status it lands in)
TRANSITIONS: Dict[str, Tuple[Tuple[str, ...], str]] = {
    "approve": (("proposed",), "approved"),
    "reject": (("proposed",), "rejected"),
    "mark_executing": (("approved",), "executing"),
    "mark_completed": (("executing",), "completed"),
    "mark_failed": (("executing",), "failed"),
    "mark_stalled": (("executing",), "stalled"),
    "cancel": (NON_TERMINAL_STATUSES, "cancelled"),
}
STATUS_EDGES = frozenset((src, dst) for sources, dst in TRANSITIONS.values() for src in sources)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def system_clock() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    cleaned = value.strip()
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    parsed = datetime.fromisoformat(cleaned)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    # plan documents are stored with \n line endings only
    text = str(value).replace("\r\n", "\n").replace("\r", "\n").strip()
    return text or None


def _one_line(value: Any) -> str:
    return " ".join(str(value or "").split())


class PlanStep(BaseModel):
    description: str
    tool: str
    operation: str
    target: Optional[str] = None

    @field_validator("description", "tool", "operation", mode="before")
    @classmethod
    def _single_line(cls, value: Any) -> str:
        return _one_line(value)

    @field_validator("target", mode="before")
    @classmethod
    def _optional_target(cls, value: Any) -> Optional[str]:
        cleaned = _one_line(value) if value is not None else ""
        return cleaned or None


class PlanScript(BaseModel):
    step_index: int = Field(ge=0)
    status: ScriptStatus = "pending"
    summary: Optional[str] = None

    @field_validator("summary", mode="before")
    @classmethod
    def _summary(cls, value: Any) -> Optional[str]:
        cleaned = _one_line(value) if value is not None else ""
        return cleaned or None


class PlanDraft(BaseModel):
    """What a proposer supplies; the store fills in identity and bookkeeping."""

    title: str
    steps: List[PlanStep] = Field(default_factory=list)
    tools_required: List[str] = Field(default_factory=list)
    context: Optional[str] = None
    body: Optional[str] = None
    planner_model: Optional[str] = None
    executor_model: Optional[str] = None

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, value: Any) -> str:
        title = _one_line(value)
        if not title:
            raise ValueError("title must not be empty")
        return title

    @field_validator("context", "body", mode="before")
    @classmethod
    def _free_text(cls, value: Any) -> Optional[str]:
        return _clean_text(value)

    @model_validator(mode="after")
    def _derive_tools(self) -> "PlanDraft":
        names = self.tools_required or [step.tool for step in self.steps]
        self.tools_required = _dedupe([name for name in names if name])
        return self


class Plan(BaseModel):
    id: str
    title: str
    status: PlanStatus = "proposed"
    version: int = Field(default=1, ge=1)
    created_at: str
    updated_at: str
    planner_model: Optional[str] = None
    executor_model: Optional[str] = None
    tools_required: List[str] = Field(default_factory=list)
    steps: List[PlanStep] = Field(default_factory=list)
    execution_session: Optional[str] = None
    execution_started_at: Optional[str] = None
    execution_ended_at: Optional[str] = None
    result_summary: Optional[str] = None
    scripts: Optional[List[PlanScript]] = None
    context: Optional[str] = None
    body: Optional[str] = None

    @field_validator(
        "created_at",
        "updated_at",
        "execution_started_at",
        "execution_ended_at",
        mode="before",
    )
    @classmethod
    def _timestamp(cls, value: Any) -> Any:
        # YAML turns unquoted ISO strings into datetimes.
        if isinstance(value, datetime):
            return format_timestamp(value)
        return value

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, value: Any) -> str:
        return _one_line(value)

    @field_validator("tools_required", mode="before")
    @classmethod
    def _tools(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        return _dedupe([str(v).strip() for v in value if v is not None and str(v).strip()])

    @field_validator("result_summary", "context", "body", mode="before")
    @classmethod
    def _free_text(cls, value: Any) -> Optional[str]:
        return _clean_text(value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class CheckpointRecord(BaseModel):
    plan_id: str
    step: Optional[int] = None
    status: str
    summary: str = ""
    ts: str = Field(default_factory=utc_now)

    @property
    def is_plan_level(self) -> bool:
        return self.step is None


class ExecutePlanRequest(BaseModel):
    expected_version: int
    available_tools: Optional[List[str]] = None
    session: Optional[str] = None


class StepReport(BaseModel):
    status: ScriptStatus
    summary: str = ""


class OutcomeRequest(BaseModel):
    summary: str = ""


class ApproveRequest(BaseModel):
    expected_version: Optional[int] = None


class RejectRequest(BaseModel):
    feedback: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


def _dedupe(values: List[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for value in values:
        seen.setdefault(value, None)
    return list(seen)
