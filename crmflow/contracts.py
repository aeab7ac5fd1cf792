"""Core data contracts for crmflow workflows, executions and contacts."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import (
    Annotated,
    Any,
    Dict,
    Iterator,
    List,
    Literal,
    Mapping,
    Optional,
    TypeVar,
    Union,
)

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import WorkflowDefinitionError

ModelT = TypeVar("ModelT", bound=BaseModel)

END_STEP = "end"

MESSAGE_CHANNELS = frozenset({"email", "sms", "whatsapp"})
CONTACT_OPERATIONS = frozenset({"add_tag", "remove_tag", "set_field", "move_stage"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id() -> str:
    return str(uuid.uuid4())


class TriggerType(str, Enum):
    CONTACT_CREATED = "contact_created"
    TAG_ADDED = "tag_added"
    FORM_SUBMITTED = "form_submitted"
    DATE_BASED = "date_based"
    DEAL_STAGE_CHANGED = "deal_stage_changed"


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    WAITING_DELAY = "waiting_delay"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)
ACTIVE_STATUSES = frozenset({ExecutionStatus.RUNNING, ExecutionStatus.WAITING_DELAY})


class WorkflowTrigger(BaseModel):
    """Event type plus free-form constraints that make a workflow eligible."""

    type: TriggerType
    conditions: Dict[str, Any] = Field(default_factory=dict)

    def condition(self, *names: str) -> Any:
        """Return the first non-empty condition among ``names``.

        Empty strings count as absent, so an absent constraint matches any
        event value.
        """
        for name in names:
            value = self.conditions.get(name)
            if value is not None and value != "":
                return value
        return None


class ActionStep(BaseModel):
    """Send a message or mutate the contact."""

    kind: Literal["action"] = "action"
    id: str = ""
    name: Optional[str] = None
    channel: Literal[
        "email", "sms", "whatsapp", "add_tag", "remove_tag", "set_field", "move_stage"
    ]
    template: Optional[str] = None
    subject: Optional[str] = None
    target_field: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    next: Optional[str] = None

    @property
    def is_message(self) -> bool:
        return self.channel in MESSAGE_CHANNELS


class DelayStep(BaseModel):
    """Suspend the execution for a fixed or contact-relative duration."""

    kind: Literal["delay"] = "delay"
    id: str = ""
    name: Optional[str] = None
    duration: int = Field(ge=0)
    unit: Literal["minutes", "hours", "days", "weeks"] = "days"
    relative_to: Optional[str] = None
    next: Optional[str] = None

    def delta(self) -> timedelta:
        return timedelta(**{self.unit: self.duration})


class ConditionStep(BaseModel):
    """Branch on a predicate over the execution context."""

    kind: Literal["condition"] = "condition"
    id: str = ""
    name: Optional[str] = None
    field: str
    op: Literal[
        "eq",
        "ne",
        "gt",
        "gte",
        "lt",
        "lte",
        "contains",
        "not_contains",
        "in",
        "not_in",
        "exists",
        "not_exists",
    ] = "eq"
    value: Any = None
    true_next: Optional[str] = None
    false_next: Optional[str] = None


Step = Annotated[Union[ActionStep, DelayStep, ConditionStep], Field(discriminator="kind")]


class StepGraph:
    """Navigation over an ordered list of steps linked by ``next`` ids.

    Action and delay steps without an explicit ``next`` fall through to the
    following step in list order. ``END_STEP`` and ``None`` branch targets
    end the run.
    """

    def __init__(self, steps: List[Step]) -> None:
        self._steps = list(steps)
        self._index = {step.id: pos for pos, step in enumerate(self._steps)}

    def __iter__(self) -> Iterator[Step]:
        return iter(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    @property
    def first_id(self) -> Optional[str]:
        return self._steps[0].id if self._steps else None

    def get(self, step_id: Optional[str]) -> Optional[Step]:
        if step_id is None or step_id == END_STEP:
            return None
        pos = self._index.get(step_id)
        return self._steps[pos] if pos is not None else None

    def successor(self, step: Step) -> Optional[str]:
        """Return the id that follows an action or delay step."""
        if step.next is not None:
            return None if step.next == END_STEP else step.next
        pos = self._index[step.id] + 1
        return self._steps[pos].id if pos < len(self._steps) else None

    def targets(self, step: Step) -> List[str]:
        if isinstance(step, ConditionStep):
            candidates = [step.true_next, step.false_next]
        else:
            candidates = [self.successor(step)]
        return [c for c in candidates if c is not None and c != END_STEP]

    def validate(self) -> None:
        seen: set[str] = set()
        for step in self._steps:
            if not step.id:
                raise WorkflowDefinitionError("step id must not be empty")
            if step.id == END_STEP:
                raise WorkflowDefinitionError(f"step id '{END_STEP}' is reserved")
            if step.id in seen:
                raise WorkflowDefinitionError(f"duplicate step id '{step.id}'")
            seen.add(step.id)

        for step in self._steps:
            for target in self.targets(step):
                if target not in self._index:
                    raise WorkflowDefinitionError(
                        f"step '{step.id}' references unknown step '{target}'"
                    )

        # iterative three-colour DFS
        state: Dict[str, int] = {}
        for root in self._steps:
            if state.get(root.id):
                continue
            stack = [(root.id, iter(self.targets(root)))]
            state[root.id] = 1
            while stack:
                node_id, children = stack[-1]
                child = next(children, None)
                if child is None:
                    state[node_id] = 2
                    stack.pop()
                elif state.get(child) == 1:
                    raise WorkflowDefinitionError(
                        f"step graph contains a cycle through '{child}'"
                    )
                elif not state.get(child):
                    state[child] = 1
                    stack.append((child, iter(self.targets(self.get(child)))))


def _assign_step_ids(steps: List[Step]) -> None:
    for pos, step in enumerate(steps, start=1):
        if not step.id:
            step.id = f"step-{pos}"


class WorkflowMetrics(BaseModel):
    total_entered: int = 0
    completed: int = 0
    active: int = 0
    dropped: int = 0


class Workflow(BaseModel):
    """An automation definition: one trigger and a step graph."""

    id: str = Field(default_factory=new_id)
    name: str
    description: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.DRAFT
    trigger: WorkflowTrigger
    steps: List[Step] = Field(default_factory=list)
    organization_id: Optional[str] = None
    metrics: WorkflowMetrics = Field(default_factory=WorkflowMetrics)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _validate_graph(self) -> "Workflow":
        _assign_step_ids(self.steps)
        StepGraph(self.steps).validate()
        return self

    @property
    def graph(self) -> StepGraph:
        return StepGraph(self.steps)

    @property
    def is_active(self) -> bool:
        return self.status == WorkflowStatus.ACTIVE


class Contact(BaseModel):
    """The slice of a CRM contact the automation core relies on."""

    model_config = ConfigDict(extra="allow")

    id: str
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    whatsapp_number: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)
    deal_stage: Optional[str] = None
    last_contacted: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("last_contacted", "created_at", "updated_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class WorkflowExecution(BaseModel):
    """One run of a workflow against one contact."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    contact_id: str
    organization_id: Optional[str] = None
    current_step_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    started_at: datetime = Field(default_factory=utcnow)
    resume_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    steps: List[Step] = Field(default_factory=list)
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def graph(self) -> StepGraph:
        return StepGraph(self.steps)


class ExecutionStepRecord(BaseModel):
    """History entry for a single step of an execution."""

    id: str = Field(default_factory=new_id)
    execution_id: str
    step_id: str
    kind: str
    status: Literal["running", "waiting", "completed", "failed", "cancelled"] = "running"
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    version: int = 0


class ContactOperation(BaseModel):
    """A non-messaging mutation applied to a contact."""

    type: Literal["add_tag", "remove_tag", "set_field", "move_stage"]
    tag: Optional[str] = None
    field: Optional[str] = None
    value: Any = None
    stage: Optional[str] = None


def coerce(model: type[ModelT], value: Union[ModelT, Mapping[str, Any]]) -> ModelT:
    """Accept either a model instance or a plain mapping."""
    if isinstance(value, model):
        return value
    return model.model_validate(value)
