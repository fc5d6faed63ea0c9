"""Domain Models - Pydantic schemas for all entities"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Set, Union
from pydantic import BaseModel, Field, ConfigDict

from .enums import (
    RunStatus, StepExecutionStatus, StepType, ActionType, GuardrailType,
    VariableOperation, RunPriority, ConditionOperator, LogLevel,
    AuditAction, AuditOutcome
)


# ============================================================================
# Generic Store Records
# ============================================================================

class Entity(BaseModel):
    """Generic typed record (user, status value, task, definition, ...)"""
    id: str
    organization_id: str
    entity_type: str
    entity_name: str
    entity_code: Optional[str] = None
    smart_code: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    version: int = 1
    created_at: datetime
    updated_at: datetime


class DynamicField(BaseModel):
    """Scalar/blob attribute attached to an entity without schema change"""
    entity_id: str
    organization_id: str
    field_name: str
    field_value: Any = None
    smart_code: str
    updated_at: datetime


class Relationship(BaseModel):
    """Directed, typed, time-bounded edge between two entities"""
    id: str
    organization_id: str
    from_entity_id: str
    to_entity_id: str
    relationship_type: str
    is_active: bool = True
    effective_date: datetime
    expiration_date: Optional[datetime] = None
    smart_code: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    version: int = 1

    def is_current(self, at: datetime) -> bool:
        """Active and not yet expired at the given instant"""
        if not self.is_active:
            return False
        return self.expiration_date is None or self.expiration_date > at

    @property
    def ordering_key(self) -> tuple:
        """Total order used to pick the newest edge"""
        return (self.effective_date, self.id)


class TransactionLine(BaseModel):
    """Ordered line item of a transaction"""
    line_number: int
    entity_id: Optional[str] = None
    quantity: float = 1
    unit_amount: float = 0
    line_amount: float = 0
    smart_code: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Transaction(BaseModel):
    """Generic business or bookkeeping event"""
    id: str
    organization_id: str
    transaction_type: str
    smart_code: str
    transaction_code: Optional[str] = None
    source_entity_id: Optional[str] = None
    target_entity_id: Optional[str] = None
    total_amount: float = 0
    transaction_date: datetime
    transaction_status: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    version: int = 1
    lines: List[TransactionLine] = Field(default_factory=list)


# ============================================================================
# Identity
# ============================================================================

class ActorContext(BaseModel):
    """Current actor from the bearer token"""
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(..., description="User entity ID")
    organization_id: str = Field(..., description="Tenant organization ID")
    email: Optional[str] = Field(None, description="User email")
    display_name: Optional[str] = Field(None, description="User display name")
    roles: List[str] = Field(default_factory=list, description="Roles claimed by the token")


class SecurityContext(BaseModel):
    """Effective permissions, derived fresh from entity/relationship data"""
    user_id: str
    organization_id: str
    permissions: Set[str] = Field(default_factory=set)
    roles: Set[str] = Field(default_factory=set)
    department: Optional[str] = None


# ============================================================================
# Conditions
# ============================================================================

class Condition(BaseModel):
    """Single field comparison"""
    model_config = ConfigDict(extra="forbid")

    field: str = Field(..., description="Dotted path into instance variables")
    operator: ConditionOperator = Field(..., description="Comparison operator")
    value: Any = Field(None, description="Value to compare against")


class ConditionGroup(BaseModel):
    """Group of conditions with AND/OR logic"""
    model_config = ConfigDict(extra="forbid")

    logic: str = Field("AND", description="AND or OR")
    conditions: List[Condition] = Field(default_factory=list)


# ============================================================================
# Actions (closed tagged union)
# ============================================================================

class _ActionBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, description="Label used in logs")
    output_variable: Optional[str] = Field(None, description="Variable receiving the result")


class CreateEntityAction(_ActionBase):
    action_type: Literal[ActionType.CREATE_ENTITY] = ActionType.CREATE_ENTITY
    entity_type: str
    entity_name: str
    entity_code: Optional[str] = None
    smart_code: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    dynamic_fields: Dict[str, Any] = Field(default_factory=dict)


class CreateRelationshipAction(_ActionBase):
    action_type: Literal[ActionType.CREATE_RELATIONSHIP] = ActionType.CREATE_RELATIONSHIP
    from_entity_id: str
    to_entity_id: str
    relationship_type: str
    smart_code: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SetStatusAction(_ActionBase):
    action_type: Literal[ActionType.SET_STATUS] = ActionType.SET_STATUS
    subject_entity_id: str = "${subject_entity_id}"
    status_smart_code: str


class CreateTransactionAction(_ActionBase):
    action_type: Literal[ActionType.CREATE_TRANSACTION] = ActionType.CREATE_TRANSACTION
    transaction_type: str
    smart_code: str
    source_entity_id: Optional[str] = None
    target_entity_id: Optional[str] = None
    total_amount: Any = 0
    transaction_status: Optional[str] = None
    lines: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SendNotificationAction(_ActionBase):
    action_type: Literal[ActionType.SEND_NOTIFICATION] = ActionType.SEND_NOTIFICATION
    channel: str = "email"
    recipient: str
    template: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class CallApiAction(_ActionBase):
    action_type: Literal[ActionType.CALL_API] = ActionType.CALL_API
    method: str = "POST"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None


class SetVariableAction(_ActionBase):
    action_type: Literal[ActionType.SET_VARIABLE] = ActionType.SET_VARIABLE
    variable: str
    value: Any = None
    operation: VariableOperation = VariableOperation.SET


WorkflowAction = Annotated[
    Union[
        CreateEntityAction,
        CreateRelationshipAction,
        SetStatusAction,
        CreateTransactionAction,
        SendNotificationAction,
        CallApiAction,
        SetVariableAction,
    ],
    Field(discriminator="action_type"),
]


# ============================================================================
# Workflow Definition
# ============================================================================

class StepGuardrail(BaseModel):
    """Precondition evaluated before a step's actions"""
    model_config = ConfigDict(extra="forbid")

    guardrail_type: GuardrailType
    message: Optional[str] = Field(None, description="Override for the violation message")
    relationship_suffix: str = Field("_LINKED_TO_PAYMENT", description="payment_required: link type suffix")
    accepted_statuses: List[str] = Field(
        default_factory=lambda: ["settled", "approved", "completed", "paid"],
        description="payment_required: statuses counted as settled"
    )
    variables: List[str] = Field(default_factory=list, description="variable_required: names")
    allowed_statuses: List[str] = Field(default_factory=list, description="status_required: smart codes")


class StepTimeout(BaseModel):
    """Timeout for suspended steps"""
    duration_minutes: float = Field(..., gt=0)
    fallback_step_id: Optional[str] = None


class LoopSpec(BaseModel):
    """Iteration over a list variable"""
    items: str = Field(..., description="Variable holding the list")
    item_variable: str = "item"
    index_variable: str = "index"
    max_iterations: int = Field(100, ge=1)


class WorkflowStep(BaseModel):
    """Step definition in workflow"""
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    step_type: StepType = StepType.ACTION
    actions: List[WorkflowAction] = Field(default_factory=list)
    guardrails: List[StepGuardrail] = Field(default_factory=list)
    condition: Optional[ConditionGroup] = None
    error_handler: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[StepTimeout] = None
    next_step_id: Optional[str] = None
    branches: List["WorkflowStep"] = Field(default_factory=list)
    loop: Optional[LoopSpec] = None
    assignee_id: Optional[str] = Field(None, description="user_action: assignee (templated)")
    task_title: Optional[str] = None
    wait_minutes: Optional[float] = Field(None, description="wait: relative delay")
    wait_until: Optional[str] = Field(None, description="wait: ISO timestamp (templated)")


class WorkflowVariable(BaseModel):
    """Typed variable declared by a definition"""
    name: str
    var_type: str = "string"
    default_value: Any = None
    required: bool = False


class WorkflowTrigger(BaseModel):
    """How a definition is started"""
    trigger_type: str = "manual"
    config: Dict[str, Any] = Field(default_factory=dict)


class WorkflowDefinition(BaseModel):
    """Published, immutable process definition"""
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    version: str = "1"
    smart_code: str = ""
    description: Optional[str] = None
    trigger: WorkflowTrigger = Field(default_factory=WorkflowTrigger)
    variables: List[WorkflowVariable] = Field(default_factory=list)
    steps: List[WorkflowStep] = Field(default_factory=list)
    guardrails: List[StepGuardrail] = Field(default_factory=list)
    exception_handlers: Dict[str, str] = Field(default_factory=dict)

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def step_index(self, step_id: str) -> int:
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        return -1


# ============================================================================
# Runtime Records
# ============================================================================

class WorkflowInstance(BaseModel):
    """One run of one definition"""
    id: str
    organization_id: str
    definition_id: str
    definition_version: str = "1"
    status: RunStatus = RunStatus.RUNNING
    current_step_id: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    input_variables: Dict[str, Any] = Field(default_factory=dict)
    priority: RunPriority = RunPriority.NORMAL
    subject_entity_id: Optional[str] = None
    started_by: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    wake_at: Optional[datetime] = None
    timeout_at: Optional[datetime] = None
    retry_of: Optional[str] = None
    pending_execution_id: Optional[str] = None
    # Driving lease; written through update_instance only, never returned to callers
    driver_lease: Optional[str] = Field(default=None, exclude=True)
    driver_lease_expires_at: Optional[datetime] = Field(default=None, exclude=True)
    version: int = 1


class StepExecution(BaseModel):
    """Append-only record of one attempt to run one step"""
    id: str
    instance_id: str
    step_id: str
    step_name: str
    step_type: StepType
    status: StepExecutionStatus
    sequence: int
    attempt: int = 1
    branch_index: Optional[int] = None
    iteration: Optional[int] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    error_detail: Optional[str] = None
    output: Dict[str, Any] = Field(default_factory=dict)
    task_entity_id: Optional[str] = None
    version: int = 1

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


class RunLogEntry(BaseModel):
    """Log line attached to a run"""
    id: str
    instance_id: str
    level: LogLevel
    message: str
    step_id: Optional[str] = None
    timestamp: datetime


class AuditEvent(BaseModel):
    """Immutable audit record"""
    id: str
    organization_id: str
    actor_id: str
    action: AuditAction
    resource_type: str
    resource_id: Optional[str] = None
    outcome: AuditOutcome
    context: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None
    timestamp: datetime


class IdempotencyRecord(BaseModel):
    """Cached outcome of a mutating request"""
    entity_id: str
    key: str
    endpoint: str
    request_hash: str
    state: str = "in_progress"
    cached_response: Optional[Any] = None
    status_code: Optional[int] = None
    expires_at: datetime
    version: int = 1

    @property
    def is_complete(self) -> bool:
        return self.state == "completed"


class RunDetailOptions(BaseModel):
    """Enrichments requested for run detail"""
    include_steps: bool = True
    include_step_details: bool = False
    include_logs: bool = False
    include_metrics: bool = False
    include_timeline: bool = False
    step_limit: int = Field(100, ge=1, le=1000)
    log_level: LogLevel = LogLevel.INFO


WorkflowStep.model_rebuild()
