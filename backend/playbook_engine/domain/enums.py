"""Domain Enumerations - All status and type definitions"""
from enum import Enum


# ============================================================================
# Run & Step Lifecycle
# ============================================================================

class RunStatus(str, Enum):
    """WorkflowInstance status"""
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class StepExecutionStatus(str, Enum):
    """Status of one attempt of one step"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepType(str, Enum):
    """Types of workflow steps"""
    ACTION = "action"
    USER_ACTION = "user_action"
    CONDITIONAL = "conditional"
    WAIT = "wait"
    PARALLEL = "parallel"
    LOOP = "loop"


class ActionType(str, Enum):
    """Closed set of mutations a step may perform"""
    CREATE_ENTITY = "create_entity"
    CREATE_RELATIONSHIP = "create_relationship"
    SET_STATUS = "set_status"
    CREATE_TRANSACTION = "create_transaction"
    SEND_NOTIFICATION = "send_notification"
    CALL_API = "call_api"
    SET_VARIABLE = "set_variable"


class GuardrailType(str, Enum):
    """Preconditions evaluated before a step's actions"""
    PAYMENT_REQUIRED = "payment_required"
    VARIABLE_REQUIRED = "variable_required"
    STATUS_REQUIRED = "status_required"


class VariableOperation(str, Enum):
    """set_variable operations"""
    SET = "set"
    INCREMENT = "increment"
    APPEND = "append"


class RunPriority(str, Enum):
    """Run scheduling priority"""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class RunControlAction(str, Enum):
    """Actions accepted by PUT run/{id}"""
    PAUSE = "pause"
    RESUME = "resume"
    UPDATE_PRIORITY = "update_priority"


class ConditionOperator(str, Enum):
    """Operators for condition evaluation"""
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    GREATER_THAN_OR_EQUALS = "GREATER_THAN_OR_EQUALS"
    LESS_THAN_OR_EQUALS = "LESS_THAN_OR_EQUALS"
    CONTAINS = "CONTAINS"
    NOT_CONTAINS = "NOT_CONTAINS"
    IN = "IN"
    NOT_IN = "NOT_IN"
    IS_EMPTY = "IS_EMPTY"
    IS_NOT_EMPTY = "IS_NOT_EMPTY"


class LogLevel(str, Enum):
    """Run log severity"""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return ["debug", "info", "warning", "error"].index(self.value)


# ============================================================================
# Audit
# ============================================================================

class AuditAction(str, Enum):
    """Security-relevant actions recorded in the audit trail"""
    PERMISSION_DENIED = "permission_denied"
    RUN_STARTED = "run_started"
    RUN_PAUSED = "run_paused"
    RUN_RESUMED = "run_resumed"
    RUN_PRIORITY_UPDATED = "run_priority_updated"
    RUN_CANCELLED = "run_cancelled"
    RUN_RETRIED = "run_retried"
    STEP_COMPLETED_EXTERNALLY = "step_completed_externally"
    IDEMPOTENT_REPLAY = "idempotent_replay"
    AUDIT_QUERIED = "audit_queried"


class AuditOutcome(str, Enum):
    """Result of an audited action"""
    SUCCESS = "success"
    FAILURE = "failure"
    DENIED = "denied"


# ============================================================================
# Generic Store Vocabulary
# ============================================================================

class EntityType(str, Enum):
    """Entity types the engine reads or writes"""
    WORKFLOW_DEFINITION = "workflow_definition"
    USER = "user"
    ROLE = "role"
    STATUS = "status"
    TASK = "task"
    IDEMPOTENCY_RECORD = "idempotency_record"


class TransactionType(str, Enum):
    """Transaction types used for workflow bookkeeping"""
    WORKFLOW_INSTANCE = "WORKFLOW_INSTANCE"
    WORKFLOW_STEP_EXECUTION = "WORKFLOW_STEP_EXECUTION"
    WORKFLOW_LOG = "WORKFLOW_LOG"
    SECURITY_AUDIT = "security_audit"


class RelationshipType(str, Enum):
    """Reserved relationship types"""
    HAS_STATUS = "HAS_STATUS"
    HAS_ROLE = "has_role"
    ASSIGNED_TO = "ASSIGNED_TO"


class Permission(str, Enum):
    """Permissions checked by the run control surface"""
    ADMIN = "admin"
    PLAYBOOK_EXECUTE = "playbook:execute"
    RUN_MANAGE = "playbook_run:manage"
    RUN_CANCEL = "playbook_run:cancel"
    RUN_VIEW_LOGS = "playbook_run:view_logs"
    READ_SENSITIVE = "system:read_sensitive"
    AUDIT_READ = "audit:read"


# Smart codes for engine-owned records
class SmartCode(str, Enum):
    """Smart codes stamped on engine bookkeeping records"""
    WORKFLOW_DEFINITION = "HERA.WORKFLOW.DEFINITION.V1"
    WORKFLOW_INSTANCE = "HERA.WORKFLOW.INSTANCE.V1"
    STEP_EXECUTION = "HERA.WORKFLOW.STEP.EXECUTION.V1"
    RUN_LOG = "HERA.WORKFLOW.RUN.LOG.V1"
    STATUS_ASSIGN = "HERA.WORKFLOW.STATUS.ASSIGN.V1"
    TASK = "HERA.WORKFLOW.TASK.USER.V1"
    TASK_ASSIGNMENT = "HERA.WORKFLOW.TASK.ASSIGN.V1"
    SECURITY_AUDIT = "HERA.SECURITY.AUDIT.EVENT.V1"
    IDEMPOTENCY_RECORD = "HERA.SYSTEM.IDEMPOTENCY.RECORD.V1"
    IDEMPOTENCY_FIELD = "HERA.SYSTEM.IDEMPOTENCY.FIELD.V1"
