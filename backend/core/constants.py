"""Constants and enums for the approval workflow engine."""

from enum import Enum


class WorkflowStatus(str, Enum):
    """Workflow definition status."""

    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class ExecutionStatus(str, Enum):
    """Workflow execution status."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_EXECUTION_STATUSES


TERMINAL_EXECUTION_STATUSES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
    ExecutionStatus.TIMEOUT,
})


class StepType(str, Enum):
    """Fixed step-type vocabulary."""

    TASK = "task"
    APPROVAL = "approval"
    NOTIFICATION = "notification"
    AUTOMATION = "automation"
    CONDITION = "condition"

    @property
    def needs_assignees(self) -> bool:
        return self in (StepType.TASK, StepType.APPROVAL)


class AssignmentType(str, Enum):
    """How tasks for a step are assigned."""

    USER = "user"
    ROLE = "role"
    GROUP = "group"
    AUTO = "auto"


class TimeoutAction(str, Enum):
    """Action applied when a step deadline elapses."""

    ESCALATE = "escalate"
    AUTO_APPROVE = "auto_approve"
    AUTO_REJECT = "auto_reject"
    NOTIFY = "notify"


class TaskStatus(str, Enum):
    """Task status."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    OVERDUE = "overdue"


OPEN_TASK_STATUSES = (
    TaskStatus.PENDING.value,
    TaskStatus.ASSIGNED.value,
    TaskStatus.IN_PROGRESS.value,
)


class TaskPriority(str, Enum):
    """Task priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class StepResult(str, Enum):
    """Result recorded in a step history entry."""

    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class SignalSource(str, Enum):
    """Who caused a step transition."""

    TASK = "task"
    TIMEOUT = "timeout"
    SYSTEM = "system"
    OPERATOR = "operator"


class RejectionRule(str, Enum):
    """How rejections are counted against the approval quorum."""

    ANY = "any"
    QUORUM_UNREACHABLE = "quorum_unreachable"


class AutoStrategy(str, Enum):
    """Deterministic rules for assignment_type = auto."""

    ROUND_ROBIN = "round_robin"
    LEAST_LOADED = "least_loaded"


class ErrorKind(str, Enum):
    """Kinds of recoverable faults appended to WorkflowExecution.errors."""

    RESOLUTION = "resolution"
    EVALUATION = "evaluation"
    AUTOMATION = "automation"
    STEP_FAILED = "step_failed"
    TIMEOUT = "timeout"
