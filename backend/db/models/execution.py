"""WorkflowExecution model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import ExecutionStatus, TERMINAL_EXECUTION_STATUSES
from db.base import BaseModel


class WorkflowExecution(BaseModel):
    """One run of a workflow version against a triggering context.

    Mutated only by the execution engine. Every mutating write first
    claims the row with a conditional update on ``status`` and
    ``current_step_id`` (see ``workflow.engine``).

    Attributes:
        workflow_id: Bound workflow version
        related_entity / related_entity_id: Domain object (e.g. a permit)
        status: pending, in_progress, completed, failed, cancelled, timeout
        current_step_id / current_step_order: Set iff status is in_progress
        initiated_by: User who triggered the run
        execution_data: Data accumulated from task forms
        variables: Trigger variables plus automation output
        step_history: Append-only list of step exits
        errors: Append-only list of recoverable faults
        due_date: Execution level deadline
        actual_duration: Minutes from start to completion
        step_entered_at / step_deadline_at: Current step timing
        step_approvals / step_rejections: Quorum counters for the current step
        escalation_level: Escalations applied to the current step
        revision: Bumped by every mutating write
        lease_owner / lease_expires_at: Timeout sweep claim
    """

    __tablename__ = "workflow_executions"
    __table_args__ = (
        Index("ix_executions_status_deadline", "status", "step_deadline_at"),
        Index("ix_executions_status_due", "status", "due_date"),
    )

    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id"), nullable=False, index=True
    )
    related_entity: Mapped[Optional[str]] = mapped_column(nullable=True)
    related_entity_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    status: Mapped[str] = mapped_column(
        nullable=False, default=ExecutionStatus.PENDING.value, index=True
    )
    current_step_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    current_step_order: Mapped[Optional[int]] = mapped_column(nullable=True)
    initiated_by: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(nullable=True)

    execution_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    variables: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    step_history: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    errors: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    priority: Mapped[int] = mapped_column(default=0)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    actual_duration: Mapped[Optional[int]] = mapped_column(nullable=True)

    step_entered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    step_deadline_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    step_approvals: Mapped[int] = mapped_column(nullable=False, default=0)
    step_rejections: Mapped[int] = mapped_column(nullable=False, default=0)
    escalation_level: Mapped[int] = mapped_column(nullable=False, default=0)
    revision: Mapped[int] = mapped_column(nullable=False, default=0)
    lease_owner: Mapped[Optional[str]] = mapped_column(nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Relationships
    workflow: Mapped["Workflow"] = relationship(
        "Workflow", back_populates="executions", lazy="noload"
    )
    tasks: Mapped[list["Task"]] = relationship(
        "Task", back_populates="execution", lazy="noload"
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in {s.value for s in TERMINAL_EXECUTION_STATUSES}
