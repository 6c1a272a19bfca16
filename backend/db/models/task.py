"""Task model: one assignable unit of work for a workflow step."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import OPEN_TASK_STATUSES, TaskPriority, TaskStatus
from db.base import BaseModel


class Task(BaseModel):
    """Task model.

    Attributes:
        workflow_execution_id: Owning execution
        workflow_step_id: Step the task was opened for
        related_entity_id: Domain object (e.g. a permit)
        title / description: Shown to the assignee
        type: review, approval, inspection, ...
        status: pending, assigned, in_progress, completed, cancelled, overdue
        priority: low, medium, high, urgent
        assigned_to / assigned_by / assigned_at: Assignment
        due_date: Derived from the step's timeout_duration at creation
        completed_at / completed_by / outcome / notes / form_data: Completion
        metadata_: Escalation level, source (column name "metadata")
        reminder_sent / reminder_sent_at: Timeout reminders
        parent_task_id: Task this one escalates
    """

    __tablename__ = "tasks"
    __table_args__ = (
        Index("ix_tasks_execution_step_status", "workflow_execution_id", "workflow_step_id", "status"),
        Index("ix_tasks_assignee_status", "assigned_to", "status"),
    )

    workflow_execution_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    workflow_step_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_steps.id"), nullable=False, index=True
    )
    related_entity_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    title: Mapped[str] = mapped_column(nullable=False)
    description: Mapped[Optional[str]] = mapped_column(nullable=True)
    type: Mapped[str] = mapped_column(nullable=False, default="review")
    status: Mapped[str] = mapped_column(
        nullable=False, default=TaskStatus.PENDING.value, index=True
    )
    priority: Mapped[str] = mapped_column(nullable=False, default=TaskPriority.MEDIUM.value)
    assigned_to: Mapped[Optional[str]] = mapped_column(nullable=True)
    assigned_by: Mapped[Optional[str]] = mapped_column(nullable=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_by: Mapped[Optional[str]] = mapped_column(nullable=True)
    outcome: Mapped[Optional[str]] = mapped_column(nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(nullable=True)
    form_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    reminder_sent: Mapped[bool] = mapped_column(default=False)
    reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    parent_task_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("tasks.id"), nullable=True
    )

    # Relationships
    execution: Mapped["WorkflowExecution"] = relationship(
        "WorkflowExecution", back_populates="tasks", lazy="noload"
    )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TASK_STATUSES

    def is_overdue(self, now: datetime) -> bool:
        """Past its due date and still open."""
        return self.due_date is not None and now > self.due_date and self.is_open
