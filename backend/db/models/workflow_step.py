"""WorkflowStep model."""

from typing import Optional

from sqlalchemy import JSON, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import BaseModel


class WorkflowStep(BaseModel):
    """A single step of one workflow version.

    Attributes:
        id: Unique identifier (UUID string)
        workflow_id: Foreign key to the owning Workflow version
        name: Step name
        step_type: task, approval, notification, automation or condition
        order: Position in the workflow, unique per version
        config: Step-type specific configuration document
        assignment_type: user, role, group or auto
        assigned_to: User ids, role names or group ids
        required_approvals: Quorum for approval steps (>= 1)
        timeout_duration: Step deadline in minutes
        timeout_action: escalate, auto_approve, auto_reject or notify
        conditions: Condition document deciding success/failure
        next_step_on_success / next_step_on_failure: Sibling step ids or null
        allow_skip: Skip the step when nobody can be assigned
        required: Whether the step is required for completion
        form_config: Form definition shown to assignees (opaque to the engine)
    """

    __tablename__ = "workflow_steps"
    __table_args__ = (
        UniqueConstraint("workflow_id", "order", name="uq_workflow_steps_order"),
    )

    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(nullable=False)
    description: Mapped[Optional[str]] = mapped_column(nullable=True)
    step_type: Mapped[str] = mapped_column(nullable=False, index=True)
    order: Mapped[int] = mapped_column(nullable=False)
    config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    assignment_type: Mapped[Optional[str]] = mapped_column(nullable=True)
    assigned_to: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    required_approvals: Mapped[int] = mapped_column(nullable=False, default=1)
    timeout_duration: Mapped[Optional[int]] = mapped_column(nullable=True)
    timeout_action: Mapped[Optional[str]] = mapped_column(nullable=True)
    conditions: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    next_step_on_success: Mapped[Optional[str]] = mapped_column(nullable=True)
    next_step_on_failure: Mapped[Optional[str]] = mapped_column(nullable=True)
    allow_skip: Mapped[bool] = mapped_column(default=False)
    required: Mapped[bool] = mapped_column(default=True)
    form_config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Relationships
    workflow: Mapped["Workflow"] = relationship(
        "Workflow", back_populates="steps", lazy="noload"
    )
