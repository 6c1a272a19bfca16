"""Workflow definition model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import WorkflowStatus
from db.base import BaseModel


class Workflow(BaseModel):
    """One immutable-once-active version of a workflow definition.

    Attributes:
        id: Unique identifier (UUID string)
        name: Workflow name, shared by every version
        description: Workflow description
        type: Workflow type (permit_review, inspection_process, document_approval, ...)
        version: Version number, monotonic per name
        status: draft, active, inactive or archived
        config: Workflow level settings (max_duration_minutes, notify_initiator)
        trigger_type: What triggers this workflow (manual, permit_submitted, ...)
        trigger_conditions: Condition document matched against trigger variables
        priority: Higher wins when several active definitions match a trigger
        tags: Free-form labels
        estimated_duration: Estimated duration in minutes
        created_by / updated_by: User ids
        published_at / archived_at: Lifecycle timestamps
    """

    __tablename__ = "workflows"
    __table_args__ = (
        UniqueConstraint("name", "version", name="uq_workflows_name_version"),
    )

    name: Mapped[str] = mapped_column(nullable=False, index=True)
    description: Mapped[Optional[str]] = mapped_column(nullable=True)
    type: Mapped[str] = mapped_column(nullable=False, index=True)
    version: Mapped[int] = mapped_column(nullable=False, default=1)
    status: Mapped[str] = mapped_column(
        nullable=False, default=WorkflowStatus.DRAFT.value, index=True
    )
    config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    trigger_type: Mapped[str] = mapped_column(nullable=False, default="manual", index=True)
    trigger_conditions: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    priority: Mapped[int] = mapped_column(default=0)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    estimated_duration: Mapped[Optional[int]] = mapped_column(nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    updated_by: Mapped[Optional[str]] = mapped_column(nullable=True)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Relationships
    steps: Mapped[list["WorkflowStep"]] = relationship(
        "WorkflowStep",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="WorkflowStep.order",
        lazy="noload",
    )
    executions: Mapped[list["WorkflowExecution"]] = relationship(
        "WorkflowExecution",
        back_populates="workflow",
        lazy="noload",
    )
