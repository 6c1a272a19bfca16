"""Database models for the approval workflow engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.workflow import Workflow
from db.models.workflow_step import WorkflowStep
from db.models.execution import WorkflowExecution
from db.models.task import Task

__all__ = [
    "Workflow",
    "WorkflowStep",
    "WorkflowExecution",
    "Task",
]
