"""Task Manager: opens, completes and cancels the tasks of workflow steps.

Quorum counting is done in the database. A completion first claims the
task with a conditional update on its open status, then increments the
execution's approval or rejection counter with a single
``col = col + 1`` update guarded by ``status`` and ``current_step_id``.
Every completion therefore sees a distinct counter value, and exactly one
of them observes the quorum being reached.
"""

from contextlib import asynccontextmanager
from typing import Iterable, Optional
from uuid import uuid4

import structlog
from sqlalchemy import func, select, update

from core.constants import (
    OPEN_TASK_STATUSES,
    ExecutionStatus,
    RejectionRule,
    SignalSource,
    TaskStatus,
)
from core.exceptions import InvalidTaskState, TaskNotFound
from core.utils import Clock, add_minutes, utc_now
from db.models.execution import WorkflowExecution
from db.models.task import Task
from workflow.engine import StepOutcome
from workflow.graph import CompiledStep

logger = structlog.get_logger(__name__)


class TaskManager:
    """Owns Task rows. Also the ``WorkloadProvider`` for auto assignment.

    ``engine`` is bound by the ExecutionEngine that owns this manager;
    completions reaching quorum advance the execution through it, inside
    the completion's own transaction.
    """

    def __init__(self, session_factory, clock: Clock = utc_now):
        self._session_factory = session_factory
        self._clock = clock
        self.engine = None

    @asynccontextmanager
    async def _reader(self, session=None):
        if session is not None:
            yield session
        else:
            async with self._session_factory() as own:
                yield own

    # ─── Opening ───────────────────────────────────────────

    async def open_tasks_for_step(
        self,
        session,
        execution: WorkflowExecution,
        step: CompiledStep,
        assignees: Iterable[str],
        now,
        assigned_by: Optional[str] = None,
        parent_task_id: Optional[str] = None,
        escalation_level: int = 0,
    ) -> list[Task]:
        """Create one assigned Task per assignee (sorted by id)."""
        review = step.review
        source = "escalation" if escalation_level else "assignment"
        tasks = [
            Task(
                id=str(uuid4()),
                workflow_execution_id=execution.id,
                workflow_step_id=step.id,
                related_entity_id=execution.related_entity_id,
                title=review.title or step.name,
                description=review.description,
                type=review.task_type or step.step_type.value,
                status=TaskStatus.ASSIGNED.value,
                priority=review.priority.value,
                assigned_to=user_id,
                assigned_by=assigned_by,
                assigned_at=now,
                due_date=add_minutes(now, step.timeout_duration),
                metadata_={"escalation_level": escalation_level, "source": source},
                parent_task_id=parent_task_id,
                created_at=now,
                updated_at=now,
            )
            for user_id in sorted(assignees)
        ]
        session.add_all(tasks)
        await session.flush()
        logger.info(
            "tasks_opened",
            execution_id=execution.id,
            step_id=step.id,
            assignees=[t.assigned_to for t in tasks],
            escalation_level=escalation_level,
        )
        return tasks

    # ─── Completion ────────────────────────────────────────

    async def complete(
        self,
        task_id: str,
        outcome: str,
        actor: str,
        form_data: Optional[dict] = None,
        notes: Optional[str] = None,
    ) -> Task:
        """Complete a task and advance its execution when the step resolves.

        Raises:
            TaskNotFound: If the task does not exist
            InvalidTaskState: If the task is closed, its execution is
                terminal, or its step is no longer the current one
        """
        async with self._session_factory() as session:
            task = await session.get(Task, task_id)
        if task is None:
            raise TaskNotFound(task_id)

        engine = self.engine
        async with engine.scope(task.workflow_execution_id):
            async with self._session_factory() as session:
                result, outbox = await self._complete_in_session(
                    session, task, outcome, actor, form_data, notes
                )
                await session.commit()
            await engine.deliver(outbox)
        return result

    async def _complete_in_session(self, session, task, outcome, actor, form_data, notes):
        engine = self.engine
        now = self._clock()

        claimed = await session.execute(
            update(Task)
            .where(Task.id == task.id, Task.status.in_(OPEN_TASK_STATUSES))
            .values(
                status=TaskStatus.COMPLETED.value,
                outcome=outcome,
                completed_at=now,
                completed_by=actor,
                form_data=form_data,
                notes=notes,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            current = await session.get(Task, task.id, populate_existing=True)
            status = current.status
            await session.rollback()
            raise InvalidTaskState(task.id, f"task is {status}", status)

        execution = await session.get(WorkflowExecution, task.workflow_execution_id)
        workflow = await engine.definitions.load(execution.workflow_id)
        step = workflow.step(task.workflow_step_id)
        review = step.review
        verdict = review.classify(outcome)

        values = {"revision": WorkflowExecution.revision + 1}
        if verdict is True:
            values["step_approvals"] = WorkflowExecution.step_approvals + 1
        elif verdict is False:
            values["step_rejections"] = WorkflowExecution.step_rejections + 1

        counters = (await session.execute(
            update(WorkflowExecution)
            .where(
                WorkflowExecution.id == execution.id,
                WorkflowExecution.status == ExecutionStatus.IN_PROGRESS.value,
                WorkflowExecution.current_step_id == task.workflow_step_id,
            )
            .values(**values)
            .returning(WorkflowExecution.step_approvals, WorkflowExecution.step_rejections)
            .execution_options(synchronize_session=False)
        )).first()
        if counters is None:
            execution = await session.get(WorkflowExecution, execution.id, populate_existing=True)
            status = execution.status
            await session.rollback()
            if status != ExecutionStatus.IN_PROGRESS.value:
                raise InvalidTaskState(task.id, f"execution is {status}", task.status)
            raise InvalidTaskState(task.id, "step is no longer current", task.status)
        approvals, rejections = counters

        execution = await session.get(WorkflowExecution, execution.id, populate_existing=True)
        if form_data:
            execution.execution_data = {**(execution.execution_data or {}), **form_data}
        await session.flush()

        remaining = await self._count_open(session, execution.id, step.id)
        outcomes = await self._step_outcomes(session, execution.id, step.id)
        signal = self._decide(
            step, verdict, outcome, approvals, remaining, actor, outcomes, review.rejection_rule
        )
        logger.info(
            "task_completed",
            execution_id=execution.id,
            step_id=step.id,
            task_id=task.id,
            outcome=outcome,
            approvals=approvals,
            rejections=rejections,
            remaining=remaining,
            resolves_step=signal is not None,
        )

        outbox = engine.new_outbox()
        if signal is not None:
            await engine.advance_in_session(session, execution.id, step.id, signal, outbox)

        task = await session.get(Task, task.id, populate_existing=True)
        return task, outbox

    @staticmethod
    def _decide(step, verdict, outcome, approvals, remaining, actor, outcomes, rule):
        normalized = (outcome or "").strip().lower()
        if verdict is False and rule == RejectionRule.ANY:
            return StepOutcome(
                success=False, outcome=normalized, actor=actor,
                source=SignalSource.TASK, outcomes=outcomes,
            )
        if verdict is True and approvals == step.required_approvals:
            return StepOutcome(
                success=True, outcome=normalized, actor=actor,
                source=SignalSource.TASK, outcomes=outcomes,
            )
        if approvals < step.required_approvals and approvals + remaining < step.required_approvals:
            return StepOutcome(
                success=False,
                outcome=normalized if verdict is False else "quorum_unreachable",
                actor=actor,
                source=SignalSource.TASK,
                outcomes=outcomes,
                details={"approvals": approvals, "required": step.required_approvals},
            )
        return None

    async def start(self, task_id: str, actor: str) -> Task:
        """Mark an assigned task as being worked on.

        Raises:
            TaskNotFound: If the task does not exist
            InvalidTaskState: If the task is not pending or assigned
        """
        now = self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                update(Task)
                .where(
                    Task.id == task_id,
                    Task.status.in_((TaskStatus.PENDING.value, TaskStatus.ASSIGNED.value)),
                )
                .values(status=TaskStatus.IN_PROGRESS.value, started_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            task = await session.get(Task, task_id, populate_existing=True)
            if task is None:
                raise TaskNotFound(task_id)
            if result.rowcount != 1:
                status = task.status
                await session.rollback()
                raise InvalidTaskState(task_id, f"task is {status}", status)
            await session.commit()
        logger.info("task_started", task_id=task_id, actor=actor)
        return task

    # ─── Cancellation ──────────────────────────────────────

    async def cancel_all_for_execution(self, session, execution_id: str, now, reason: Optional[str] = None) -> int:
        """Bulk-cancel every open task of an execution."""
        result = await session.execute(
            update(Task)
            .where(
                Task.workflow_execution_id == execution_id,
                Task.status.in_(OPEN_TASK_STATUSES),
            )
            .values(status=TaskStatus.CANCELLED.value, notes=reason, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def cancel_open_for_step(self, session, execution_id: str, step_id: str, now) -> int:
        """Cancel tasks left open when a step resolves."""
        result = await session.execute(
            update(Task)
            .where(
                Task.workflow_execution_id == execution_id,
                Task.workflow_step_id == step_id,
                Task.status.in_(OPEN_TASK_STATUSES),
            )
            .values(status=TaskStatus.CANCELLED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def mark_reminded(self, session, execution_id: str, step_id: str, now) -> int:
        result = await session.execute(
            update(Task)
            .where(
                Task.workflow_execution_id == execution_id,
                Task.workflow_step_id == step_id,
                Task.status.in_(OPEN_TASK_STATUSES),
            )
            .values(reminder_sent=True, reminder_sent_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # ─── Queries ───────────────────────────────────────────

    async def list_for_assignee(self, user_id: str, status: Optional[str] = None) -> list[Task]:
        """Tasks assigned to a user, open ones by default, most urgent first."""
        query = select(Task).where(Task.assigned_to == user_id)
        if status is None:
            query = query.where(Task.status.in_(OPEN_TASK_STATUSES))
        else:
            query = query.where(Task.status == status)
        query = query.order_by(Task.due_date.is_(None), Task.due_date, Task.created_at)
        async with self._session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    async def list_for_execution(self, execution_id: str) -> list[Task]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Task)
                .where(Task.workflow_execution_id == execution_id)
                .order_by(Task.created_at, Task.assigned_to)
            )
            return list(result.scalars().all())

    async def open_tasks(self, session, execution_id: str, step_id: str) -> list[Task]:
        result = await session.execute(
            select(Task)
            .where(
                Task.workflow_execution_id == execution_id,
                Task.workflow_step_id == step_id,
                Task.status.in_(OPEN_TASK_STATUSES),
            )
            .order_by(Task.assigned_to)
        )
        return list(result.scalars().all())

    async def open_assignees(self, session, execution_id: str, step_id: str) -> frozenset:
        return frozenset(t.assigned_to for t in await self.open_tasks(session, execution_id, step_id))

    async def _count_open(self, session, execution_id: str, step_id: str) -> int:
        result = await session.execute(
            select(func.count(Task.id)).where(
                Task.workflow_execution_id == execution_id,
                Task.workflow_step_id == step_id,
                Task.status.in_(OPEN_TASK_STATUSES),
            )
        )
        return result.scalar() or 0

    async def _step_outcomes(self, session, execution_id: str, step_id: str) -> tuple:
        result = await session.execute(
            select(Task.outcome)
            .where(
                Task.workflow_execution_id == execution_id,
                Task.workflow_step_id == step_id,
                Task.status == TaskStatus.COMPLETED.value,
            )
            .order_by(Task.completed_at, Task.id)
        )
        return tuple(o for o in result.scalars().all() if o is not None)

    # ─── WorkloadProvider ──────────────────────────────────

    async def open_task_counts(self, session, user_ids: Iterable[str]) -> dict[str, int]:
        user_ids = list(user_ids)
        async with self._reader(session) as s:
            result = await s.execute(
                select(Task.assigned_to, func.count(Task.id))
                .where(Task.assigned_to.in_(user_ids), Task.status.in_(OPEN_TASK_STATUSES))
                .group_by(Task.assigned_to)
            )
            counts = {user: count for user, count in result.all()}
        return {user: counts.get(user, 0) for user in user_ids}

    async def assignment_count(self, session, step_id: str) -> int:
        """Tasks ever opened for a step; the round-robin cursor."""
        async with self._reader(session) as s:
            result = await s.execute(
                select(func.count(Task.id)).where(Task.workflow_step_id == step_id)
            )
            return result.scalar() or 0
