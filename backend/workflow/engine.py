"""Execution Engine: the approval workflow state machine.

An execution moves ``pending -> in_progress -> completed | failed |
cancelled | timeout``. While ``in_progress`` it sits on exactly one step.
Human steps (task, approval) wait for their tasks; notification,
automation and condition steps resolve immediately, in a loop, inside
the same transaction that entered them.

Every mutating operation runs behind two guards:

- an in-process ``asyncio.Lock`` per execution id, and
- a database claim: ``UPDATE workflow_executions SET revision = revision + 1
  WHERE id = :id AND status = 'in_progress' AND current_step_id = :expected``.

A claim that matches no row means the signal is late or duplicated. It is
logged as ``signal_ignored`` and the call returns False without touching
anything. The claim is the first write of its transaction, so on SQLite it
also takes the database write lock before anything is read for update.

Notifications are collected in an ``Outbox`` and sent only after commit.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional
from uuid import uuid4

import structlog
from sqlalchemy import update

from core.constants import (
    ErrorKind,
    ExecutionStatus,
    SignalSource,
    StepResult,
    StepType,
    WorkflowStatus,
)
from core.exceptions import (
    DefinitionNotActive,
    DefinitionNotFound,
    ExecutionNotFound,
    InvalidExecutionState,
)
from core.utils import Clock, add_minutes, isoformat, minutes_between, utc_now
from db.models.execution import WorkflowExecution
from db.models.workflow import Workflow
from workflow.assignment import AssignmentResolver, ResolutionContext
from workflow.automation import AutomationRegistry, get_automation_registry
from workflow.conditions import ConditionEvaluator, build_namespace
from workflow.graph import CompiledStep, CompiledWorkflow

logger = structlog.get_logger(__name__)

_UNSET = object()


# ─── Signals ──────────────────────────────────────────────────

@dataclass(frozen=True)
class StepOutcome:
    """Aggregated result of a step, as reported to ``advance``."""

    success: bool
    outcome: str
    actor: Optional[str] = None
    source: SignalSource = SignalSource.TASK
    outcomes: tuple = ()
    details: dict = field(default_factory=dict)
    skipped: bool = False

    @classmethod
    def approved(cls, actor: Optional[str] = None, source: SignalSource = SignalSource.TASK) -> "StepOutcome":
        return cls(success=True, outcome="approved", actor=actor, source=source)

    @classmethod
    def rejected(cls, actor: Optional[str] = None, source: SignalSource = SignalSource.TASK) -> "StepOutcome":
        return cls(success=False, outcome="rejected", actor=actor, source=source)


@dataclass
class TriggerContext:
    """What started an execution."""

    related_entity_id: Optional[str] = None
    related_entity: Optional[str] = None
    initiated_by: Optional[str] = None
    variables: dict[str, Any] = field(default_factory=dict)
    execution_data: dict[str, Any] = field(default_factory=dict)
    due_date: Optional[datetime] = None
    priority: int = 0


@dataclass(frozen=True)
class Notice:
    recipients: tuple
    template_key: str
    context: dict


class Outbox(list):
    """Notifications to send once the transition has committed."""

    def add(self, recipients: Iterable[Optional[str]], template_key: str, **context) -> None:
        users = tuple(sorted({r for r in recipients if r}))
        if users:
            self.append(Notice(recipients=users, template_key=template_key, context=context))


class KeyedLocks:
    """One asyncio.Lock per key, dropped when nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# ─── Engine ───────────────────────────────────────────────────

class ExecutionEngine:
    """Owns WorkflowExecution rows and every transition they go through.

    Args:
        session_factory: async_sessionmaker; each operation commits once
        definitions: object with ``async load(workflow_id) -> CompiledWorkflow``
        task_manager: TaskManager; bound back to this engine
        resolver: AssignmentResolver
        notifier: object with ``async notify(recipients, template_key, context)``
        evaluator: ConditionEvaluator
        automations: AutomationRegistry for automation steps
        clock: Returns naive UTC now
    """

    def __init__(
        self,
        session_factory,
        definitions,
        task_manager,
        resolver: AssignmentResolver,
        notifier=None,
        evaluator: Optional[ConditionEvaluator] = None,
        automations: Optional[AutomationRegistry] = None,
        clock: Clock = utc_now,
    ):
        self._session_factory = session_factory
        self.definitions = definitions
        self.tasks = task_manager
        self.resolver = resolver
        self.notifier = notifier
        self.evaluator = evaluator or ConditionEvaluator()
        self.automations = automations or get_automation_registry()
        self._clock = clock
        self.locks = KeyedLocks()
        task_manager.engine = self

    @asynccontextmanager
    async def scope(self, execution_id: str):
        """Serialize work on one execution and tag every log line with its id."""
        with structlog.contextvars.bound_contextvars(execution_id=execution_id):
            async with self.locks.hold(execution_id):
                yield

    def new_outbox(self) -> Outbox:
        return Outbox()

    # ─── Public operations ─────────────────────────────────

    async def start(self, workflow_id: str, context: TriggerContext) -> str:
        """Start an execution of an active workflow version.

        Returns:
            The new execution id

        Raises:
            DefinitionNotFound: If the version does not exist
            DefinitionNotActive: If the version is not active
        """
        execution_id = str(uuid4())
        with structlog.contextvars.bound_contextvars(execution_id=execution_id):
            return await self._start(execution_id, workflow_id, context)

    async def _start(self, execution_id: str, workflow_id: str, context: TriggerContext) -> str:
        outbox = self.new_outbox()
        async with self._session_factory() as session:
            row = await session.get(Workflow, workflow_id)
            if row is None:
                raise DefinitionNotFound(f"Workflow {workflow_id} not found")
            if row.status != WorkflowStatus.ACTIVE.value:
                raise DefinitionNotActive(workflow_id, row.status)
            workflow = await self.definitions.load(workflow_id)

            now = self._clock()
            execution = WorkflowExecution(
                id=execution_id,
                workflow_id=workflow.id,
                related_entity=context.related_entity,
                related_entity_id=context.related_entity_id,
                status=ExecutionStatus.PENDING.value,
                initiated_by=context.initiated_by,
                started_at=now,
                execution_data=dict(context.execution_data),
                variables=dict(context.variables),
                step_history=[],
                errors=[],
                priority=context.priority,
                due_date=context.due_date or add_minutes(now, workflow.config.max_duration_minutes),
                created_at=now,
                updated_at=now,
            )
            session.add(execution)
            await session.flush()

            await self._enter(session, execution, workflow, workflow.first, now, outbox)
            await session.commit()
            status = execution.status

        logger.info(
            "execution_started",
            execution_id=execution_id,
            workflow_id=workflow.id,
            workflow=workflow.name,
            version=workflow.version,
            status=status,
        )
        await self.deliver(outbox)
        return execution_id

    async def advance(
        self,
        execution_id: str,
        expected_step_id: str,
        outcome: StepOutcome,
        expected_deadline=_UNSET,
    ) -> bool:
        """Resolve the current step with ``outcome`` and move on.

        A no-op returning False when the execution is terminal, the step
        has moved on, or (when given) the step deadline has changed.
        """
        async with self.scope(execution_id):
            outbox = self.new_outbox()
            async with self._session_factory() as session:
                advanced = await self.advance_in_session(
                    session, execution_id, expected_step_id, outcome, outbox, expected_deadline
                )
                if advanced:
                    await session.commit()
            await self.deliver(outbox)
            return advanced

    async def advance_in_session(
        self,
        session,
        execution_id: str,
        expected_step_id: str,
        outcome: StepOutcome,
        outbox: Outbox,
        expected_deadline=_UNSET,
    ) -> bool:
        """``advance`` inside the caller's transaction; the caller commits."""
        extra = () if expected_deadline is _UNSET else (self._deadline_is(expected_deadline),)
        execution = await self._claim(session, execution_id, expected_step_id, *extra)
        if execution is None:
            self._log_ignored("advance", execution_id, expected_step_id, outcome=outcome.outcome)
            return False

        workflow = await self.definitions.load(execution.workflow_id)
        step = workflow.step(expected_step_id)
        now = self._clock()
        following = await self._exit(session, execution, workflow, step, outcome, now, outbox)
        if following is not None:
            await self._enter(session, execution, workflow, following, now, outbox)
        return True

    async def cancel(self, execution_id: str, actor: Optional[str], reason: Optional[str] = None) -> WorkflowExecution:
        """Cancel a pending or in-progress execution and all of its open tasks.

        Raises:
            ExecutionNotFound: If the execution does not exist
            InvalidExecutionState: If the execution is already terminal
        """
        async with self.scope(execution_id):
            outbox = self.new_outbox()
            async with self._session_factory() as session:
                claimed = await session.execute(
                    update(WorkflowExecution)
                    .where(
                        WorkflowExecution.id == execution_id,
                        WorkflowExecution.status.in_(
                            (ExecutionStatus.PENDING.value, ExecutionStatus.IN_PROGRESS.value)
                        ),
                    )
                    .values(revision=WorkflowExecution.revision + 1)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    existing = await session.get(WorkflowExecution, execution_id)
                    if existing is None:
                        raise ExecutionNotFound(execution_id)
                    raise InvalidExecutionState(execution_id, existing.status, "cancel")

                execution = await session.get(WorkflowExecution, execution_id, populate_existing=True)
                workflow = await self.definitions.load(execution.workflow_id)
                now = self._clock()

                assignees = frozenset()
                if workflow.has_step(execution.current_step_id):
                    step = workflow.step(execution.current_step_id)
                    assignees = await self.tasks.open_assignees(session, execution.id, step.id)
                    self._append_history(
                        execution, step, now,
                        StepOutcome(success=False, outcome="cancelled", actor=actor, source=SignalSource.OPERATOR),
                        StepResult.CANCELLED,
                    )
                cancelled = await self.tasks.cancel_all_for_execution(session, execution.id, now, reason)

                execution.status = ExecutionStatus.CANCELLED.value
                execution.cancelled_at = now
                execution.cancelled_by = actor
                execution.cancellation_reason = reason
                self._clear_current(execution)
                outbox.add(
                    [execution.initiated_by, *assignees] if workflow.config.notify_initiator else assignees,
                    "workflow_cancelled",
                    reason=reason,
                    **self._notice_context(execution, workflow),
                )
                await session.commit()

            logger.info(
                "execution_cancelled",
                execution_id=execution_id,
                actor=actor,
                reason=reason,
                tasks_cancelled=cancelled,
            )
            await self.deliver(outbox)
            return execution

    async def escalate(self, execution_id: str, expected_step_id: str, expected_deadline) -> bool:
        """Open escalation tasks for the current step without leaving it."""
        return await self._run_claimed(
            "escalate", execution_id, expected_step_id, self._escalate,
            self._deadline_is(expected_deadline),
        )

    async def remind(self, execution_id: str, expected_step_id: str, expected_deadline) -> bool:
        """Remind open assignees and push the step deadline forward."""
        return await self._run_claimed(
            "remind", execution_id, expected_step_id, self._remind,
            self._deadline_is(expected_deadline),
        )

    async def expire_step(self, execution_id: str, expected_step_id: str, expected_deadline) -> bool:
        """Step deadline passed with no timeout action: execution times out."""
        return await self._run_claimed(
            "expire_step", execution_id, expected_step_id, self._expire_step,
            self._deadline_is(expected_deadline),
        )

    async def expire_execution(self, execution_id: str, expected_step_id: str) -> bool:
        """Execution ``due_date`` elapsed: execution times out."""
        now = self._clock()
        return await self._run_claimed(
            "expire_execution", execution_id, expected_step_id, self._expire_execution,
            WorkflowExecution.due_date.is_not(None),
            WorkflowExecution.due_date <= now,
        )

    async def retry_assignment(self, execution_id: str, expected_step_id: str) -> bool:
        """Re-run assignment for a step that stalled with no assignees."""
        return await self._run_claimed(
            "retry_assignment", execution_id, expected_step_id, self._retry_assignment
        )

    async def get(self, execution_id: str) -> WorkflowExecution:
        """Raises ExecutionNotFound."""
        async with self._session_factory() as session:
            execution = await session.get(WorkflowExecution, execution_id)
        if execution is None:
            raise ExecutionNotFound(execution_id)
        return execution

    async def deliver(self, outbox: Outbox) -> None:
        """Send collected notifications. Failures are logged only."""
        if self.notifier is None:
            return
        for notice in outbox:
            try:
                await self.notifier.notify(list(notice.recipients), notice.template_key, notice.context)
            except Exception:
                logger.exception(
                    "notification_dispatch_failed",
                    template_key=notice.template_key,
                    recipients=list(notice.recipients),
                )

    # ─── Claiming ──────────────────────────────────────────

    async def _claim(self, session, execution_id: str, expected_step_id: str, *extra) -> Optional[WorkflowExecution]:
        result = await session.execute(
            update(WorkflowExecution)
            .where(
                WorkflowExecution.id == execution_id,
                WorkflowExecution.status == ExecutionStatus.IN_PROGRESS.value,
                WorkflowExecution.current_step_id == expected_step_id,
                *extra,
            )
            .values(revision=WorkflowExecution.revision + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return await session.get(WorkflowExecution, execution_id, populate_existing=True)

    @staticmethod
    def _deadline_is(expected: Optional[datetime]):
        if expected is None:
            return WorkflowExecution.step_deadline_at.is_(None)
        return WorkflowExecution.step_deadline_at == expected

    async def _run_claimed(self, operation: str, execution_id: str, expected_step_id: str, handler, *extra) -> bool:
        async with self.scope(execution_id):
            outbox = self.new_outbox()
            async with self._session_factory() as session:
                execution = await self._claim(session, execution_id, expected_step_id, *extra)
                if execution is None:
                    self._log_ignored(operation, execution_id, expected_step_id)
                    return False
                workflow = await self.definitions.load(execution.workflow_id)
                step = workflow.step(expected_step_id)
                await handler(session, execution, workflow, step, self._clock(), outbox)
                await session.commit()
            await self.deliver(outbox)
            return True

    @staticmethod
    def _log_ignored(operation: str, execution_id: str, expected_step_id: str, **extra) -> None:
        logger.info(
            "signal_ignored",
            operation=operation,
            execution_id=execution_id,
            expected_step_id=expected_step_id,
            **extra,
        )

    # ─── Step entry ────────────────────────────────────────

    async def _enter(
        self,
        session,
        execution: WorkflowExecution,
        workflow: CompiledWorkflow,
        step: Optional[CompiledStep],
        now: datetime,
        outbox: Outbox,
        keep_entered_at: bool = False,
    ) -> None:
        """Enter ``step`` and keep going until a step has to wait or the run ends."""
        while step is not None:
            self._set_current(execution, step, now, keep_entered_at)
            keep_entered_at = False
            logger.info(
                "step_entered",
                execution_id=execution.id,
                step_id=step.id,
                step=step.name,
                step_type=step.step_type.value,
            )

            if step.is_human:
                if await self._assign(session, execution, workflow, step, now, outbox):
                    return
                outcome = StepOutcome(
                    success=True, outcome="skipped", source=SignalSource.SYSTEM, skipped=True
                )
            else:
                outcome = await self._run_immediate(execution, workflow, step, now, outbox)

            step = await self._exit(session, execution, workflow, step, outcome, now, outbox)

    def _set_current(self, execution: WorkflowExecution, step: CompiledStep, now: datetime, keep_entered_at: bool) -> None:
        execution.status = ExecutionStatus.IN_PROGRESS.value
        execution.current_step_id = step.id
        execution.current_step_order = step.order
        if not keep_entered_at or execution.step_entered_at is None:
            execution.step_entered_at = now
        execution.step_deadline_at = add_minutes(now, step.timeout_duration)
        execution.step_approvals = 0
        execution.step_rejections = 0
        execution.escalation_level = 0
        execution.updated_at = now

    @staticmethod
    def _clear_current(execution: WorkflowExecution) -> None:
        execution.current_step_id = None
        execution.current_step_order = None
        execution.step_deadline_at = None
        execution.lease_owner = None
        execution.lease_expires_at = None

    async def _assign(self, session, execution, workflow, step, now, outbox) -> bool:
        """Open tasks for a human step.

        Returns False when the step is to be skipped, True when it now
        waits (tasks opened, or stalled without assignees).
        """
        context = ResolutionContext(
            execution_id=execution.id,
            initiated_by=execution.initiated_by,
            session=session,
        )
        resolution = await self.resolver.resolve_with_issues(step, context)
        issues = [i.to_dict() for i in resolution.issues]

        if not resolution.assignees:
            if step.allow_skip:
                if issues:
                    self._record_error(
                        execution, ErrorKind.RESOLUTION, step.id,
                        f"no assignees for step '{step.name}', skipped", {"issues": issues}, now,
                    )
                logger.info("step_skipped", execution_id=execution.id, step_id=step.id)
                return False
            self._record_error(
                execution, ErrorKind.RESOLUTION, step.id,
                f"no assignees for step '{step.name}'", {"issues": issues}, now,
            )
            logger.warning("step_stalled", execution_id=execution.id, step_id=step.id, issues=issues)
            return True

        if issues:
            self._record_error(
                execution, ErrorKind.RESOLUTION, step.id,
                "some assignee lookups failed", {"issues": issues}, now,
            )
        await self.tasks.open_tasks_for_step(session, execution, step, resolution.assignees, now)
        outbox.add(
            resolution.assignees,
            step.review.notify_template,
            **self._notice_context(execution, workflow, step),
        )
        return True

    async def _run_immediate(self, execution, workflow, step, now, outbox) -> StepOutcome:
        """Resolve a notification, automation or condition step."""
        if step.step_type == StepType.CONDITION:
            return StepOutcome(success=True, outcome="evaluated", source=SignalSource.SYSTEM)

        if step.step_type == StepType.NOTIFICATION:
            config = step.config
            issues: list = []
            if config.recipients is not None:
                recipients = set(await self.resolver.resolve_spec(config.recipients, issues))
            else:
                context = ResolutionContext(execution_id=execution.id, initiated_by=execution.initiated_by)
                resolution = await self.resolver.resolve_with_issues(step, context)
                recipients, issues = set(resolution.assignees), resolution.issues
            if config.include_initiator and execution.initiated_by:
                recipients.add(execution.initiated_by)
            if issues:
                self._record_error(
                    execution, ErrorKind.RESOLUTION, step.id,
                    "some recipient lookups failed", {"issues": [i.to_dict() for i in issues]}, now,
                )
            outbox.add(
                recipients,
                config.template_key,
                **{**config.context, **self._notice_context(execution, workflow, step)},
            )
            return StepOutcome(
                success=True, outcome="notified", source=SignalSource.SYSTEM,
                details={"recipients": len(recipients)},
            )

        config = step.config
        try:
            produced = await self.automations.run(
                config.action, dict(config.params), self._automation_context(execution, step)
            )
        except Exception as e:
            self._record_error(
                execution, ErrorKind.AUTOMATION, step.id,
                f"automation '{config.action}' failed: {e}",
                {"action": config.action, "error": type(e).__name__}, now,
            )
            logger.warning(
                "automation_failed",
                execution_id=execution.id,
                step_id=step.id,
                action=config.action,
                error=str(e),
            )
            return StepOutcome(success=False, outcome="error", source=SignalSource.SYSTEM)

        execution.variables = {**(execution.variables or {}), **config.set_variables, **produced}
        return StepOutcome(success=True, outcome="done", source=SignalSource.SYSTEM)

    @staticmethod
    def _automation_context(execution, step) -> dict:
        return {
            "execution_id": execution.id,
            "step_id": step.id,
            "related_entity": execution.related_entity,
            "related_entity_id": execution.related_entity_id,
            "variables": dict(execution.variables or {}),
            "data": dict(execution.execution_data or {}),
        }

    # ─── Step exit ─────────────────────────────────────────

    async def _exit(self, session, execution, workflow, step, outcome: StepOutcome, now, outbox) -> Optional[CompiledStep]:
        """Close ``step``: history, branch choice, terminal transition.

        Returns the step to enter next, or None when the execution ended.
        """
        if outcome.skipped:
            success, result = True, StepResult.SKIPPED
        else:
            namespace = build_namespace(
                variables=execution.variables,
                data=execution.execution_data,
                outcome=outcome.outcome,
                outcomes=outcome.outcomes,
                approvals=execution.step_approvals or 0,
                rejections=execution.step_rejections or 0,
                related_entity_id=execution.related_entity_id,
            )
            evaluation = self.evaluator.evaluate(step.conditions, namespace)
            if evaluation.issues:
                self._record_error(
                    execution, ErrorKind.EVALUATION, step.id,
                    f"conditions of step '{step.name}' could not be fully evaluated",
                    {"issues": [i.to_dict() for i in evaluation.issues]}, now,
                )
            if step.step_type == StepType.CONDITION:
                success = evaluation.met
            else:
                success = outcome.success and evaluation.met
            result = StepResult.SUCCESS if success else StepResult.FAILURE

        if step.is_human:
            await self.tasks.cancel_open_for_step(session, execution.id, step.id, now)
        self._append_history(execution, step, now, outcome, result)

        following = workflow.successor(step, success)
        logger.info(
            "step_exited",
            execution_id=execution.id,
            step_id=step.id,
            outcome=outcome.outcome,
            result=result.value,
            source=outcome.source.value,
            next_step_id=following.id if following else None,
        )
        if following is None:
            if success:
                self._finish(execution, workflow, ExecutionStatus.COMPLETED, now, outbox)
            else:
                self._record_error(
                    execution, ErrorKind.STEP_FAILED, step.id,
                    f"step '{step.name}' failed with outcome '{outcome.outcome}'",
                    {"outcome": outcome.outcome, "source": outcome.source.value, **outcome.details},
                    now,
                )
                self._finish(execution, workflow, ExecutionStatus.FAILED, now, outbox)
        return following

    def _finish(self, execution, workflow, status: ExecutionStatus, now, outbox) -> None:
        execution.status = status.value
        self._clear_current(execution)
        if status == ExecutionStatus.COMPLETED:
            execution.completed_at = now
            execution.actual_duration = minutes_between(execution.started_at, now)
        else:
            execution.failed_at = now
        execution.updated_at = now

        template = {
            ExecutionStatus.COMPLETED: "workflow_completed",
            ExecutionStatus.FAILED: "workflow_failed",
            ExecutionStatus.TIMEOUT: "step_timeout",
        }[status]
        if workflow.config.notify_initiator:
            outbox.add([execution.initiated_by], template, **self._notice_context(execution, workflow))
        logger.info("execution_finished", execution_id=execution.id, status=status.value)

    # ─── Timeout handlers ──────────────────────────────────

    async def _escalate(self, session, execution, workflow, step, now, outbox) -> None:
        current = await self.tasks.open_tasks(session, execution.id, step.id)
        assignees = frozenset(t.assigned_to for t in current)
        context = ResolutionContext(
            execution_id=execution.id,
            initiated_by=execution.initiated_by,
            current_assignees=assignees,
            session=session,
        )
        resolution = await self.resolver.resolve_with_issues(step, context, escalation=True)
        targets = resolution.assignees - assignees
        level = (execution.escalation_level or 0) + 1
        execution.escalation_level = level
        execution.step_deadline_at = add_minutes(now, step.timeout_duration)
        execution.updated_at = now

        if targets:
            await self.tasks.open_tasks_for_step(
                session, execution, step, targets, now,
                assigned_by="system",
                parent_task_id=current[0].id if current else None,
                escalation_level=level,
            )
            outbox.add(
                targets, "task_escalated",
                escalation_level=level, **self._notice_context(execution, workflow, step),
            )
        else:
            self._record_error(
                execution, ErrorKind.RESOLUTION, step.id,
                f"no escalation target for step '{step.name}'",
                {"issues": [i.to_dict() for i in resolution.issues]}, now,
            )
        logger.info(
            "step_escalated",
            execution_id=execution.id,
            step_id=step.id,
            escalation_level=level,
            targets=sorted(targets),
        )

    async def _remind(self, session, execution, workflow, step, now, outbox) -> None:
        assignees = await self.tasks.open_assignees(session, execution.id, step.id)
        await self.tasks.mark_reminded(session, execution.id, step.id, now)
        execution.step_deadline_at = add_minutes(now, step.timeout_duration)
        execution.updated_at = now
        outbox.add(assignees, "task_reminder", **self._notice_context(execution, workflow, step))
        logger.info("step_reminded", execution_id=execution.id, step_id=step.id, recipients=len(assignees))

    async def _expire_step(self, session, execution, workflow, step, now, outbox) -> None:
        await self._time_out(
            session, execution, workflow, step, now, outbox,
            f"step '{step.name}' passed its deadline",
        )

    async def _expire_execution(self, session, execution, workflow, step, now, outbox) -> None:
        await self._time_out(
            session, execution, workflow, step, now, outbox,
            "execution passed its due date",
        )

    async def _time_out(self, session, execution, workflow, step, now, outbox, message: str) -> None:
        assignees = await self.tasks.open_assignees(session, execution.id, step.id)
        self._append_history(
            execution, step, now,
            StepOutcome(success=False, outcome="timeout", source=SignalSource.TIMEOUT),
            StepResult.TIMEOUT,
        )
        await self.tasks.cancel_all_for_execution(session, execution.id, now, "timed out")
        self._record_error(
            execution, ErrorKind.TIMEOUT, step.id, message,
            {"deadline": isoformat(execution.step_deadline_at), "due_date": isoformat(execution.due_date)},
            now,
        )
        outbox.add(assignees, "step_timeout", **self._notice_context(execution, workflow, step))
        self._finish(execution, workflow, ExecutionStatus.TIMEOUT, now, outbox)

    async def _retry_assignment(self, session, execution, workflow, step, now, outbox) -> None:
        if not step.is_human or await self.tasks.open_assignees(session, execution.id, step.id):
            logger.info("retry_assignment_not_needed", execution_id=execution.id, step_id=step.id)
            return
        await self._enter(session, execution, workflow, step, now, outbox, keep_entered_at=True)

    # ─── Bookkeeping ───────────────────────────────────────

    @staticmethod
    def _append_history(execution, step: CompiledStep, now, outcome: StepOutcome, result: StepResult) -> None:
        entry = {
            "step_id": step.id,
            "step_name": step.name,
            "order": step.order,
            "step_type": step.step_type.value,
            "entered_at": isoformat(execution.step_entered_at),
            "exited_at": isoformat(now),
            "outcome": outcome.outcome,
            "result": result.value,
            "actor": outcome.actor,
            "source": outcome.source.value,
        }
        execution.step_history = [*(execution.step_history or []), entry]

    @staticmethod
    def _record_error(execution, kind: ErrorKind, step_id: Optional[str], message: str, details: dict, now) -> None:
        entry = {
            "at": isoformat(now),
            "step_id": step_id,
            "kind": kind.value,
            "message": message,
            "details": details or {},
        }
        execution.errors = [*(execution.errors or []), entry]

    @staticmethod
    def _notice_context(execution, workflow: CompiledWorkflow, step: Optional[CompiledStep] = None) -> dict:
        context = {
            "execution_id": execution.id,
            "workflow_id": workflow.id,
            "workflow_name": workflow.name,
            "related_entity": execution.related_entity,
            "related_entity_id": execution.related_entity_id,
            "status": execution.status,
        }
        if step is not None:
            context.update(
                step_id=step.id,
                step_name=step.name,
                due_date=isoformat(execution.step_deadline_at),
            )
        return context
