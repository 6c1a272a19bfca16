"""Timeout Scheduler: fires step and execution deadlines.

Each ``sweep``:

1. selects in-progress executions whose step deadline or execution due
   date has passed, oldest first;
2. leases each one (``lease_owner`` / ``lease_expires_at``) so that only
   one scheduler instance works on it at a time;
3. applies the timeout through the engine, passing the deadline it saw so
   the engine's claim rejects a step that moved or was already handled;
4. releases the lease.

Several instances may sweep concurrently; each expired step produces one
effect.
"""

import asyncio
import socket
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

import structlog
from sqlalchemy import or_, select, update

from core.constants import ExecutionStatus, SignalSource, TimeoutAction
from core.exceptions import DefinitionNotFound
from core.utils import Clock, utc_now
from db.models.execution import WorkflowExecution
from workflow.engine import ExecutionEngine, StepOutcome

logger = structlog.get_logger(__name__)


@dataclass
class SweepReport:
    """What one sweep did."""

    scanned: int = 0
    leased: int = 0
    fired: dict[str, int] = field(default_factory=dict)
    skipped: int = 0
    failed: int = 0

    def count(self, action: str) -> None:
        self.fired[action] = self.fired.get(action, 0) + 1

    @property
    def total_fired(self) -> int:
        return sum(self.fired.values())

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "leased": self.leased,
            "fired": dict(self.fired),
            "skipped": self.skipped,
            "failed": self.failed,
        }


@dataclass(frozen=True)
class _Candidate:
    id: str
    workflow_id: str
    current_step_id: str
    step_deadline_at: Optional[datetime]
    due_date: Optional[datetime]


class TimeoutScheduler:
    """Explicit, lease-based replacement for an always-on polling loop."""

    def __init__(
        self,
        engine: ExecutionEngine,
        session_factory,
        clock: Clock = utc_now,
        instance_id: Optional[str] = None,
        lease_seconds: int = 120,
        batch_size: int = 100,
    ):
        self.engine = engine
        self._session_factory = session_factory
        self._clock = clock
        self.instance_id = instance_id or f"{socket.gethostname()}:{uuid4().hex[:8]}"
        self.lease_seconds = lease_seconds
        self.batch_size = batch_size

    async def sweep(self) -> SweepReport:
        report = SweepReport()
        now = self._clock()
        candidates = await self._due(now)
        report.scanned = len(candidates)

        for candidate in candidates:
            if not await self._lease(candidate.id, now):
                report.skipped += 1
                continue
            report.leased += 1
            try:
                action = await self._fire(candidate, now)
            except Exception:
                report.failed += 1
                logger.exception(
                    "timeout_fire_failed",
                    execution_id=candidate.id,
                    step_id=candidate.current_step_id,
                )
            else:
                if action is None:
                    report.skipped += 1
                else:
                    report.count(action)
            finally:
                await self._release(candidate.id)

        if report.scanned:
            logger.info("timeout_sweep", instance=self.instance_id, **report.to_dict())
        return report

    async def run_forever(self, interval: float = 60.0, stop: Optional[asyncio.Event] = None) -> None:
        """Sweep every ``interval`` seconds until ``stop`` is set."""
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await self.sweep()
            except Exception:
                logger.exception("timeout_sweep_crashed", instance=self.instance_id)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    # ─── Internals ─────────────────────────────────────────

    async def _due(self, now: datetime) -> list[_Candidate]:
        query = (
            select(
                WorkflowExecution.id,
                WorkflowExecution.workflow_id,
                WorkflowExecution.current_step_id,
                WorkflowExecution.step_deadline_at,
                WorkflowExecution.due_date,
            )
            .where(
                WorkflowExecution.status == ExecutionStatus.IN_PROGRESS.value,
                or_(
                    WorkflowExecution.step_deadline_at <= now,
                    WorkflowExecution.due_date <= now,
                ),
                or_(
                    WorkflowExecution.lease_owner.is_(None),
                    WorkflowExecution.lease_expires_at < now,
                ),
            )
            .order_by(WorkflowExecution.step_deadline_at, WorkflowExecution.due_date)
            .limit(self.batch_size)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(query)).all()
        return [_Candidate(*row) for row in rows]

    async def _lease(self, execution_id: str, now: datetime) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(WorkflowExecution)
                .where(
                    WorkflowExecution.id == execution_id,
                    WorkflowExecution.status == ExecutionStatus.IN_PROGRESS.value,
                    or_(
                        WorkflowExecution.lease_owner.is_(None),
                        WorkflowExecution.lease_expires_at < now,
                    ),
                )
                .values(
                    lease_owner=self.instance_id,
                    lease_expires_at=now + timedelta(seconds=self.lease_seconds),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    async def _release(self, execution_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(WorkflowExecution)
                .where(
                    WorkflowExecution.id == execution_id,
                    WorkflowExecution.lease_owner == self.instance_id,
                )
                .values(lease_owner=None, lease_expires_at=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def _fire(self, candidate: _Candidate, now: datetime) -> Optional[str]:
        """Apply the timeout for one execution; returns the action taken."""
        engine = self.engine
        execution_id, step_id, deadline = candidate.id, candidate.current_step_id, candidate.step_deadline_at

        if candidate.due_date is not None and candidate.due_date <= now:
            fired = await engine.expire_execution(execution_id, step_id)
            return "expire_execution" if fired else None

        try:
            workflow = await engine.definitions.load(candidate.workflow_id)
        except DefinitionNotFound:
            logger.error("timeout_definition_missing", execution_id=execution_id)
            return None
        step = workflow.step(step_id)
        action = step.timeout_action

        if action == TimeoutAction.AUTO_APPROVE:
            fired = await engine.advance(
                execution_id, step_id,
                StepOutcome(success=True, outcome="auto_approved", source=SignalSource.TIMEOUT),
                expected_deadline=deadline,
            )
        elif action == TimeoutAction.AUTO_REJECT:
            fired = await engine.advance(
                execution_id, step_id,
                StepOutcome(success=False, outcome="auto_rejected", source=SignalSource.TIMEOUT),
                expected_deadline=deadline,
            )
        elif action == TimeoutAction.ESCALATE:
            fired = await engine.escalate(execution_id, step_id, deadline)
        elif action == TimeoutAction.NOTIFY:
            fired = await engine.remind(execution_id, step_id, deadline)
        else:
            fired = await engine.expire_step(execution_id, step_id, deadline)

        name = action.value if action is not None else "expire_step"
        return name if fired else None
