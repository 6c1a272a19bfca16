"""Workflow service: the ingress facade used by the API layer and workers.

Wires the Definition Store, Execution Engine, Task Manager and Timeout
Scheduler together and exposes the operations the outside world calls:
starting executions from triggers, completing tasks, cancelling runs and
reading state.
"""

import logging
from typing import Any, Optional

from app.config import Settings, get_settings
from core.exceptions import DefinitionNotFound
from core.utils import Clock, utc_now
from db.models.execution import WorkflowExecution
from db.models.task import Task
from db.session import create_db_engine, create_session_factory
from notifications.manager import NotificationManager
from services.base import BaseService
from services.definition_store import DefinitionStore
from workflow.assignment import AssignmentResolver, HttpDirectory, StaticDirectory
from workflow.conditions import ConditionEvaluator, build_namespace
from workflow.engine import ExecutionEngine, TriggerContext
from workflow.retry_strategies import RETRY_PRESETS, RetryStrategy
from workflow.scheduler import TimeoutScheduler
from workflow.tasks import TaskManager

logger = logging.getLogger(__name__)


class ExecutionRepository(BaseService[WorkflowExecution]):
    def __init__(self, db):
        super().__init__(WorkflowExecution, db)


class WorkflowService:
    """Service for starting and driving workflow executions."""

    def __init__(
        self,
        definitions: DefinitionStore,
        engine: ExecutionEngine,
        tasks: TaskManager,
        scheduler: Optional[TimeoutScheduler] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        session_factory=None,
    ):
        self.definitions = definitions
        self.engine = engine
        self.tasks = tasks
        self.scheduler = scheduler
        self.evaluator = evaluator or engine.evaluator
        self._session_factory = session_factory

    # ─── Triggers ──────────────────────────────────────────

    async def start_execution(
        self,
        workflow_type: str,
        related_entity_id: Optional[str],
        initiator_id: Optional[str],
        initial_variables: Optional[dict[str, Any]] = None,
        related_entity: Optional[str] = None,
    ) -> WorkflowExecution:
        """Start the best matching active workflow of ``workflow_type``.

        The best match is the highest priority active version whose
        trigger conditions hold for ``initial_variables``.

        Raises:
            DefinitionNotFound: If no active definition matches
        """
        variables = dict(initial_variables or {})
        for candidate in await self.definitions.find_active(workflow_type=workflow_type):
            compiled = await self.definitions.load(candidate.id)
            if self._matches(compiled, variables, related_entity_id):
                execution_id = await self.engine.start(compiled.id, TriggerContext(
                    related_entity_id=related_entity_id,
                    related_entity=related_entity,
                    initiated_by=initiator_id,
                    variables=variables,
                ))
                return await self.engine.get(execution_id)
        raise DefinitionNotFound(f"No active workflow of type '{workflow_type}' matches the trigger")

    async def dispatch_trigger(
        self,
        trigger_type: str,
        related_entity_id: Optional[str],
        initiator_id: Optional[str],
        variables: Optional[dict[str, Any]] = None,
        related_entity: Optional[str] = None,
    ) -> list[str]:
        """Start every active workflow listening on ``trigger_type``.

        Returns:
            Ids of the executions started (possibly empty)
        """
        variables = dict(variables or {})
        started = []
        for candidate in await self.definitions.find_active(trigger_type=trigger_type):
            compiled = await self.definitions.load(candidate.id)
            if not self._matches(compiled, variables, related_entity_id):
                continue
            started.append(await self.engine.start(compiled.id, TriggerContext(
                related_entity_id=related_entity_id,
                related_entity=related_entity,
                initiated_by=initiator_id,
                variables=variables,
            )))
        logger.info(
            "Trigger %s for %s started %d execution(s)", trigger_type, related_entity_id, len(started)
        )
        return started

    def _matches(self, compiled, variables: dict, related_entity_id: Optional[str]) -> bool:
        result = self.evaluator.evaluate(
            compiled.trigger_conditions,
            build_namespace(variables=variables, related_entity_id=related_entity_id),
        )
        if result.issues:
            logger.debug(
                "Trigger conditions of %s not evaluable: %s",
                compiled.id, [i.to_dict() for i in result.issues],
            )
        return result.met

    # ─── Tasks ─────────────────────────────────────────────

    async def complete_task(
        self,
        task_id: str,
        outcome: str,
        actor_id: str,
        form_data: Optional[dict] = None,
        notes: Optional[str] = None,
    ) -> Task:
        return await self.tasks.complete(task_id, outcome, actor_id, form_data=form_data, notes=notes)

    async def start_task(self, task_id: str, actor_id: str) -> Task:
        return await self.tasks.start(task_id, actor_id)

    async def list_tasks(self, assignee_id: str, status: Optional[str] = None) -> list[Task]:
        return await self.tasks.list_for_assignee(assignee_id, status=status)

    async def execution_tasks(self, execution_id: str) -> list[Task]:
        return await self.tasks.list_for_execution(execution_id)

    # ─── Executions ────────────────────────────────────────

    async def cancel_execution(
        self, execution_id: str, actor_id: Optional[str], reason: Optional[str] = None
    ) -> WorkflowExecution:
        return await self.engine.cancel(execution_id, actor_id, reason)

    async def retry_assignment(self, execution_id: str, step_id: str) -> bool:
        return await self.engine.retry_assignment(execution_id, step_id)

    async def get_execution(self, execution_id: str) -> WorkflowExecution:
        return await self.engine.get(execution_id)

    async def list_executions(
        self,
        status: Optional[str] = None,
        workflow_id: Optional[str] = None,
        related_entity_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[WorkflowExecution], int]:
        """Page through executions, most recently started first."""
        filters = {
            "status": status,
            "workflow_id": workflow_id,
            "related_entity_id": related_entity_id,
        }
        async with self._session_factory() as session:
            items, total = await ExecutionRepository(session).list(
                offset=offset,
                limit=limit,
                order_by="started_at",
                filters={k: v for k, v in filters.items() if v is not None},
            )
        return list(items), total


def directory_retry_strategy(settings: Settings) -> RetryStrategy:
    """Retry policy for directory lookups: an explicit policy wins over the preset."""
    if settings.DIRECTORY_RETRY_POLICY:
        return RetryStrategy.from_dict(settings.DIRECTORY_RETRY_POLICY)
    return RETRY_PRESETS[settings.DIRECTORY_RETRY_PRESET]


def build_workflow_service(
    settings: Optional[Settings] = None,
    session_factory=None,
    directory=None,
    notifier=None,
    clock: Clock = utc_now,
    instance_id: Optional[str] = None,
) -> WorkflowService:
    """Wire a WorkflowService from settings, with optional overrides."""
    settings = settings or get_settings()
    if session_factory is None:
        session_factory = create_session_factory(create_db_engine(settings))
    if directory is None:
        if settings.DIRECTORY_URL:
            directory = HttpDirectory(settings.DIRECTORY_URL, timeout=settings.DIRECTORY_TIMEOUT)
        else:
            directory = StaticDirectory()
    if notifier is None:
        notifier = NotificationManager.from_settings(settings)

    definitions = DefinitionStore(session_factory, clock=clock)
    tasks = TaskManager(session_factory, clock=clock)
    resolver = AssignmentResolver(
        directory, workload=tasks, retry=directory_retry_strategy(settings)
    )
    engine = ExecutionEngine(
        session_factory,
        definitions,
        tasks,
        resolver,
        notifier=notifier,
        clock=clock,
    )
    scheduler = TimeoutScheduler(
        engine,
        session_factory,
        clock=clock,
        instance_id=instance_id,
        lease_seconds=settings.TIMEOUT_LEASE_SECONDS,
        batch_size=settings.TIMEOUT_SWEEP_BATCH_SIZE,
    )
    return WorkflowService(definitions, engine, tasks, scheduler, session_factory=session_factory)
