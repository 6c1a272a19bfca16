"""Definition Store: versioned workflow definitions and their lifecycle.

A definition is edited only while it is a ``draft``. Publishing validates
it into a ``CompiledWorkflow``, marks it ``active`` and deactivates every
other active version with the same name. Changing a published workflow
means creating a new version with ``new_version``.
"""

import logging
from dataclasses import replace
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import func, select, update

from core.constants import WorkflowStatus
from core.exceptions import DefinitionImmutable, DefinitionNotFound, ValidationError
from core.utils import Clock, utc_now
from db.models.workflow import Workflow
from db.models.workflow_step import WorkflowStep
from services.base import BaseService
from workflow.graph import CompiledWorkflow, compile_workflow

logger = logging.getLogger(__name__)

STEP_FIELDS = frozenset({
    "name", "description", "step_type", "order", "config", "assignment_type",
    "assigned_to", "required_approvals", "timeout_duration", "timeout_action",
    "conditions", "next_step_on_success", "next_step_on_failure", "allow_skip",
    "required", "form_config",
})

WORKFLOW_COPY_FIELDS = (
    "name", "description", "type", "config", "trigger_type", "trigger_conditions",
    "priority", "tags", "estimated_duration",
)


class WorkflowRepository(BaseService[Workflow]):
    def __init__(self, db):
        super().__init__(Workflow, db)

    async def next_version(self, name: str) -> int:
        result = await self.db.execute(
            select(func.max(Workflow.version)).where(Workflow.name == name)
        )
        return (result.scalar() or 0) + 1

    async def steps_of(self, workflow_id: str) -> list[WorkflowStep]:
        result = await self.db.execute(
            select(WorkflowStep)
            .where(WorkflowStep.workflow_id == workflow_id)
            .order_by(WorkflowStep.order)
        )
        return list(result.scalars().all())


class StepRepository(BaseService[WorkflowStep]):
    def __init__(self, db):
        super().__init__(WorkflowStep, db)


class DefinitionStore:
    """Creates, publishes and loads workflow definitions.

    ``load`` caches compiled non-draft versions; their structure never
    changes once published.
    """

    def __init__(self, session_factory, clock: Clock = utc_now):
        self._session_factory = session_factory
        self._clock = clock
        self._cache: dict[str, CompiledWorkflow] = {}

    # ─── Drafting ──────────────────────────────────────────

    async def create_draft(
        self,
        name: str,
        type: str,
        trigger_type: str = "manual",
        description: Optional[str] = None,
        config: Optional[dict] = None,
        trigger_conditions: Optional[dict] = None,
        priority: int = 0,
        tags: Optional[list] = None,
        estimated_duration: Optional[int] = None,
        created_by: Optional[str] = None,
    ) -> Workflow:
        """Create a draft with the next version number for ``name``."""
        now = self._clock()
        async with self._session_factory() as session:
            repo = WorkflowRepository(session)
            workflow = await repo.create({
                "name": name,
                "type": type,
                "trigger_type": trigger_type,
                "description": description,
                "config": config or {},
                "trigger_conditions": trigger_conditions,
                "priority": priority,
                "tags": tags or [],
                "estimated_duration": estimated_duration,
                "created_by": created_by,
                "updated_by": created_by,
                "status": WorkflowStatus.DRAFT.value,
                "version": await repo.next_version(name),
                "created_at": now,
                "updated_at": now,
            })
            await session.commit()
        logger.info("Workflow draft created: %s v%d (%s)", name, workflow.version, workflow.id)
        return workflow

    async def add_step(self, workflow_id: str, **fields: Any) -> WorkflowStep:
        """Append a step to a draft. ``order`` defaults to the next free one.

        Raises:
            DefinitionNotFound / DefinitionImmutable / ValidationError
        """
        self._check_fields(fields)
        async with self._session_factory() as session:
            workflow = await self._draft(session, workflow_id)
            steps = await WorkflowRepository(session).steps_of(workflow.id)
            if fields.get("order") is None:
                fields["order"] = max((s.order for s in steps), default=0) + 1
            fields.setdefault("config", {})
            fields.setdefault("required_approvals", 1)
            step = await StepRepository(session).create({
                **fields,
                "workflow_id": workflow.id,
                "created_at": self._clock(),
                "updated_at": self._clock(),
            })
            await session.commit()
        return step

    async def update_step(self, step_id: str, **fields: Any) -> WorkflowStep:
        self._check_fields(fields)
        async with self._session_factory() as session:
            repo = StepRepository(session)
            step = await repo.get_by_id(step_id)
            if step is None:
                raise DefinitionNotFound(f"Workflow step {step_id} not found")
            await self._draft(session, step.workflow_id)
            step = await repo.update(step, {**fields, "updated_at": self._clock()})
            await session.commit()
        return step

    async def remove_step(self, step_id: str) -> None:
        async with self._session_factory() as session:
            repo = StepRepository(session)
            step = await repo.get_by_id(step_id)
            if step is None:
                raise DefinitionNotFound(f"Workflow step {step_id} not found")
            await self._draft(session, step.workflow_id)
            await repo.delete(step)
            await session.commit()

    # ─── Lifecycle ─────────────────────────────────────────

    async def publish(self, workflow_id: str, actor: Optional[str] = None) -> CompiledWorkflow:
        """Validate a draft and make it the active version of its name.

        Raises:
            DefinitionNotFound: If the draft does not exist
            DefinitionImmutable: If it is not a draft
            DefinitionValidationError: With every structural problem found
        """
        async with self._session_factory() as session:
            repo = WorkflowRepository(session)
            workflow = await self._draft(session, workflow_id)
            compiled = compile_workflow(workflow, await repo.steps_of(workflow.id))

            now = self._clock()
            superseded = list((await session.execute(
                select(Workflow.id).where(
                    Workflow.name == workflow.name,
                    Workflow.id != workflow.id,
                    Workflow.status == WorkflowStatus.ACTIVE.value,
                )
            )).scalars().all())
            if superseded:
                await session.execute(
                    update(Workflow)
                    .where(Workflow.id.in_(superseded))
                    .values(status=WorkflowStatus.INACTIVE.value, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            await repo.update(workflow, {
                "status": WorkflowStatus.ACTIVE.value,
                "published_at": now,
                "updated_by": actor,
                "updated_at": now,
            })
            await session.commit()

        compiled = replace(compiled, status=WorkflowStatus.ACTIVE)
        self._cache[workflow_id] = compiled
        for old_id in superseded:
            if old_id in self._cache:
                self._cache[old_id] = replace(self._cache[old_id], status=WorkflowStatus.INACTIVE)
        logger.info(
            "Workflow published: %s v%d (%d steps, %d older versions deactivated)",
            compiled.name, compiled.version, len(compiled.steps), len(superseded),
        )
        return compiled

    async def new_version(self, workflow_id: str, actor: Optional[str] = None) -> Workflow:
        """Copy a version and its steps into a new draft."""
        async with self._session_factory() as session:
            repo = WorkflowRepository(session)
            source = await repo.get_by_id(workflow_id)
            if source is None:
                raise DefinitionNotFound(f"Workflow {workflow_id} not found")
            steps = await repo.steps_of(source.id)

            now = self._clock()
            draft = await repo.create({
                **{f: getattr(source, f) for f in WORKFLOW_COPY_FIELDS},
                "version": await repo.next_version(source.name),
                "status": WorkflowStatus.DRAFT.value,
                "created_by": actor,
                "updated_by": actor,
                "created_at": now,
                "updated_at": now,
            })

            new_ids = {s.id: str(uuid4()) for s in steps}
            step_repo = StepRepository(session)
            for s in steps:
                data = {f: getattr(s, f) for f in STEP_FIELDS}
                data["next_step_on_success"] = new_ids.get(s.next_step_on_success)
                data["next_step_on_failure"] = new_ids.get(s.next_step_on_failure)
                await step_repo.create({
                    **data,
                    "id": new_ids[s.id],
                    "workflow_id": draft.id,
                    "created_at": now,
                    "updated_at": now,
                })
            await session.commit()
        logger.info("Workflow %s v%d drafted from %s", draft.name, draft.version, workflow_id)
        return draft

    async def deactivate(self, workflow_id: str, actor: Optional[str] = None) -> Workflow:
        return await self._set_status(
            workflow_id, WorkflowStatus.INACTIVE, actor,
            allowed=(WorkflowStatus.ACTIVE,),
        )

    async def archive(self, workflow_id: str, actor: Optional[str] = None) -> Workflow:
        return await self._set_status(
            workflow_id, WorkflowStatus.ARCHIVED, actor,
            allowed=(WorkflowStatus.DRAFT, WorkflowStatus.ACTIVE, WorkflowStatus.INACTIVE),
        )

    async def _set_status(self, workflow_id, status: WorkflowStatus, actor, allowed) -> Workflow:
        async with self._session_factory() as session:
            repo = WorkflowRepository(session)
            workflow = await repo.get_by_id(workflow_id)
            if workflow is None:
                raise DefinitionNotFound(f"Workflow {workflow_id} not found")
            if workflow.status not in {s.value for s in allowed}:
                raise DefinitionImmutable(workflow_id, workflow.status)
            now = self._clock()
            data = {"status": status.value, "updated_by": actor, "updated_at": now}
            if status == WorkflowStatus.ARCHIVED:
                data["archived_at"] = now
            await repo.update(workflow, data)
            await session.commit()

        cached = self._cache.get(workflow_id)
        if cached is not None:
            self._cache[workflow_id] = replace(cached, status=status)
        logger.info("Workflow %s set to %s", workflow_id, status.value)
        return workflow

    # ─── Reading ───────────────────────────────────────────

    async def get(self, workflow_id: str) -> Workflow:
        async with self._session_factory() as session:
            workflow = await WorkflowRepository(session).get_by_id(workflow_id)
        if workflow is None:
            raise DefinitionNotFound(f"Workflow {workflow_id} not found")
        return workflow

    async def load(self, workflow_id: str) -> CompiledWorkflow:
        """Compiled form of a version; cached once it is no longer a draft.

        Raises:
            DefinitionNotFound: If the version does not exist
            DefinitionValidationError: If a draft does not compile
        """
        cached = self._cache.get(workflow_id)
        if cached is not None:
            return cached

        async with self._session_factory() as session:
            repo = WorkflowRepository(session)
            workflow = await repo.get_by_id(workflow_id)
            if workflow is None:
                raise DefinitionNotFound(f"Workflow {workflow_id} not found")
            compiled = compile_workflow(workflow, await repo.steps_of(workflow_id))

        if compiled.status != WorkflowStatus.DRAFT:
            self._cache[workflow_id] = compiled
        return compiled

    async def find_active(
        self,
        workflow_type: Optional[str] = None,
        trigger_type: Optional[str] = None,
    ) -> list[Workflow]:
        """Active versions, highest priority first, then newest version."""
        query = select(Workflow).where(Workflow.status == WorkflowStatus.ACTIVE.value)
        if workflow_type is not None:
            query = query.where(Workflow.type == workflow_type)
        if trigger_type is not None:
            query = query.where(Workflow.trigger_type == trigger_type)
        query = query.order_by(Workflow.priority.desc(), Workflow.version.desc(), Workflow.name)
        async with self._session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    async def list_workflows(
        self,
        status: Optional[str] = None,
        workflow_type: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[Workflow], int]:
        """Page through definitions, newest first."""
        filters = {}
        if status is not None:
            filters["status"] = status
        if workflow_type is not None:
            filters["type"] = workflow_type
        async with self._session_factory() as session:
            items, total = await WorkflowRepository(session).list(
                offset=offset, limit=limit, filters=filters
            )
        return list(items), total

    async def steps(self, workflow_id: str) -> list[WorkflowStep]:
        async with self._session_factory() as session:
            return await WorkflowRepository(session).steps_of(workflow_id)

    # ─── Helpers ───────────────────────────────────────────

    @staticmethod
    def _check_fields(fields: dict) -> None:
        unknown = set(fields) - STEP_FIELDS
        if unknown:
            raise ValidationError(f"Unknown step fields: {', '.join(sorted(unknown))}")

    @staticmethod
    async def _draft(session, workflow_id: str) -> Workflow:
        workflow = await WorkflowRepository(session).get_by_id(workflow_id)
        if workflow is None:
            raise DefinitionNotFound(f"Workflow {workflow_id} not found")
        if workflow.status != WorkflowStatus.DRAFT.value:
            raise DefinitionImmutable(workflow_id, workflow.status)
        return workflow
