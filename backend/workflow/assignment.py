"""Assignment resolution: which users receive the tasks of a step.

Role and group ids are expanded through a ``Directory`` (the external
identity service). Lookups are retried with the ``directory`` preset; an
entry that still fails resolves to no members and is reported as a
``ResolutionIssue`` instead of raising.
"""

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Protocol

import httpx
import structlog

from core.constants import AssignmentType, AutoStrategy
from workflow.graph import CompiledStep
from workflow.retry_strategies import RETRY_PRESETS, LookupUnavailable, RetryStrategy, execute_with_retry
from workflow.schema import AssignmentSpec, AutoRule

logger = structlog.get_logger(__name__)


class Directory(Protocol):
    """Identity/role service lookups."""

    async def resolve_members(self, role_or_group_id: str) -> list[str]: ...

    async def resolve_supervisor(self, user_id: str) -> Optional[str]: ...


class WorkloadProvider(Protocol):
    """Task statistics used by ``auto`` assignment rules."""

    async def open_task_counts(self, session, user_ids: Iterable[str]) -> dict[str, int]: ...

    async def assignment_count(self, session, step_id: str) -> int: ...


class StaticDirectory:
    """In-memory directory, for tests and single-office deployments."""

    def __init__(
        self,
        members: Optional[Mapping[str, Iterable[str]]] = None,
        supervisors: Optional[Mapping[str, str]] = None,
    ):
        self.members = {k: list(v) for k, v in (members or {}).items()}
        self.supervisors = dict(supervisors or {})

    async def resolve_members(self, role_or_group_id: str) -> list[str]:
        return list(self.members.get(role_or_group_id, []))

    async def resolve_supervisor(self, user_id: str) -> Optional[str]:
        return self.supervisors.get(user_id)


class HttpDirectory:
    """Directory backed by the identity service's HTTP API.

    ``GET {base}/members/{id}`` returns a list of user ids (or
    ``{"members": [...]}``); ``GET {base}/users/{id}/supervisor`` returns
    ``{"supervisor_id": ...}``. 404 means "nobody".
    """

    def __init__(self, base_url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def _get(self, path: str):
        try:
            response = await self._client.get(path)
        except httpx.TransportError as e:
            raise LookupUnavailable(f"directory unreachable: {e}") from e
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    async def resolve_members(self, role_or_group_id: str) -> list[str]:
        body = await self._get(f"/members/{role_or_group_id}")
        if body is None:
            return []
        if isinstance(body, dict):
            body = body.get("members", [])
        return [str(m) for m in body]

    async def resolve_supervisor(self, user_id: str) -> Optional[str]:
        body = await self._get(f"/users/{user_id}/supervisor")
        if body is None:
            return None
        if isinstance(body, dict):
            body = body.get("supervisor_id")
        return str(body) if body else None

    async def close(self) -> None:
        await self._client.aclose()


@dataclass(frozen=True)
class ResolutionIssue:
    entry: str
    message: str

    def to_dict(self) -> dict:
        return {"entry": self.entry, "message": self.message}


@dataclass
class Resolution:
    assignees: frozenset
    issues: list[ResolutionIssue] = field(default_factory=list)


@dataclass
class ResolutionContext:
    """What the resolver may know about the execution being assigned."""

    execution_id: Optional[str] = None
    initiated_by: Optional[str] = None
    current_assignees: frozenset = frozenset()
    session: object = None


class AssignmentResolver:
    """Resolves a step's assignment into concrete user ids."""

    def __init__(
        self,
        directory: Directory,
        workload: Optional[WorkloadProvider] = None,
        retry: Optional[RetryStrategy] = None,
        sleep=None,
    ):
        self.directory = directory
        self.workload = workload
        self.retry = retry or RETRY_PRESETS["directory"]
        self._retry_kwargs = {"sleep": sleep} if sleep is not None else {}

    async def resolve(
        self, step: CompiledStep, context: ResolutionContext, escalation: bool = False
    ) -> frozenset:
        return (await self.resolve_with_issues(step, context, escalation)).assignees

    async def resolve_with_issues(
        self, step: CompiledStep, context: ResolutionContext, escalation: bool = False
    ) -> Resolution:
        issues: list[ResolutionIssue] = []
        if escalation:
            users = await self._escalation_targets(step, context, issues)
        elif step.assignment_type == AssignmentType.AUTO:
            rule = getattr(step.config, "auto_rule", None)
            users = await self._apply_auto(step, rule, context, issues) if rule else frozenset()
        elif step.assignment is not None:
            users = await self.resolve_spec(step.assignment, issues)
        else:
            users = frozenset()

        if issues:
            logger.warning(
                "assignment_resolution_issues",
                execution_id=context.execution_id,
                step_id=step.id,
                issues=[i.to_dict() for i in issues],
            )
        return Resolution(assignees=users, issues=issues)

    async def resolve_spec(self, spec: AssignmentSpec, issues: list[ResolutionIssue]) -> frozenset:
        """Expand a user/role/group spec."""
        if spec.assignment_type == AssignmentType.USER:
            return frozenset(spec.assigned_to)

        users: set[str] = set()
        for entry in spec.assigned_to:
            try:
                members = await execute_with_retry(
                    self.directory.resolve_members, self.retry, entry, **self._retry_kwargs
                )
            except Exception as e:
                issues.append(ResolutionIssue(entry=entry, message=f"{type(e).__name__}: {e}"))
                continue
            if not members:
                issues.append(ResolutionIssue(entry=entry, message="no members"))
            users.update(members)
        return frozenset(users)

    async def _apply_auto(
        self, step: CompiledStep, rule: AutoRule, context: ResolutionContext, issues: list
    ) -> frozenset:
        pool = sorted(await self.resolve_spec(rule.pool, issues))
        if not pool:
            return frozenset()
        count = min(rule.count or step.required_approvals, len(pool))

        if rule.strategy == AutoStrategy.ROUND_ROBIN:
            start = 0
            if self.workload is not None:
                start = await self.workload.assignment_count(context.session, step.id)
            return frozenset(pool[(start + i) % len(pool)] for i in range(count))

        loads = {}
        if self.workload is not None:
            loads = await self.workload.open_task_counts(context.session, pool)
        ranked = sorted(pool, key=lambda user: (loads.get(user, 0), user))
        return frozenset(ranked[:count])

    async def _escalation_targets(
        self, step: CompiledStep, context: ResolutionContext, issues: list
    ) -> frozenset:
        escalate_to = getattr(step.config, "escalate_to", None)
        if escalate_to is not None:
            return await self.resolve_spec(escalate_to, issues)

        supervisors: set[str] = set()
        for user in sorted(context.current_assignees):
            try:
                supervisor = await execute_with_retry(
                    self.directory.resolve_supervisor, self.retry, user, **self._retry_kwargs
                )
            except Exception as e:
                issues.append(ResolutionIssue(entry=user, message=f"{type(e).__name__}: {e}"))
                continue
            if supervisor:
                supervisors.add(supervisor)
        if not supervisors:
            issues.append(ResolutionIssue(entry=step.id, message="no escalation target"))
        return frozenset(supervisors)
