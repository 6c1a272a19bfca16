"""Compiled, validated form of a published workflow version.

``compile_workflow`` turns a Workflow row and its WorkflowStep rows into a
``CompiledWorkflow``: an arena of ``CompiledStep`` ordered by ``order``,
with the ``next_step_on_success`` / ``next_step_on_failure`` pointers
resolved into positions. It collects every structural problem before
failing so that a publish attempt reports all of them at once.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from core.constants import AssignmentType, StepType, TimeoutAction, WorkflowStatus
from core.exceptions import DefinitionValidationError
from workflow.schema import (
    AssignmentSpec,
    Condition,
    ConditionSyntaxError,
    ReviewStepConfig,
    StepConfig,
    WorkflowConfig,
    decode_condition,
    decode_step_config,
)


@dataclass(frozen=True)
class CompiledStep:
    """One step of a compiled workflow, with successors resolved."""

    id: str
    name: str
    position: int
    order: int
    step_type: StepType
    config: StepConfig
    conditions: Optional[Condition] = None
    assignment_type: Optional[AssignmentType] = None
    assignment: Optional[AssignmentSpec] = None
    required_approvals: int = 1
    timeout_duration: Optional[int] = None
    timeout_action: Optional[TimeoutAction] = None
    success_position: Optional[int] = None
    failure_position: Optional[int] = None
    allow_skip: bool = False
    required: bool = True

    @property
    def is_human(self) -> bool:
        return self.step_type.needs_assignees

    @property
    def review(self) -> ReviewStepConfig:
        """Config of a task/approval step."""
        if not isinstance(self.config, ReviewStepConfig):
            raise TypeError(f"step '{self.name}' of type {self.step_type.value} has no review config")
        return self.config


@dataclass(frozen=True)
class CompiledWorkflow:
    """Immutable arena of steps for one workflow version."""

    id: str
    name: str
    version: int
    type: str
    status: WorkflowStatus
    steps: tuple[CompiledStep, ...]
    index: dict[str, int] = field(default_factory=dict)
    config: WorkflowConfig = field(default_factory=WorkflowConfig)
    trigger_type: Optional[str] = None
    trigger_conditions: Optional[Condition] = None
    priority: int = 0

    @property
    def first(self) -> CompiledStep:
        return self.steps[0]

    def step(self, step_id: str) -> CompiledStep:
        return self.steps[self.index[step_id]]

    def has_step(self, step_id: Optional[str]) -> bool:
        return step_id is not None and step_id in self.index

    def successor(self, step: CompiledStep, success: bool) -> Optional[CompiledStep]:
        """Next step on the chosen branch, or None when the branch terminates."""
        position = step.success_position if success else step.failure_position
        return None if position is None else self.steps[position]


def _enum(enum_cls, raw: Any, label: str, problems: list[str]):
    if raw is None:
        return None
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        problems.append(f"{label}: '{raw}' is not one of {allowed}")
        return None


def _pydantic_problems(label: str, exc: PydanticValidationError) -> list[str]:
    out = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "config"
        out.append(f"{label}.{loc}: {err.get('msg')}")
    return out


def compile_workflow(workflow, steps: Iterable) -> CompiledWorkflow:
    """Validate a definition and build its compiled form.

    Args:
        workflow: Workflow row
        steps: WorkflowStep rows of that version

    Raises:
        DefinitionValidationError: With every problem found
    """
    problems: list[str] = []
    rows = sorted(steps, key=lambda s: (s.order, s.id))

    if not rows:
        problems.append("workflow has no steps")

    seen_orders: dict[int, str] = {}
    for row in rows:
        if row.order in seen_orders:
            problems.append(
                f"steps '{seen_orders[row.order]}' and '{row.name}' share order {row.order}"
            )
        else:
            seen_orders[row.order] = row.name

    ids = {row.id: pos for pos, row in enumerate(rows)}

    try:
        wf_config = WorkflowConfig.model_validate(workflow.config or {})
    except PydanticValidationError as e:
        problems.extend(_pydantic_problems("workflow.config", e))
        wf_config = WorkflowConfig()

    try:
        trigger_conditions = decode_condition(workflow.trigger_conditions, "trigger_conditions")
    except ConditionSyntaxError as e:
        problems.append(str(e))
        trigger_conditions = None

    compiled: list[CompiledStep] = []
    for pos, row in enumerate(rows):
        label = f"step '{row.name}'"
        step_problems: list[str] = []

        step_type = _enum(StepType, row.step_type, f"{label}.step_type", step_problems)
        if row.step_type is None:
            step_problems.append(f"{label}.step_type is required")
        assignment_type = _enum(
            AssignmentType, row.assignment_type, f"{label}.assignment_type", step_problems
        )
        timeout_action = _enum(
            TimeoutAction, row.timeout_action, f"{label}.timeout_action", step_problems
        )

        required_approvals = row.required_approvals if row.required_approvals is not None else 1
        if required_approvals < 1:
            step_problems.append(f"{label}.required_approvals must be >= 1")
        if row.timeout_duration is not None and row.timeout_duration <= 0:
            step_problems.append(f"{label}.timeout_duration must be positive")
        if row.timeout_action and not row.timeout_duration:
            step_problems.append(f"{label}.timeout_action needs a timeout_duration")

        config: Optional[StepConfig] = None
        if step_type is not None:
            try:
                config = decode_step_config(step_type, row.config)
            except PydanticValidationError as e:
                step_problems.extend(_pydantic_problems(f"{label}.config", e))

        try:
            conditions = decode_condition(row.conditions, f"{label}.conditions")
        except ConditionSyntaxError as e:
            step_problems.append(str(e))
            conditions = None

        assignment: Optional[AssignmentSpec] = None
        if assignment_type is not None and assignment_type != AssignmentType.AUTO:
            try:
                assignment = AssignmentSpec(
                    assignment_type=assignment_type, assigned_to=row.assigned_to
                )
            except PydanticValidationError as e:
                step_problems.extend(_pydantic_problems(f"{label}.assigned_to", e))

        if step_type is not None and step_type.needs_assignees:
            if assignment_type is None and not row.allow_skip:
                step_problems.append(f"{label} needs an assignment_type")
            elif assignment is not None and not assignment.assigned_to and not row.allow_skip:
                step_problems.append(f"{label}.assigned_to is empty")
            if assignment_type == AssignmentType.AUTO and config is not None \
                    and getattr(config, "auto_rule", None) is None:
                step_problems.append(f"{label}: assignment_type 'auto' needs config.auto_rule")
        elif step_type is not None and timeout_action is not None:
            step_problems.append(f"{label}: timeout_action only applies to task and approval steps")

        if step_type == StepType.CONDITION and conditions is None:
            step_problems.append(f"{label}: condition steps need conditions")

        positions = []
        for attr in ("next_step_on_success", "next_step_on_failure"):
            target = getattr(row, attr)
            if target is None:
                positions.append(None)
            elif target == row.id:
                step_problems.append(f"{label}.{attr} points at itself")
                positions.append(None)
            elif target not in ids:
                step_problems.append(f"{label}.{attr} references unknown step '{target}'")
                positions.append(None)
            else:
                positions.append(ids[target])

        problems.extend(step_problems)
        if step_problems:
            continue

        compiled.append(CompiledStep(
            id=row.id,
            name=row.name,
            position=pos,
            order=row.order,
            step_type=step_type,
            config=config,
            conditions=conditions,
            assignment_type=assignment_type,
            assignment=assignment,
            required_approvals=required_approvals,
            timeout_duration=row.timeout_duration,
            timeout_action=timeout_action,
            success_position=positions[0],
            failure_position=positions[1],
            allow_skip=bool(row.allow_skip),
            required=bool(row.required) if row.required is not None else True,
        ))

    if not problems:
        problems.extend(_graph_problems(compiled))

    if problems:
        raise DefinitionValidationError(problems)

    return CompiledWorkflow(
        id=workflow.id,
        name=workflow.name,
        version=workflow.version,
        type=workflow.type,
        status=WorkflowStatus(workflow.status),
        steps=tuple(compiled),
        index={s.id: s.position for s in compiled},
        config=wf_config,
        trigger_type=workflow.trigger_type,
        trigger_conditions=trigger_conditions,
        priority=workflow.priority or 0,
    )


def _edges(step: CompiledStep) -> list[int]:
    return [p for p in (step.success_position, step.failure_position) if p is not None]


def _graph_problems(steps: list[CompiledStep]) -> list[str]:
    """Cycle and reachability checks over the resolved successor pointers."""
    problems = []

    # Iterative three-colour DFS
    white, grey, black = 0, 1, 2
    colour = [white] * len(steps)
    for root in range(len(steps)):
        if colour[root] != white:
            continue
        stack = [(root, iter(_edges(steps[root])))]
        colour[root] = grey
        while stack:
            node, children = stack[-1]
            child = next(children, None)
            if child is None:
                colour[node] = black
                stack.pop()
            elif colour[child] == grey:
                problems.append(
                    f"cycle through steps '{steps[node].name}' -> '{steps[child].name}'"
                )
            elif colour[child] == white:
                colour[child] = grey
                stack.append((child, iter(_edges(steps[child]))))

    reached = {0}
    frontier = [0]
    while frontier:
        node = frontier.pop()
        for child in _edges(steps[node]):
            if child not in reached:
                reached.add(child)
                frontier.append(child)
    for step in steps:
        if step.position not in reached:
            problems.append(f"step '{step.name}' is unreachable from the first step")

    return problems
