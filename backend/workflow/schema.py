"""Typed decoding of the JSON documents stored on workflow definitions.

``config``, ``conditions``, ``assigned_to`` and ``trigger_conditions`` are
persisted as JSON. They are decoded into the models below once, when a
definition is published, so the engine never works with untyped maps.

Condition documents:

    {"all": [cond, ...]}                       every sub-condition holds
    {"any": [cond, ...]}                       at least one holds
    {"not": cond}                              negation
    {"var": "variables.cost", "op": "lt", "value": 5000}
    {"permitType": "building"}                 shorthand: all(eq, ...)

Step config documents are keyed by the step's ``step_type``.
"""

from enum import Enum
from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from core.constants import AssignmentType, AutoStrategy, RejectionRule, StepType, TaskPriority


# ─── Conditions ───────────────────────────────────────────────

class ComparisonOp(str, Enum):
    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LE = "le"
    GT = "gt"
    GE = "ge"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    EXISTS = "exists"


_OP_ALIASES = {
    "==": ComparisonOp.EQ,
    "!=": ComparisonOp.NE,
    "<": ComparisonOp.LT,
    "<=": ComparisonOp.LE,
    ">": ComparisonOp.GT,
    ">=": ComparisonOp.GE,
}


class ConditionSyntaxError(ValueError):
    """Raised when a condition document cannot be decoded."""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"{path}: {message}")


class Comparison(BaseModel):
    model_config = ConfigDict(frozen=True)

    var: str = Field(min_length=1)
    op: ComparisonOp = ComparisonOp.EQ
    value: Any = None

    @model_validator(mode="after")
    def _check_operand(self) -> "Comparison":
        if self.op in (ComparisonOp.IN, ComparisonOp.NOT_IN) and not isinstance(self.value, (list, tuple)):
            raise ValueError(f"operator '{self.op.value}' needs a list value")
        return self


class AllOf(BaseModel):
    model_config = ConfigDict(frozen=True)

    conditions: tuple["Condition", ...]


class AnyOf(BaseModel):
    model_config = ConfigDict(frozen=True)

    conditions: tuple["Condition", ...]


class Not(BaseModel):
    model_config = ConfigDict(frozen=True)

    condition: "Condition"


Condition = Union[Comparison, AllOf, AnyOf, Not]

AllOf.model_rebuild()
AnyOf.model_rebuild()
Not.model_rebuild()


def decode_condition(raw: Any, path: str = "conditions") -> Optional[Condition]:
    """Decode a condition document into its typed tree.

    Returns None for an empty document (no condition configured).

    Raises:
        ConditionSyntaxError: If the document is malformed
    """
    if raw is None or raw == {} or raw == []:
        return None
    if isinstance(raw, list):
        return AllOf(conditions=tuple(
            _decode_node(item, f"{path}[{i}]") for i, item in enumerate(raw)
        ))
    return _decode_node(raw, path)


def _decode_node(raw: Any, path: str) -> Condition:
    if not isinstance(raw, dict) or not raw:
        raise ConditionSyntaxError(path, "expected a non-empty object")

    if "all" in raw or "any" in raw:
        key = "all" if "all" in raw else "any"
        items = raw[key]
        if len(raw) != 1 or not isinstance(items, list) or not items:
            raise ConditionSyntaxError(path, f"'{key}' needs a non-empty list and no sibling keys")
        children = tuple(_decode_node(item, f"{path}.{key}[{i}]") for i, item in enumerate(items))
        return AllOf(conditions=children) if key == "all" else AnyOf(conditions=children)

    if "not" in raw:
        if len(raw) != 1:
            raise ConditionSyntaxError(path, "'not' takes no sibling keys")
        return Not(condition=_decode_node(raw["not"], f"{path}.not"))

    if "var" in raw:
        unknown = set(raw) - {"var", "op", "value"}
        if unknown:
            raise ConditionSyntaxError(path, f"unknown keys {sorted(unknown)}")
        op = raw.get("op", "eq")
        if not isinstance(op, str):
            raise ConditionSyntaxError(path, f"op must be a string, got {type(op).__name__}")
        op = _OP_ALIASES.get(op, op)
        try:
            return Comparison(var=raw["var"], op=op, value=raw.get("value"))
        except ValueError as e:
            raise ConditionSyntaxError(path, str(e)) from e

    # Shorthand mapping: {"permitType": "building", "district": ["a", "b"]}
    comparisons = []
    for key, value in raw.items():
        op = ComparisonOp.IN if isinstance(value, list) else ComparisonOp.EQ
        try:
            comparisons.append(Comparison(var=key, op=op, value=value))
        except ValueError as e:
            raise ConditionSyntaxError(f"{path}.{key}", str(e)) from e
    if len(comparisons) == 1:
        return comparisons[0]
    return AllOf(conditions=tuple(comparisons))


# ─── Assignment ───────────────────────────────────────────────

class AssignmentSpec(BaseModel):
    """Who receives work: a literal set of users, or role/group members."""

    model_config = ConfigDict(frozen=True)

    assignment_type: AssignmentType
    assigned_to: tuple[str, ...] = ()

    @field_validator("assigned_to", mode="before")
    @classmethod
    def _coerce_ids(cls, v):
        if v is None:
            return ()
        if isinstance(v, str):
            return (v,)
        if isinstance(v, dict):
            # {"users": [...]} / {"roles": [...]} / {"groups": [...]}
            return tuple(str(i) for ids in v.values() for i in (ids if isinstance(ids, list) else [ids]))
        return tuple(str(i) for i in v)

    @model_validator(mode="after")
    def _no_nested_auto(self) -> "AssignmentSpec":
        if self.assignment_type == AssignmentType.AUTO:
            raise ValueError("an assignment spec cannot itself be 'auto'")
        return self


class AutoRule(BaseModel):
    """Deterministic rule applied for assignment_type = auto."""

    model_config = ConfigDict(frozen=True)

    strategy: AutoStrategy = AutoStrategy.ROUND_ROBIN
    pool: AssignmentSpec
    count: Optional[int] = Field(default=None, ge=1)


# ─── Step configs ─────────────────────────────────────────────

DEFAULT_APPROVE_OUTCOMES = frozenset({
    "approved", "approve", "accepted", "passed", "completed", "complete", "done", "success",
})
DEFAULT_REJECT_OUTCOMES = frozenset({
    "rejected", "reject", "denied", "declined", "failed", "failure",
})


class _StepConfigBase(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True, populate_by_name=True)


class ReviewStepConfig(_StepConfigBase):
    """Config for task and approval steps (human work)."""

    title: Optional[str] = Field(default=None, validation_alias=AliasChoices("title", "taskTitle"))
    description: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("description", "taskDescription")
    )
    task_type: Optional[str] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    approve_outcomes: frozenset[str] = DEFAULT_APPROVE_OUTCOMES
    reject_outcomes: frozenset[str] = DEFAULT_REJECT_OUTCOMES
    rejection_rule: RejectionRule = RejectionRule.ANY
    escalate_to: Optional[AssignmentSpec] = None
    auto_rule: Optional[AutoRule] = None
    notify_template: str = "task_assigned"

    @field_validator("approve_outcomes", "reject_outcomes", mode="before")
    @classmethod
    def _lower(cls, v):
        return frozenset(str(o).lower() for o in v)

    @model_validator(mode="after")
    def _disjoint(self) -> "ReviewStepConfig":
        overlap = self.approve_outcomes & self.reject_outcomes
        if overlap:
            raise ValueError(f"outcomes both approve and reject: {sorted(overlap)}")
        return self

    def classify(self, outcome: str) -> Optional[bool]:
        """True for a qualifying approval, False for a rejection, None otherwise."""
        normalized = (outcome or "").strip().lower()
        if normalized in self.reject_outcomes:
            return False
        if normalized in self.approve_outcomes:
            return True
        return None


class NotificationStepConfig(_StepConfigBase):
    template_key: str = Field(
        default="workflow_notification",
        validation_alias=AliasChoices("template_key", "notificationType"),
    )
    recipients: Optional[AssignmentSpec] = None
    include_initiator: bool = False
    context: dict[str, Any] = Field(default_factory=dict)
    auto_rule: Optional[AutoRule] = None


class AutomationStepConfig(_StepConfigBase):
    action: str = "noop"
    params: dict[str, Any] = Field(default_factory=dict)
    set_variables: dict[str, Any] = Field(default_factory=dict)


class ConditionStepConfig(_StepConfigBase):
    pass


StepConfig = Union[ReviewStepConfig, NotificationStepConfig, AutomationStepConfig, ConditionStepConfig]

_CONFIG_TYPES: dict[StepType, type] = {
    StepType.TASK: ReviewStepConfig,
    StepType.APPROVAL: ReviewStepConfig,
    StepType.NOTIFICATION: NotificationStepConfig,
    StepType.AUTOMATION: AutomationStepConfig,
    StepType.CONDITION: ConditionStepConfig,
}


def decode_step_config(step_type: StepType, raw: Optional[dict]) -> StepConfig:
    """Decode a step's ``config`` into the variant for its step type.

    Raises:
        pydantic.ValidationError: If the document does not match
    """
    return _CONFIG_TYPES[step_type].model_validate(raw or {})


class WorkflowConfig(BaseModel):
    """Workflow level ``config`` document."""

    model_config = ConfigDict(extra="allow", frozen=True)

    max_duration_minutes: Optional[int] = Field(default=None, ge=1)
    notify_initiator: bool = True
