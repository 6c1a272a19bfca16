"""Condition evaluation over an execution's variables and step outcomes.

Evaluation is pure and never raises on context data. Comparisons use
three-valued logic: a comparison whose operand is missing or of the wrong
type is *unknown*, unknown propagates through ``all`` / ``any`` / ``not``,
and an unknown result at the top is treated as "not met". Every unknown
is reported as an ``EvaluationIssue`` so the engine can record it.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from workflow.schema import AllOf, AnyOf, Comparison, ComparisonOp, Condition, Not

_MISSING = object()


@dataclass(frozen=True)
class EvaluationIssue:
    var: str
    message: str

    def to_dict(self) -> dict:
        return {"var": self.var, "message": self.message}


@dataclass
class EvaluationResult:
    met: bool
    issues: list[EvaluationIssue] = field(default_factory=list)


def build_namespace(
    variables: Optional[Mapping[str, Any]] = None,
    data: Optional[Mapping[str, Any]] = None,
    outcome: Optional[str] = None,
    outcomes: Iterable[str] = (),
    approvals: int = 0,
    rejections: int = 0,
    related_entity_id: Optional[str] = None,
) -> dict:
    """Namespace a condition is evaluated against."""
    return {
        "variables": dict(variables or {}),
        "data": dict(data or {}),
        "outcome": outcome,
        "outcomes": list(outcomes),
        "step": {"approvals": approvals, "rejections": rejections},
        "related_entity_id": related_entity_id,
    }


def resolve_path(namespace: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path; returns the module sentinel when absent.

    Bare names that are not namespace roots look in ``variables`` first,
    then in ``data``.
    """
    parts = path.split(".")
    head = parts[0]
    if head in namespace:
        current = namespace[head]
        rest = parts[1:]
    else:
        current = _MISSING
        for root in ("variables", "data"):
            bag = namespace.get(root) or {}
            if head in bag:
                current = bag[head]
                break
        rest = parts[1:]
        if current is _MISSING:
            return _MISSING

    for part in rest:
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


class ConditionEvaluator:
    """Evaluates decoded condition trees."""

    def evaluate(self, condition: Optional[Condition], namespace: Mapping[str, Any]) -> EvaluationResult:
        """Evaluate a condition; ``None`` (no condition) is always met."""
        if condition is None:
            return EvaluationResult(met=True)
        issues: list[EvaluationIssue] = []
        value = self._eval(condition, namespace, issues)
        return EvaluationResult(met=value is True, issues=issues)

    def _eval(self, node: Condition, ns: Mapping[str, Any], issues: list) -> Optional[bool]:
        if isinstance(node, Comparison):
            return self._compare(node, ns, issues)
        if isinstance(node, AllOf):
            results = [self._eval(c, ns, issues) for c in node.conditions]
            if False in results:
                return False
            return None if None in results else True
        if isinstance(node, AnyOf):
            results = [self._eval(c, ns, issues) for c in node.conditions]
            if True in results:
                return True
            return None if None in results else False
        if isinstance(node, Not):
            inner = self._eval(node.condition, ns, issues)
            return None if inner is None else not inner
        issues.append(EvaluationIssue(var="", message=f"unsupported node {type(node).__name__}"))
        return None

    def _compare(self, node: Comparison, ns: Mapping[str, Any], issues: list) -> Optional[bool]:
        actual = resolve_path(ns, node.var)

        if node.op == ComparisonOp.EXISTS:
            expected = True if node.value is None else bool(node.value)
            return (actual is not _MISSING and actual is not None) == expected

        if actual is _MISSING:
            issues.append(EvaluationIssue(var=node.var, message="variable is not set"))
            return None

        expected = node.value
        try:
            if node.op == ComparisonOp.EQ:
                return actual == expected
            if node.op == ComparisonOp.NE:
                return actual != expected
            if node.op == ComparisonOp.IN:
                return actual in expected
            if node.op == ComparisonOp.NOT_IN:
                return actual not in expected
            if node.op == ComparisonOp.CONTAINS:
                if actual is None:
                    raise TypeError("value is null")
                return expected in actual
            if actual is None or expected is None or isinstance(actual, bool) != isinstance(expected, bool):
                raise TypeError(f"cannot order {actual!r} and {expected!r}")
            if node.op == ComparisonOp.LT:
                return actual < expected
            if node.op == ComparisonOp.LE:
                return actual <= expected
            if node.op == ComparisonOp.GT:
                return actual > expected
            if node.op == ComparisonOp.GE:
                return actual >= expected
        except TypeError as e:
            issues.append(EvaluationIssue(var=node.var, message=f"{node.op.value}: {e}"))
            return None

        issues.append(EvaluationIssue(var=node.var, message=f"unknown operator {node.op!r}"))
        return None
