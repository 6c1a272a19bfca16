"""Tests for step config decoding and definition compilation."""

from types import SimpleNamespace

import pytest

from core.constants import AssignmentType, StepType, TimeoutAction
from core.exceptions import DefinitionValidationError
from workflow.graph import compile_workflow
from workflow.schema import AssignmentSpec, ReviewStepConfig, decode_step_config


def wf(**overrides):
    data = dict(
        id="wf-1", name="Permit Review", version=1, type="permit_review", status="draft",
        config={}, trigger_type="manual", trigger_conditions=None, priority=0,
    )
    data.update(overrides)
    return SimpleNamespace(**data)


def row(id, order, step_type="approval", **overrides):
    data = dict(
        id=id, name=id, order=order, step_type=step_type, config={},
        assignment_type="user" if step_type in ("task", "approval") else None,
        assigned_to=["alice"] if step_type in ("task", "approval") else None,
        required_approvals=1, timeout_duration=None, timeout_action=None,
        conditions=None, next_step_on_success=None, next_step_on_failure=None,
        allow_skip=False, required=True,
    )
    data.update(overrides)
    return SimpleNamespace(**data)


def problems_of(*rows, **wf_overrides) -> list[str]:
    with pytest.raises(DefinitionValidationError) as exc:
        compile_workflow(wf(**wf_overrides), rows)
    return exc.value.problems


@pytest.mark.unit
class TestStepConfigs:
    def test_review_config_aliases_and_defaults(self):
        config = decode_step_config(StepType.APPROVAL, {"taskTitle": "Check plans", "formKey": "x"})
        assert isinstance(config, ReviewStepConfig)
        assert config.title == "Check plans"
        assert config.classify("Approved") is True
        assert config.classify(" DENIED ") is False
        assert config.classify("needs_info") is None

    def test_custom_outcomes_must_be_disjoint(self):
        with pytest.raises(ValueError):
            decode_step_config(StepType.TASK, {"approve_outcomes": ["ok"], "reject_outcomes": ["OK"]})

    def test_assignment_spec_coerces_shapes(self):
        assert AssignmentSpec(assignment_type="user", assigned_to="alice").assigned_to == ("alice",)
        spec = AssignmentSpec(assignment_type="role", assigned_to={"roles": ["inspectors", "clerks"]})
        assert spec.assigned_to == ("inspectors", "clerks")

    def test_notification_config_template_alias(self):
        config = decode_step_config(StepType.NOTIFICATION, {"notificationType": "permit_received"})
        assert config.template_key == "permit_received"


@pytest.mark.unit
class TestCompileWorkflow:
    def test_linear_workflow(self):
        compiled = compile_workflow(wf(), [row("b", 2), row("a", 1)])
        assert [s.id for s in compiled.steps] == ["a", "b"]
        assert compiled.first.id == "a"
        assert compiled.successor(compiled.step("a"), True) is None
        assert compiled.step("a").assignment_type == AssignmentType.USER

    def test_review_config_only_on_human_steps(self):
        compiled = compile_workflow(wf(), [
            row("a", 1, next_step_on_success="b"),
            row("b", 2, step_type="automation", config={"action": "noop"}),
        ])
        assert isinstance(compiled.step("a").review, ReviewStepConfig)
        with pytest.raises(TypeError, match="has no review config"):
            compiled.step("b").review

    def test_branches_resolve_to_positions(self):
        compiled = compile_workflow(wf(), [
            row("review", 1, next_step_on_success="inspect", next_step_on_failure="notify"),
            row("inspect", 2, timeout_duration=60, timeout_action="escalate"),
            row("notify", 3, step_type="notification"),
        ])
        review = compiled.step("review")
        assert compiled.successor(review, True).id == "inspect"
        assert compiled.successor(review, False).id == "notify"
        assert compiled.step("inspect").timeout_action == TimeoutAction.ESCALATE

    def test_collects_every_problem(self):
        problems = problems_of(
            row("a", 1, required_approvals=0),
            row("b", 2, step_type="teleport"),
            row("c", 3, timeout_action="escalate"),
            row("d", 4, next_step_on_success="nowhere"),
        )
        joined = "\n".join(problems)
        assert "required_approvals must be >= 1" in joined
        assert "'teleport' is not one of" in joined
        assert "timeout_action needs a timeout_duration" in joined
        assert "unknown step 'nowhere'" in joined

    def test_no_steps(self):
        assert problems_of() == ["workflow has no steps"]

    def test_duplicate_order(self):
        assert any("share order 1" in p for p in problems_of(row("a", 1), row("b", 1)))

    def test_cycle_is_rejected(self):
        problems = problems_of(
            row("a", 1, next_step_on_success="b"),
            row("b", 2, next_step_on_success="a"),
        )
        assert any(p.startswith("cycle through") for p in problems)

    def test_self_loop_is_rejected(self):
        assert any("points at itself" in p for p in problems_of(row("a", 1, next_step_on_failure="a")))

    def test_unreachable_step_is_rejected(self):
        problems = problems_of(
            row("a", 1, next_step_on_success="c"),
            row("b", 2),
            row("c", 3),
        )
        assert problems == ["step 'b' is unreachable from the first step"]

    def test_human_step_needs_assignees(self):
        problems = problems_of(row("a", 1, assignment_type=None, assigned_to=None))
        assert any("needs an assignment_type" in p for p in problems)

    def test_skippable_step_may_have_no_assignees(self):
        compiled = compile_workflow(wf(), [row("a", 1, assignment_type="role", assigned_to=[], allow_skip=True)])
        assert compiled.first.allow_skip

    def test_auto_assignment_needs_a_rule(self):
        problems = problems_of(row("a", 1, assignment_type="auto", assigned_to=None))
        assert any("needs config.auto_rule" in p for p in problems)

    def test_timeout_action_only_on_human_steps(self):
        problems = problems_of(
            row("a", 1, step_type="automation", timeout_duration=5, timeout_action="auto_approve")
        )
        assert any("only applies to task and approval steps" in p for p in problems)

    def test_condition_step_needs_conditions(self):
        problems = problems_of(row("a", 1, step_type="condition"))
        assert any("condition steps need conditions" in p for p in problems)

    def test_bad_condition_document(self):
        problems = problems_of(row("a", 1, conditions={"all": []}))
        assert any("step 'a'.conditions" in p for p in problems)

    def test_workflow_config_and_trigger_conditions(self):
        compiled = compile_workflow(
            wf(config={"max_duration_minutes": 120}, trigger_conditions={"permitType": "building"}),
            [row("a", 1)],
        )
        assert compiled.config.max_duration_minutes == 120
        assert compiled.trigger_conditions is not None
