"""Tests for the execution engine state machine."""

from datetime import timedelta

import pytest
import structlog

from conftest import approval
from core.constants import ExecutionStatus, SignalSource, TaskStatus
from core.exceptions import (
    DefinitionNotActive,
    DefinitionNotFound,
    ExecutionNotFound,
    InvalidExecutionState,
    InvalidTaskState,
)
from workflow.engine import StepOutcome, TriggerContext


def assert_step_pointer_consistent(execution):
    in_progress = execution.status == ExecutionStatus.IN_PROGRESS.value
    assert (execution.current_step_id is not None) == in_progress
    assert (execution.current_step_order is not None) == in_progress


async def only_task(tasks, user):
    mine = await tasks.list_for_assignee(user)
    assert len(mine) == 1, [t.title for t in mine]
    return mine[0]


@pytest.mark.integration
class TestHappyPath:
    async def test_task_then_quorum_approval_completes(self, service, publish, tasks, engine, clock, channel):
        _, ids = await publish([
            {"key": "intake", "name": "Intake check", "step_type": "task", "assignment_type": "user",
             "assigned_to": ["kim"], "next_step_on_success": "review"},
            approval("Plan review", role="plan_reviewers", required_approvals=2, key="review"),
        ])
        execution = await service.start_execution("permit_review", "permit-1", "applicant", {"cost": 1200})
        assert execution.status == ExecutionStatus.IN_PROGRESS.value
        assert execution.current_step_id == ids["intake"]
        assert channel.to("kim", "task_assigned")

        clock.advance(15)
        await tasks.complete((await only_task(tasks, "kim")).id, "success", "kim")
        execution = await engine.get(execution.id)
        assert execution.current_step_id == ids["review"]
        assert execution.current_step_order == 2
        assert_step_pointer_consistent(execution)

        clock.advance(45)
        await tasks.complete((await only_task(tasks, "alice")).id, "approved", "alice")
        assert (await engine.get(execution.id)).status == ExecutionStatus.IN_PROGRESS.value
        await tasks.complete((await only_task(tasks, "bob")).id, "approved", "bob")

        execution = await engine.get(execution.id)
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert_step_pointer_consistent(execution)
        assert execution.completed_at == clock.now
        assert execution.actual_duration == 60
        assert [h["step_id"] for h in execution.step_history] == [ids["intake"], ids["review"]]
        assert [h["result"] for h in execution.step_history] == ["success", "success"]
        assert await tasks.list_for_assignee("carol") == []
        assert channel.to("applicant", "workflow_completed")

    async def test_rejection_follows_failure_branch(self, service, publish, tasks, engine, channel):
        _, ids = await publish([
            approval("Inspection", role="inspectors", key="inspect", next_step_on_failure="notice"),
            {"key": "notice", "name": "Deficiency notice", "step_type": "notification",
             "config": {"notificationType": "deficiency_notice", "include_initiator": True}},
        ])
        execution = await service.start_execution("permit_review", "permit-1", "applicant")
        await tasks.complete((await only_task(tasks, "ivan")).id, "rejected", "ivan")

        execution = await engine.get(execution.id)
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert [h["result"] for h in execution.step_history] == ["failure", "success"]
        assert [h["step_id"] for h in execution.step_history] == [ids["inspect"], ids["notice"]]
        assert channel.to("applicant", "deficiency_notice")

    async def test_rejection_without_failure_branch_fails(self, service, publish, tasks, engine, channel):
        await publish([approval("Inspection", role="inspectors")])
        execution = await service.start_execution("permit_review", "permit-1", "applicant")
        await tasks.complete((await only_task(tasks, "irene")).id, "rejected", "irene")

        execution = await engine.get(execution.id)
        assert execution.status == ExecutionStatus.FAILED.value
        assert execution.failed_at is not None
        assert_step_pointer_consistent(execution)
        assert channel.to("applicant", "workflow_failed")


@pytest.mark.integration
class TestSkippingAndStalling:
    async def test_skippable_step_without_assignees(self, service, publish, tasks, engine):
        _, ids = await publish([
            approval("Fire marshal", role="empty_role", allow_skip=True, key="fire", next_step_on_success="final"),
            approval("Final sign-off", users=["alice"], key="final"),
        ])
        execution = await service.start_execution("permit_review", "permit-1", "applicant")

        assert execution.current_step_id == ids["final"]
        history = execution.step_history
        assert history[0]["step_id"] == ids["fire"]
        assert history[0]["result"] == "skipped"
        assert execution.errors[0]["kind"] == "resolution"
        execution_tasks = await service.execution_tasks(execution.id)
        assert [t.workflow_step_id for t in execution_tasks] == [ids["final"]]

    async def test_required_step_without_assignees_stalls_until_retried(self, service, publish, engine, directory, tasks):
        _, ids = await publish([approval("Zoning", role="empty_role", key="zoning")])
        execution = await service.start_execution("permit_review", "permit-1", "applicant")

        assert execution.status == ExecutionStatus.IN_PROGRESS.value
        assert execution.current_step_id == ids["zoning"]
        assert execution.errors[-1]["kind"] == "resolution"
        assert await service.execution_tasks(execution.id) == []

        directory.members["empty_role"] = ["kim"]
        assert await service.retry_assignment(execution.id, ids["zoning"])
        assert (await only_task(tasks, "kim")).workflow_step_id == ids["zoning"]

        # Already assigned: a second retry changes nothing
        assert await service.retry_assignment(execution.id, ids["zoning"])
        assert len(await service.execution_tasks(execution.id)) == 1


@pytest.mark.integration
class TestCancellation:
    async def test_cancel_closes_open_tasks(self, service, publish, tasks, engine, channel):
        await publish([approval("Plan review", role="plan_reviewers", required_approvals=2)])
        execution = await service.start_execution("permit_review", "permit-1", "applicant")
        task = await only_task(tasks, "alice")

        cancelled = await service.cancel_execution(execution.id, "clerk", "withdrawn by applicant")
        assert cancelled.status == ExecutionStatus.CANCELLED.value
        assert cancelled.cancelled_by == "clerk"
        assert cancelled.cancellation_reason == "withdrawn by applicant"
        assert_step_pointer_consistent(cancelled)
        assert cancelled.step_history[-1]["result"] == "cancelled"
        assert {t.status for t in await service.execution_tasks(execution.id)} == {TaskStatus.CANCELLED.value}
        assert channel.to("bob", "workflow_cancelled")

        with pytest.raises(InvalidTaskState) as exc:
            await tasks.complete(task.id, "approved", "alice")
        assert exc.value.reason == "task is cancelled"

    async def test_cancel_twice_or_unknown(self, service, publish):
        await publish([approval("Review", users=["alice"])])
        execution = await service.start_execution("permit_review", "permit-1", "applicant")
        await service.cancel_execution(execution.id, "clerk")
        with pytest.raises(InvalidExecutionState):
            await service.cancel_execution(execution.id, "clerk")
        with pytest.raises(ExecutionNotFound):
            await service.cancel_execution("missing", "clerk")


@pytest.mark.integration
class TestIdempotentAdvance:
    async def test_wrong_step_or_terminal_execution_is_a_noop(self, service, publish, engine, tasks):
        _, ids = await publish([
            approval("Review", users=["alice"], key="a", next_step_on_success="b"),
            approval("Sign-off", users=["bob"], key="b"),
        ])
        execution = await service.start_execution("permit_review", "permit-1", "applicant")

        assert not await engine.advance(execution.id, ids["b"], StepOutcome.approved("bob"))
        assert await engine.advance(execution.id, ids["a"], StepOutcome.approved("alice", SignalSource.OPERATOR))
        assert not await engine.advance(execution.id, ids["a"], StepOutcome.approved("alice"))

        execution = await engine.get(execution.id)
        assert execution.current_step_id == ids["b"]
        assert len(execution.step_history) == 1
        assert execution.step_history[0]["source"] == "operator"
        assert (await tasks.list_for_execution(execution.id))[0].status == TaskStatus.CANCELLED.value

        await service.cancel_execution(execution.id, "clerk")
        assert not await engine.advance(execution.id, ids["b"], StepOutcome.approved("bob"))

    async def test_late_completion_on_moved_step(self, service, publish, engine, tasks):
        _, ids = await publish([
            approval("Review", role="plan_reviewers", key="a", next_step_on_success="b"),
            approval("Sign-off", users=["sam"], key="b"),
        ])
        execution = await service.start_execution("permit_review", "permit-1", "applicant")
        alice, bob = await only_task(tasks, "alice"), await only_task(tasks, "bob")

        await tasks.complete(alice.id, "approved", "alice")
        with pytest.raises(InvalidTaskState):
            await tasks.complete(bob.id, "approved", "bob")
        assert len((await engine.get(execution.id)).step_history) == 1


@pytest.mark.integration
class TestConditions:
    async def test_step_conditions_gate_success(self, service, publish, tasks, engine):
        _, ids = await publish([
            approval("Review", users=["alice"], key="a",
                     conditions={"var": "cost", "op": "lt", "value": 5000},
                     next_step_on_success="fast", next_step_on_failure="board"),
            approval("Fast track", users=["bob"], key="fast"),
            approval("Board review", users=["carol"], key="board"),
        ])
        cheap = await service.start_execution("permit_review", "permit-1", "applicant", {"cost": 1200})
        pricey = await service.start_execution("permit_review", "permit-2", "applicant", {"cost": 90000})
        for task in await tasks.list_for_assignee("alice"):
            await tasks.complete(task.id, "approved", "alice")

        assert (await engine.get(cheap.id)).current_step_id == ids["fast"]
        assert (await engine.get(pricey.id)).current_step_id == ids["board"]

    async def test_unevaluable_condition_fails_and_is_recorded(self, service, publish, tasks, engine):
        await publish([approval("Review", users=["alice"], conditions={"var": "cost", "op": "lt", "value": 5000})])
        execution = await service.start_execution("permit_review", "permit-1", "applicant")
        await tasks.complete((await only_task(tasks, "alice")).id, "approved", "alice")

        execution = await engine.get(execution.id)
        assert execution.status == ExecutionStatus.FAILED.value
        kinds = [e["kind"] for e in execution.errors]
        assert kinds == ["evaluation", "step_failed"]
        assert execution.errors[0]["details"]["issues"][0]["var"] == "cost"

    async def test_form_data_feeds_later_conditions(self, service, publish, tasks, engine):
        _, ids = await publish([
            approval("Measure", users=["ivan"], key="m", next_step_on_success="route"),
            {"key": "route", "name": "Route", "step_type": "condition",
             "conditions": {"var": "data.height", "op": "gt", "value": 12},
             "next_step_on_success": "tall", "next_step_on_failure": "short"},
            approval("High-rise review", users=["alice"], key="tall"),
            approval("Standard review", users=["bob"], key="short"),
        ])
        execution = await service.start_execution("permit_review", "permit-1", "applicant")
        await tasks.complete((await only_task(tasks, "ivan")).id, "passed", "ivan", form_data={"height": 30})

        execution = await engine.get(execution.id)
        assert execution.current_step_id == ids["tall"]
        assert [h["step_id"] for h in execution.step_history] == [ids["m"], ids["route"]]


@pytest.mark.integration
class TestSystemSteps:
    async def test_automation_sets_variables(self, service, publish, engine):
        _, ids = await publish([
            {"key": "calc", "name": "Compute fee", "step_type": "automation",
             "config": {"action": "set_variables", "params": {"fee": 250}, "set_variables": {"stage": "fee"}},
             "next_step_on_success": "pay"},
            approval("Payment check", users=["kim"], key="pay"),
        ])
        execution = await service.start_execution("permit_review", "permit-1", "applicant", {"cost": 10})
        assert execution.variables == {"cost": 10, "stage": "fee", "fee": 250}
        assert execution.current_step_id == ids["pay"]

    async def test_registered_automation_receives_context(self, service, publish, engine):
        seen = {}

        async def stamp(params, context):
            seen.update(context)
            return {"stamped": params["label"]}

        engine.automations.register("test_stamp", stamp)
        await publish([{"name": "Stamp", "step_type": "automation",
                        "config": {"action": "test_stamp", "params": {"label": "ok"}}}])
        execution = await service.start_execution("permit_review", "permit-9", "applicant")
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert execution.variables["stamped"] == "ok"
        assert seen["related_entity_id"] == "permit-9"

    async def test_unknown_automation_fails_the_step(self, service, publish, engine):
        await publish([{"name": "Broken", "step_type": "automation", "config": {"action": "does_not_exist"}}])
        execution = await service.start_execution("permit_review", "permit-1", "applicant")
        assert execution.status == ExecutionStatus.FAILED.value
        assert [e["kind"] for e in execution.errors] == ["automation", "step_failed"]

    async def test_notification_step_resolves_recipients(self, service, publish, channel):
        await publish([{
            "name": "Tell inspectors", "step_type": "notification",
            "config": {"template_key": "inspection_scheduled",
                       "recipients": {"assignment_type": "role", "assigned_to": ["inspectors"]},
                       "context": {"slot": "Tuesday"}},
        }], config={"notify_initiator": False})
        execution = await service.start_execution("permit_review", "permit-1", "applicant")
        assert execution.status == ExecutionStatus.COMPLETED.value
        sent = [n for n in channel.sent if n.template_key == "inspection_scheduled"]
        assert sorted(n.recipient for n in sent) == ["irene", "ivan"]
        assert sent[0].metadata["slot"] == "Tuesday"
        assert not channel.to("applicant")


@pytest.mark.integration
class TestStarting:
    async def test_due_date_from_max_duration(self, service, publish, clock):
        await publish([approval("Review", users=["alice"])], config={"max_duration_minutes": 1440})
        execution = await service.start_execution("permit_review", "permit-1", "applicant")
        assert execution.due_date == clock.now + timedelta(days=1)
        assert execution.started_at == clock.now
        assert execution.initiated_by == "applicant"

    async def test_start_requires_an_active_version(self, engine, store, publish):
        with pytest.raises(DefinitionNotFound):
            await engine.start("missing", TriggerContext())
        draft = await store.create_draft(name="Draft", type="permit_review")
        with pytest.raises(DefinitionNotActive):
            await engine.start(draft.id, TriggerContext())
        compiled, _ = await publish([approval("Review", users=["alice"])], name="Retired")
        await store.deactivate(compiled.id)
        with pytest.raises(DefinitionNotActive):
            await engine.start(compiled.id, TriggerContext())

    async def test_running_executions_keep_their_version(self, service, publish, store, tasks, engine):
        v1, _ = await publish([approval("Review", users=["alice"])])
        execution = await service.start_execution("permit_review", "permit-1", "applicant")
        draft = await store.new_version(v1.id)
        await store.publish(draft.id)

        await tasks.complete((await only_task(tasks, "alice")).id, "approved", "alice")
        execution = await engine.get(execution.id)
        assert execution.workflow_id == v1.id
        assert execution.status == ExecutionStatus.COMPLETED.value

    async def test_trigger_conditions_pick_the_definition(self, service, publish):
        residential, _ = await publish(
            [approval("Review", users=["alice"])], name="Residential",
            trigger_conditions={"permitType": "residential"}, priority=1,
        )
        commercial, _ = await publish(
            [approval("Review", users=["bob"])], name="Commercial",
            trigger_conditions={"permitType": "commercial"}, priority=2,
        )
        execution = await service.start_execution(
            "permit_review", "permit-1", "applicant", {"permitType": "residential"}
        )
        assert execution.workflow_id == residential.id
        with pytest.raises(DefinitionNotFound):
            await service.start_execution("permit_review", "permit-2", "applicant", {"permitType": "industrial"})
        with pytest.raises(DefinitionNotFound):
            await service.start_execution("document_approval", "doc-1", "applicant")

    async def test_dispatch_trigger_starts_every_listener(self, service, publish):
        await publish([approval("Review", users=["alice"])], name="Plan check", trigger_type="permit_submitted")
        await publish([approval("Review", users=["ivan"])], name="Site check",
                      type="inspection_process", trigger_type="permit_submitted",
                      trigger_conditions={"var": "needs_site_visit", "op": "eq", "value": True})
        await publish([approval("Review", users=["kim"])], name="Manual only")

        started = await service.dispatch_trigger("permit_submitted", "permit-1", "applicant", {"needs_site_visit": False})
        assert len(started) == 1
        started = await service.dispatch_trigger("permit_submitted", "permit-2", "applicant", {"needs_site_visit": True})
        assert len(started) == 2


class ExplodingNotifier:
    def __init__(self):
        self.calls = 0

    async def notify(self, recipients, template_key, context):
        self.calls += 1
        raise RuntimeError("smtp relay down")


@pytest.mark.integration
class TestNotificationFailures:
    async def test_notifier_errors_never_break_transitions(self, service, publish, tasks, engine):
        notifier = ExplodingNotifier()
        engine.notifier = notifier
        await publish([approval("Review", users=["alice"])])
        execution = await service.start_execution("permit_review", "permit-1", "applicant")
        await tasks.complete((await only_task(tasks, "alice")).id, "approved", "alice")

        assert (await engine.get(execution.id)).status == ExecutionStatus.COMPLETED.value
        assert notifier.calls == 2


class ContextRecordingNotifier:
    def __init__(self):
        self.seen = []

    async def notify(self, recipients, template_key, context):
        self.seen.append((template_key, structlog.contextvars.get_contextvars().get("execution_id")))


@pytest.mark.integration
class TestLogContext:
    async def test_execution_id_is_bound_while_working(self, service, publish, tasks, engine):
        notifier = ContextRecordingNotifier()
        engine.notifier = notifier
        await publish([approval("Review", users=["alice"])])
        execution = await service.start_execution("permit_review", "permit-1", "applicant")
        await tasks.complete((await only_task(tasks, "alice")).id, "approved", "alice")

        assert notifier.seen == [
            ("task_assigned", execution.id),
            ("workflow_completed", execution.id),
        ]
        assert "execution_id" not in structlog.contextvars.get_contextvars()
