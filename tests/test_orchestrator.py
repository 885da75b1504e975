"""Tests for the plan orchestrator state machine."""

import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from conductor.core.bus import PlanContinue
from conductor.planner.errors import (
    PlanningError,
    PlanNotFoundError,
    PlanStateError,
    StaleWriteError,
)
from conductor.planner.models import PSEUDO_EXIT_CODE, PlanStatus, StepResult, StepStatus
from conductor.planner.store import PlanStore
from conductor.tools.base import ExecutionContext

from conftest import FakeTool, Harness

EMAIL_PLAN = [
    {
        "tool": "search_documents",
        "args": {"query": "quarterly report"},
        "description": "Find the report",
    },
    {
        "tool": "gmail_send_email",
        "args": {"to": "alice@example.com", "body": "{{step_1.output}}"},
        "description": "Email Alice the report",
        "depends_on": ["step_1"],
    },
]


@pytest.fixture
def search_tool():
    return FakeTool("search_documents", output="Q3 report: revenue up 12%")


@pytest.fixture
def send_tool():
    return FakeTool("gmail_send_email", output="Email sent")


@pytest.fixture
def harness(store, search_tool, send_tool):
    return Harness(store, [search_tool, send_tool], EMAIL_PLAN)


class TestCreateAndStart:
    async def test_plan_is_decomposed_and_triggered(self, harness, context):
        plan = await harness.orchestrator.create_and_start_plan(
            "Email Alice the report", context, hints=["search", "send"], urgency="high"
        )
        assert plan.status == PlanStatus.RUNNING
        assert [s.id for s in plan.steps] == ["step_1", "step_2"]
        assert plan.steps[1].requires_approval is True
        assert plan.steps[1].depends_on == ["step_1"]
        assert plan.current_step_index == 0
        assert plan.estimated_cost > 0
        assert plan.context == {
            "conversation_id": "conv1",
            "organization_id": "org1",
            "urgency": "high",
        }
        assert harness.enqueued == [plan.id]

    async def test_hints_reach_the_planning_model(self, harness, context):
        await harness.orchestrator.create_and_start_plan(
            "Email Alice the report", context, hints=["search docs first"]
        )
        prompt = harness.model.complete.await_args.args[0]
        assert "search docs first" in prompt
        assert "gmail_send_email" in prompt

    async def test_organization_defaults_to_user(self, harness):
        plan = await harness.orchestrator.create_and_start_plan(
            "Email Alice the report", ExecutionContext(user_id="solo")
        )
        assert plan.context["organization_id"] == "solo"

    async def test_planning_failure_marks_plan_failed(self, store, search_tool):
        harness = Harness(store, [search_tool], "I could not come up with a plan.")
        with pytest.raises(PlanningError):
            await harness.orchestrator.create_and_start_plan(
                "Do something", ExecutionContext(user_id="u1")
            )

        plans = await store.list_by_user("u1")
        assert len(plans) == 1
        assert plans[0].status == PlanStatus.FAILED
        assert "JSON array" in plans[0].error_message
        assert plans[0].completed_at is not None
        assert harness.sink.event_types == ["agent_plan_failed"]
        assert harness.enqueued == []

    async def test_model_outage_marks_plan_failed(self, harness, context):
        harness.model.complete.side_effect = RuntimeError("model unavailable")
        with pytest.raises(RuntimeError):
            await harness.orchestrator.create_and_start_plan("Email Alice", context)
        plans = await harness.store.list_by_user("u1")
        assert plans[0].status == PlanStatus.FAILED
        assert plans[0].error_message == "model unavailable"


class TestApprovalFlow:
    async def test_email_alice_end_to_end(self, harness, context, search_tool, send_tool):
        orch = harness.orchestrator
        plan = await orch.create_and_start_plan("Email Alice the report", context)

        plan = await orch.orchestrate_plan(plan.id)
        assert plan.status == PlanStatus.RUNNING
        assert plan.current_step_index == 1
        assert plan.steps[0].status == StepStatus.COMPLETED
        assert plan.step_results["step_1"].output == "Q3 report: revenue up 12%"
        assert plan.total_cost == pytest.approx(0.0004)
        assert search_tool.calls == [{"query": "quarterly report"}]

        plan = await orch.orchestrate_plan(plan.id)
        assert plan.status == PlanStatus.PAUSED
        assert plan.current_step_index == 1
        assert plan.steps[1].status == StepStatus.AWAITING_APPROVAL
        pending = plan.step_results["step_2"]
        assert pending.output == "Awaiting approval"
        assert pending.exit_code == PSEUDO_EXIT_CODE
        assert send_tool.calls == []
        assert "agent_approval_requested" in harness.sink.event_types
        assert len(harness.sink.notifications) == 1
        assert harness.sink.notifications[0]["related_id"] == plan.id

        plan = await orch.resume_plan_after_approval(plan.id)
        assert plan.status == PlanStatus.RUNNING
        assert plan.current_step_index == 1
        assert plan.steps[1].status == StepStatus.PENDING
        assert plan.steps[1].approved is True
        assert plan.step_results["step_2"].output == "Approved by user"

        plan = await orch.orchestrate_plan(plan.id)
        assert plan.status == PlanStatus.COMPLETED
        assert plan.current_step_index == 2
        assert plan.steps[1].status == StepStatus.COMPLETED
        assert plan.steps[1].approved is False
        assert plan.step_results["step_2"].output == "Email sent"
        assert plan.step_results["step_2"].exit_code == 0
        assert plan.total_cost == pytest.approx(0.0008)
        assert plan.completed_at is not None
        assert send_tool.calls == [
            {"to": "alice@example.com", "body": "Q3 report: revenue up 12%"}
        ]
        assert harness.sink.event_types[-1] == "agent_plan_completed"

    async def test_paused_plan_is_untouched(self, harness, context):
        orch = harness.orchestrator
        plan = await orch.create_and_start_plan("Email Alice the report", context)
        await orch.orchestrate_plan(plan.id)
        paused = await orch.orchestrate_plan(plan.id)

        again = await orch.orchestrate_plan(plan.id)
        assert again.revision == paused.revision
        assert again.updated_at == paused.updated_at
        assert len(harness.sink.notifications) == 1

    async def test_rejection_cancels_remaining_steps(self, store, context):
        send = FakeTool("gmail_send_email")
        archive = FakeTool("archive_thread")
        harness = Harness(store, [send, archive], [
            {"tool": "gmail_send_email", "args": {"to": "bob@example.com"}},
            {"tool": "archive_thread", "args": {}},
        ])
        orch = harness.orchestrator
        plan = await orch.create_and_start_plan("Email Bob and archive", context)
        plan = await orch.orchestrate_plan(plan.id)
        assert plan.status == PlanStatus.PAUSED

        plan = await orch.reject_plan_step(plan.id)
        assert plan.status == PlanStatus.CANCELLED
        assert plan.error_message == "Step rejected by user"
        assert [s.status for s in plan.steps] == [StepStatus.SKIPPED, StepStatus.SKIPPED]
        assert plan.current_step_index == 2
        assert plan.step_results["step_1"].output == "Rejected by user"
        assert plan.step_results["step_1"].exit_code == PSEUDO_EXIT_CODE
        assert plan.completed_at is not None
        assert send.calls == []
        assert archive.calls == []
        assert harness.sink.event_types[-1] == "agent_plan_cancelled"

        # Terminal plans ignore continuations.
        assert (await orch.orchestrate_plan(plan.id)).revision == plan.revision

    async def test_approve_requires_paused_plan(self, harness, context):
        plan = await harness.orchestrator.create_and_start_plan("Email Alice", context)
        with pytest.raises(PlanStateError):
            await harness.orchestrator.resume_plan_after_approval(plan.id)

    async def test_reject_requires_paused_plan(self, harness, context):
        plan = await harness.orchestrator.create_and_start_plan("Email Alice", context)
        with pytest.raises(PlanStateError):
            await harness.orchestrator.reject_plan_step(plan.id)

    async def test_model_flagged_step_pauses(self, store, context):
        lookup = FakeTool("web_search")
        harness = Harness(store, [lookup], [
            {"tool": "web_search", "args": {"q": "x"}, "requires_approval": True},
        ])
        plan = await harness.orchestrator.create_and_start_plan("Look it up", context)
        plan = await harness.orchestrator.orchestrate_plan(plan.id)
        assert plan.status == PlanStatus.PAUSED
        assert lookup.calls == []


class TestFailure:
    async def test_failed_step_fails_plan(self, store, context):
        search = FakeTool("search_documents", success=False, error="quota exceeded")
        summarize = FakeTool("summarize")
        harness = Harness(store, [search, summarize], [
            {"tool": "search_documents", "args": {}},
            {"tool": "summarize", "args": {"text": "{{step_1.output}}"}},
        ])
        orch = harness.orchestrator
        plan = await orch.create_and_start_plan("Summarize the docs", context)

        plan = await orch.orchestrate_plan(plan.id)
        assert plan.status == PlanStatus.FAILED
        assert plan.error_message == "quota exceeded"
        assert plan.current_step_index == 1
        assert plan.steps[0].status == StepStatus.FAILED
        assert plan.steps[1].status == StepStatus.PENDING
        assert plan.step_results["step_1"].exit_code == 1
        assert summarize.calls == []
        assert harness.sink.event_types == ["agent_plan_failed"]
        assert "quota exceeded" in harness.sink.activities[0]["description"]

    async def test_raising_tool_fails_plan(self, store, context):
        broken = FakeTool("fetch_page", raises=ConnectionError("reset by peer"))
        harness = Harness(store, [broken], [{"tool": "fetch_page", "args": {}}])
        plan = await harness.orchestrator.create_and_start_plan("Fetch", context)
        plan = await harness.orchestrator.orchestrate_plan(plan.id)
        assert plan.status == PlanStatus.FAILED
        assert plan.error_message == "Error executing fetch_page: reset by peer"

    async def test_unknown_plan_raises(self, harness):
        with pytest.raises(PlanNotFoundError):
            await harness.orchestrator.orchestrate_plan("missing")


class TestProgress:
    async def test_index_never_moves_backwards(self, store, context):
        tools = [FakeTool("a"), FakeTool("b"), FakeTool("c")]
        harness = Harness(store, tools, [
            {"tool": "a", "args": {}},
            {"tool": "b", "args": {}},
            {"tool": "c", "args": {}},
        ])
        orch = harness.orchestrator
        plan = await orch.create_and_start_plan("Three things", context)

        indices = [plan.current_step_index]
        for _ in range(6):
            plan = await orch.orchestrate_plan(plan.id)
            indices.append(plan.current_step_index)

        assert indices == sorted(indices)
        assert plan.status == PlanStatus.COMPLETED
        assert plan.current_step_index == 3
        assert all(len(t.calls) == 1 for t in tools)
        assert harness.sink.event_types.count("agent_plan_completed") == 1

    async def test_each_step_enqueues_the_next(self, store, context):
        harness = Harness(store, [FakeTool("a"), FakeTool("b")], [
            {"tool": "a", "args": {}},
            {"tool": "b", "args": {}},
        ])
        orch = harness.orchestrator
        plan = await orch.create_and_start_plan("Two things", context)
        await orch.orchestrate_plan(plan.id)
        await orch.orchestrate_plan(plan.id)
        # create + after step 1; the last step completes without a trigger
        assert harness.enqueued == [plan.id, plan.id]

    async def test_concurrent_invocations_run_step_once(self, store, context):
        slow = FakeTool("crawl", delay=0.05)
        harness = Harness(store, [slow, FakeTool("b")], [
            {"tool": "crawl", "args": {}},
            {"tool": "b", "args": {}},
        ])
        orch = harness.orchestrator
        plan = await orch.create_and_start_plan("Crawl", context)

        await asyncio.gather(orch.orchestrate_plan(plan.id), orch.orchestrate_plan(plan.id))

        stored = await store.get_by_id(plan.id)
        assert len(slow.calls) == 1
        assert stored.current_step_index == 1
        assert stored.steps[0].status == StepStatus.COMPLETED

    async def test_trigger_failure_is_not_fatal(self, harness, context):
        harness.continuation.enqueue.side_effect = RuntimeError("queue down")
        plan = await harness.orchestrator.create_and_start_plan("Email Alice", context)
        assert plan.status == PlanStatus.RUNNING

    async def test_on_continue_advances_plan(self, harness, context, search_tool):
        plan = await harness.orchestrator.create_and_start_plan("Email Alice", context)
        await harness.orchestrator.on_continue(PlanContinue(plan_id=plan.id))
        assert len(search_tool.calls) == 1

    async def test_on_continue_ignores_unknown_plan(self, harness):
        await harness.orchestrator.on_continue(PlanContinue(plan_id="missing"))


class DuplicateDeliveryStore(PlanStore):
    """Delivers a second continuation right after the first step result commits."""

    def __init__(self, db_path):
        super().__init__(db_path)
        self.orchestrator = None
        self.redelivered = []

    async def record_step_result(self, plan_id, step_id, result, *args, **kwargs):
        written = await super().record_step_result(plan_id, step_id, result, *args, **kwargs)
        if self.orchestrator is not None and not self.redelivered:
            self.redelivered.append(await self.orchestrator.orchestrate_plan(plan_id))
        return written


class TestFailureIsAtomic:
    @pytest.fixture
    async def racing_store(self, tmp_path):
        s = DuplicateDeliveryStore(tmp_path / "plans.db")
        await s.start()
        yield s
        await s.stop()

    @pytest.mark.parametrize("followers", [0, 1])
    async def test_duplicate_delivery_after_failed_step(self, racing_store, context, followers):
        failing = FakeTool("a", success=False, error="disk full")
        next_tool = FakeTool("b")
        reply = [{"tool": "a", "args": {}}] + [{"tool": "b", "args": {}}] * followers
        harness = Harness(racing_store, [failing, next_tool], reply)
        plan = await harness.orchestrator.create_and_start_plan("Do things", context)
        racing_store.orchestrator = harness.orchestrator

        plan = await harness.orchestrator.orchestrate_plan(plan.id)

        assert racing_store.redelivered[0].status == PlanStatus.FAILED
        assert plan.status == PlanStatus.FAILED
        assert plan.error_message == "disk full"
        assert next_tool.calls == []
        assert harness.sink.event_types == ["agent_plan_failed"]

    async def test_failed_step_without_plan_transition_is_finished(self, store, context):
        first = FakeTool("a")
        second = FakeTool("b")
        harness = Harness(store, [first, second], [
            {"tool": "a", "args": {}},
            {"tool": "b", "args": {}},
        ])
        orch = harness.orchestrator
        plan = await orch.create_and_start_plan("Do things", context)
        # A failed step stored while the plan still reads as running.
        failed_steps = [replace(plan.steps[0], status=StepStatus.FAILED), plan.steps[1]]
        await store.record_step_result(
            plan.id, "step_1", StepResult(exit_code=1, error="timeout"), failed_steps, 1
        )
        stuck = await store.get_by_id(plan.id)

        assert await orch.recover_orphan(stuck) == "retriggered"
        plan = await orch.orchestrate_plan(plan.id)

        assert plan.status == PlanStatus.FAILED
        assert plan.error_message == "timeout"
        assert second.calls == []
        assert harness.sink.event_types == ["agent_plan_failed"]


class TestDecisionsAreAtomic:
    async def test_pause_is_a_single_write(self, harness, context):
        orch = harness.orchestrator
        plan = await orch.create_and_start_plan("Email Alice the report", context)
        running = await orch.orchestrate_plan(plan.id)
        harness.store.update_status = AsyncMock(side_effect=AssertionError("second write"))

        paused = await orch.orchestrate_plan(plan.id)

        assert paused.status == PlanStatus.PAUSED
        assert paused.steps[1].status == StepStatus.AWAITING_APPROVAL
        assert paused.revision == running.revision + 1

    async def test_approval_is_a_single_write(self, harness, context):
        orch = harness.orchestrator
        plan = await orch.create_and_start_plan("Email Alice the report", context)
        await orch.orchestrate_plan(plan.id)
        paused = await orch.orchestrate_plan(plan.id)
        harness.store.update_status = AsyncMock(side_effect=AssertionError("second write"))

        resumed = await orch.resume_plan_after_approval(plan.id)

        assert resumed.status == PlanStatus.RUNNING
        assert resumed.steps[1].status == StepStatus.PENDING
        assert resumed.revision == paused.revision + 1

    async def test_rejection_is_a_single_write(self, harness, context):
        orch = harness.orchestrator
        plan = await orch.create_and_start_plan("Email Alice the report", context)
        await orch.orchestrate_plan(plan.id)
        paused = await orch.orchestrate_plan(plan.id)
        harness.store.update_status = AsyncMock(side_effect=AssertionError("second write"))

        cancelled = await orch.reject_plan_step(plan.id)

        assert cancelled.status == PlanStatus.CANCELLED
        assert cancelled.error_message == "Step rejected by user"
        assert cancelled.completed_at is not None
        assert cancelled.revision == paused.revision + 1

    @pytest.mark.parametrize("decide", ["resume_plan_after_approval", "reject_plan_step"])
    async def test_losing_a_concurrent_decision_is_a_state_error(self, harness, context, decide):
        orch = harness.orchestrator
        plan = await orch.create_and_start_plan("Email Alice the report", context)
        await orch.orchestrate_plan(plan.id)
        paused = await orch.orchestrate_plan(plan.id)
        harness.store.record_step_result = AsyncMock(
            side_effect=StaleWriteError(plan.id, paused.revision)
        )

        with pytest.raises(PlanStateError, match="another decision"):
            await getattr(orch, decide)(plan.id)


class TestTerminalPlansAreUntouched:
    async def test_completed_plan(self, store, context):
        harness = Harness(store, [FakeTool("a")], [{"tool": "a", "args": {}}])
        orch = harness.orchestrator
        plan = await orch.create_and_start_plan("One thing", context)
        done = await orch.orchestrate_plan(plan.id)
        assert done.status == PlanStatus.COMPLETED

        again = await orch.orchestrate_plan(plan.id)
        assert again.revision == done.revision
        assert again.updated_at == done.updated_at
        assert harness.sink.event_types == ["agent_plan_completed"]

    async def test_failed_plan(self, store, context):
        harness = Harness(store, [FakeTool("a", success=False, error="nope")], [
            {"tool": "a", "args": {}},
        ])
        orch = harness.orchestrator
        plan = await orch.create_and_start_plan("One thing", context)
        failed = await orch.orchestrate_plan(plan.id)
        assert failed.status == PlanStatus.FAILED

        again = await orch.orchestrate_plan(plan.id)
        assert again.revision == failed.revision
        assert again.updated_at == failed.updated_at
        assert harness.sink.event_types == ["agent_plan_failed"]
