"""Shared fixtures and fakes for the plan engine tests."""

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock

import pytest

from conductor.config import PlannerConfig
from conductor.core.activity import ActivitySink
from conductor.core.continuation import ContinuationTrigger
from conductor.core.llm import Completion
from conductor.planner.approval import ApprovalGate
from conductor.planner.decomposer import Planner
from conductor.planner.orchestrator import Orchestrator
from conductor.planner.reporter import Reporter
from conductor.planner.runner import StepRunner
from conductor.planner.store import PlanStore
from conductor.tools.base import BaseTool, ExecutionContext, ToolResult
from conductor.tools.registry import LocalToolRegistry


class RecordingSink(ActivitySink):
    def __init__(self, fail: bool = False) -> None:
        self.activities: list[dict[str, Any]] = []
        self.notifications: list[dict[str, Any]] = []
        self._fail = fail

    async def log_activity(self, user_id, event_type, title, description="", metadata=None):
        if self._fail:
            raise RuntimeError("activity store down")
        self.activities.append({
            "user_id": user_id,
            "event_type": event_type,
            "title": title,
            "description": description,
            "metadata": metadata or {},
        })

    async def notify(self, user_id, messages, related_id=None):
        if self._fail:
            raise RuntimeError("push down")
        self.notifications.append(
            {"user_id": user_id, "messages": messages, "related_id": related_id}
        )

    @property
    def event_types(self) -> list[str]:
        return [a["event_type"] for a in self.activities]


class FakeTool(BaseTool):
    def __init__(
        self,
        name: str,
        output: str = "done",
        success: bool = True,
        error: str = "",
        raises: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self._name = name
        self._output = output
        self._success = success
        self._error = error
        self._raises = raises
        self._delay = delay
        self.calls: list[dict[str, Any]] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return f"Fake {self._name}"

    @property
    def parameters(self) -> dict[str, Any]:
        return {"type": "object", "properties": {}}

    async def execute(self, context: ExecutionContext, **kwargs: Any) -> ToolResult:
        self.calls.append(kwargs)
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._raises is not None:
            raise self._raises
        return ToolResult(success=self._success, output=self._output, error=self._error)


def planning_model(reply: Any) -> AsyncMock:
    """A planning model whose every completion is ``reply`` (JSON-encoded unless a str)."""
    content = reply if isinstance(reply, str) else json.dumps(reply)
    model = AsyncMock()
    model.complete = AsyncMock(return_value=Completion(content=content))
    return model


class Harness:
    """An orchestrator over a real store with fake tools and a recording sink."""

    def __init__(self, store: PlanStore, tools: list[BaseTool], reply: Any) -> None:
        self.store = store
        self.sink = RecordingSink()
        self.model = planning_model(reply)
        self.registry = LocalToolRegistry(tools)
        self.continuation = AsyncMock(spec=ContinuationTrigger)
        self.orchestrator = Orchestrator(
            store=store,
            planner=Planner(self.model, PlannerConfig(max_steps=10)),
            registry=self.registry,
            runner=StepRunner(self.registry),
            gate=ApprovalGate(self.sink),
            reporter=Reporter(self.sink),
            continuation=self.continuation,
            step_cost=0.0004,
        )

    @property
    def enqueued(self) -> list[str]:
        return [c.args[0] for c in self.continuation.enqueue.await_args_list]


@pytest.fixture
async def store(tmp_path):
    s = PlanStore(tmp_path / "plans.db")
    await s.start()
    yield s
    await s.stop()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def context():
    return ExecutionContext(user_id="u1", organization_id="org1", conversation_id="conv1")
