"""Tool interface and the registry boundary used by the step runner."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class ToolResult:
    """Tagged outcome of a tool call: ``success`` selects output or error."""
    success: bool
    output: str = ""
    error: str = ""

    @classmethod
    def ok(cls, output: str) -> ToolResult:
        return cls(success=True, output=output)

    @classmethod
    def err(cls, error: str) -> ToolResult:
        return cls(success=False, error=error)


@dataclass
class ExecutionContext:
    user_id: str
    organization_id: str = ""
    conversation_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "organization_id": self.organization_id or self.user_id,
            "conversation_id": self.conversation_id,
        }


@dataclass
class ToolDescriptor:
    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolCatalog:
    tools: list[ToolDescriptor] = field(default_factory=list)
    # Display name -> id for user-defined extension tools.
    skill_map: dict[str, str] = field(default_factory=dict)

    @property
    def names(self) -> list[str]:
        return [t.name for t in self.tools]


class BaseTool(ABC):
    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def description(self) -> str: ...

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON Schema for tool parameters."""
        ...

    @abstractmethod
    async def execute(self, context: ExecutionContext, **kwargs: Any) -> ToolResult: ...

    def describe(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )


class ToolRegistry(ABC):
    """Advertises tools to the planner and runs them for the step runner."""

    @abstractmethod
    async def list_available_tools(
        self, user_id: str, organization_id: str
    ) -> ToolCatalog: ...

    @abstractmethod
    async def execute(
        self,
        tool_name: str,
        args: dict[str, Any],
        context: ExecutionContext,
        skill_map: dict[str, str] | None = None,
    ) -> ToolResult | str:
        """Run a tool.

        Registries may return a ToolResult or, for older integrations, a
        plain string where an ``Error`` prefix signals failure. Raising is
        also a failure signal.
        """
        ...

    async def close(self) -> None:
        """Release resources. Override if needed."""
