from conductor.tools.base import (
    BaseTool,
    ExecutionContext,
    ToolCatalog,
    ToolDescriptor,
    ToolRegistry,
    ToolResult,
)
from conductor.tools.registry import HttpToolRegistry, LocalToolRegistry

__all__ = [
    "BaseTool",
    "ExecutionContext",
    "HttpToolRegistry",
    "LocalToolRegistry",
    "ToolCatalog",
    "ToolDescriptor",
    "ToolRegistry",
    "ToolResult",
]
