"""Tool registry implementations: in-process tools and a remote registry service."""

from __future__ import annotations

from typing import Any

import httpx

from conductor.config import RegistryConfig
from conductor.tools.base import (
    BaseTool,
    ExecutionContext,
    ToolCatalog,
    ToolDescriptor,
    ToolRegistry,
    ToolResult,
)
from conductor.utils.logging import get_logger

log = get_logger(__name__)


class LocalToolRegistry(ToolRegistry):
    """Registry over ``BaseTool`` instances living in this process.

    ``skills`` are user-defined extension tools keyed by id; they are
    reachable only through a skill map that names them.
    """

    def __init__(
        self,
        tools: list[BaseTool] | None = None,
        skills: dict[str, BaseTool] | None = None,
    ) -> None:
        self._tool_map: dict[str, BaseTool] = {t.name: t for t in tools or []}
        self._skills: dict[str, BaseTool] = dict(skills or {})

    def register(self, tool: BaseTool) -> None:
        self._tool_map[tool.name] = tool

    async def list_available_tools(
        self, user_id: str, organization_id: str
    ) -> ToolCatalog:
        descriptors = [t.describe() for t in self._tool_map.values()]
        skill_map: dict[str, str] = {}
        for skill_id, skill in self._skills.items():
            descriptors.append(skill.describe())
            skill_map[skill.name] = skill_id
        return ToolCatalog(tools=descriptors, skill_map=skill_map)

    async def execute(
        self,
        tool_name: str,
        args: dict[str, Any],
        context: ExecutionContext,
        skill_map: dict[str, str] | None = None,
    ) -> ToolResult:
        tool = self._tool_map.get(tool_name)
        if tool is None and skill_map and tool_name in skill_map:
            tool = self._skills.get(skill_map[tool_name])
        if tool is None:
            return ToolResult.err(f"Tool '{tool_name}' is not recognized")

        log.info("tool_executing", tool=tool_name, user_id=context.user_id)
        return await tool.execute(context, **args)


class HttpToolRegistry(ToolRegistry):
    """Client for an external tool registry service.

    ``GET  /tools?user_id=&organization_id=`` -> ``{"tools": [...], "skill_map": {...}}``
    ``POST /tools/{name}/execute`` -> ``{"success": bool, "output": str, "error": str}``
    """

    def __init__(
        self, config: RegistryConfig, transport: httpx.AsyncBaseTransport | None = None
    ) -> None:
        headers = {"Authorization": f"Bearer {config.secret}"} if config.secret else {}
        self._client = httpx.AsyncClient(
            base_url=config.url.rstrip("/"),
            timeout=config.timeout,
            headers=headers,
            transport=transport,
        )

    async def list_available_tools(
        self, user_id: str, organization_id: str
    ) -> ToolCatalog:
        resp = await self._client.get(
            "/tools", params={"user_id": user_id, "organization_id": organization_id},
        )
        resp.raise_for_status()
        data = resp.json()
        tools = [
            ToolDescriptor(
                name=t["name"],
                description=t.get("description", ""),
                parameters=t.get("parameters") or {},
            )
            for t in data.get("tools", [])
        ]
        return ToolCatalog(tools=tools, skill_map=dict(data.get("skill_map") or {}))

    async def execute(
        self,
        tool_name: str,
        args: dict[str, Any],
        context: ExecutionContext,
        skill_map: dict[str, str] | None = None,
    ) -> ToolResult:
        payload: dict[str, Any] = {"args": args, "context": context.to_dict()}
        if skill_map and tool_name in skill_map:
            payload["skill_id"] = skill_map[tool_name]
        resp = await self._client.post(f"/tools/{tool_name}/execute", json=payload)
        resp.raise_for_status()
        data = resp.json()
        if data.get("success"):
            return ToolResult.ok(str(data.get("output", "")))
        return ToolResult.err(str(data.get("error") or "Tool reported failure"))

    async def close(self) -> None:
        await self._client.aclose()
