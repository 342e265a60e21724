"""
Per-request tool registry.
"""

from typing import Any

import structlog

from ..llm.base import ToolDefinition
from ..memory.profile import ProfileStore
from ..memory.store import MemoryStore
from .base import Tool, ToolResult
from .memory_tools import create_memory_tools
from .profile_tools import create_profile_tools
from .web_search import TavilySearch, create_web_search_tool

logger = structlog.get_logger()


class ToolRegistry:
    """The tools available to the model for one turn."""

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools.keys())

    def get_definitions(self) -> list[ToolDefinition]:
        """Get all tool definitions for LLM."""
        return [tool.to_definition() for tool in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Execute a tool by name."""
        tool = self.get(name)
        if tool is None:
            return ToolResult(
                success=False,
                error=f"Tool '{name}' not found",
            )

        logger.info("Executing tool", tool_name=name, user_id=tool.user_id, arguments=arguments)
        result = await tool.execute(arguments)
        logger.info("Tool executed", tool_name=name, success=result.success)
        return result


def build_user_tools(
    user_id: str,
    memory_store: MemoryStore,
    profile_store: ProfileStore,
    web_search: TavilySearch | None = None,
) -> ToolRegistry:
    """Assemble the tool set for one user's turn."""
    tools = create_memory_tools(user_id, memory_store) + create_profile_tools(user_id, profile_store)
    if web_search is not None:
        tools.append(create_web_search_tool(user_id, web_search))
    return ToolRegistry(tools)
