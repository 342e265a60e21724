"""
Tools module for agent capabilities.
"""

from .base import Tool, ToolInvocation, ToolParameter, ToolResult
from .registry import ToolRegistry, build_user_tools
from .web_search import TavilySearch

__all__ = [
    "Tool",
    "ToolInvocation",
    "ToolParameter",
    "ToolResult",
    "ToolRegistry",
    "build_user_tools",
    "TavilySearch",
]
