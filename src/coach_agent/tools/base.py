"""
Base classes for tools.

Tools are value objects built per request. Each one carries the id of
the user it acts for, so the tool set of a turn is plain data.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine

import structlog

from ..errors import ToolExecutionError
from ..llm.base import ToolDefinition

logger = structlog.get_logger()


@dataclass
class ToolResult:
    """Result from a tool execution."""

    success: bool
    output: str = ""
    data: Any = None
    error: str | None = None

    def to_payload(self) -> str:
        """Text fed back to the model as the tool's result."""
        if not self.success:
            return json.dumps({"success": False, "error": self.error or "Unknown error"})
        if self.data is not None:
            return json.dumps({"success": True, "message": self.output, "data": self.data}, default=str)
        return json.dumps({"success": True, "message": self.output})


@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    param_type: str  # string, integer, boolean, array, object
    description: str
    required: bool = True
    default: Any = None
    enum: list[str] | None = None


ToolHandler = Callable[..., Coroutine[Any, Any, ToolResult]]


@dataclass(frozen=True)
class Tool:
    """A capability the model can call, bound to one user.

    The handler is awaited as ``handler(user_id, **arguments)``.
    """

    name: str
    description: str
    parameters: tuple[ToolParameter, ...]
    handler: ToolHandler
    user_id: str | None = None

    @property
    def input_schema(self) -> dict[str, Any]:
        """Parameters in JSON Schema format."""
        properties = {}
        required = []

        for param in self.parameters:
            prop: dict[str, Any] = {
                "type": param.param_type,
                "description": param.description,
            }
            if param.enum:
                prop["enum"] = param.enum
            if param.default is not None:
                prop["default"] = param.default

            properties[param.name] = prop

            if param.required:
                required.append(param.name)

        return {
            "type": "object",
            "properties": properties,
            "required": required,
        }

    def to_definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.input_schema,
        )

    async def execute(self, arguments: dict[str, Any]) -> ToolResult:
        """Run the handler. Failures become an error result, never an exception."""
        known = {p.name for p in self.parameters}
        missing = [p.name for p in self.parameters if p.required and p.name not in arguments]
        if missing:
            return ToolResult(success=False, error=f"Missing required arguments: {', '.join(missing)}")

        kwargs = {k: v for k, v in arguments.items() if k in known}
        try:
            return await self.handler(self.user_id, **kwargs)
        except Exception as e:
            error = ToolExecutionError(f"{self.name} failed: {e}")
            logger.error("Tool execution error", tool_name=self.name, user_id=self.user_id, error=str(e))
            return ToolResult(success=False, error=str(error))


@dataclass(frozen=True)
class ToolInvocation:
    """One tool call within a turn, in step order."""

    step: int
    tool_call_id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    result: ToolResult | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "name": self.name,
            "args": self.arguments,
            "result": self.result.output if self.result and self.result.success else None,
            "error": self.result.error if self.result and not self.result.success else None,
        }
