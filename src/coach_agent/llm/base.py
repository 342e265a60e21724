"""
Base classes for LLM providers.
"""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal, Union


@dataclass
class ToolDefinition:
    """Definition of a tool that the LLM can use."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class ToolCall:
    """A tool call made by the LLM."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class TextPart:
    """Plain text content part."""

    text: str
    type: Literal["text"] = "text"


@dataclass
class ImagePart:
    """Inline image reference (http(s) URL or data URI)."""

    url: str
    media_type: str | None = None
    type: Literal["image"] = "image"


@dataclass
class FilePart:
    """Typed binary attachment (audio, pdf, ...)."""

    data: bytes
    media_type: str
    filename: str | None = None
    type: Literal["file"] = "file"


ContentPart = Union[TextPart, ImagePart, FilePart]


@dataclass
class LLMMessage:
    """A message in the conversation.

    ``parts`` carries multi-modal content for user messages; when it is
    set, providers send the parts instead of ``content``.
    """

    role: Literal["user", "assistant", "system", "tool"]
    content: str
    parts: list[ContentPart] | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None


@dataclass
class ProviderUsage:
    """Usage figures as reported by the provider itself (e.g. OpenRouter)."""

    input_tokens: int | None = None
    output_tokens: int | None = None
    cost_usd: float | None = None

    @property
    def is_complete(self) -> bool:
        return (
            self.input_tokens is not None
            and self.output_tokens is not None
            and self.cost_usd is not None
        )


@dataclass
class LLMResponse:
    """Response from an LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    model: str = ""
    stop_reason: str | None = None
    provider_usage: ProviderUsage | None = None
    reasoning: str | None = None
    raw_response: Any = None


@dataclass
class StreamChunk:
    """One event of a streamed generation.

    Text deltas arrive with ``text`` set; the last chunk carries the
    assembled ``response`` (tool calls and usage included).
    """

    text: str = ""
    response: LLMResponse | None = None


_JSON_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse a JSON object out of a model reply, tolerating code fences."""
    cleaned = _JSON_FENCE.sub("", text.strip()).strip()
    if not cleaned.startswith("{"):
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end == -1:
            raise ValueError(f"No JSON object in model output: {text[:120]!r}")
        cleaned = cleaned[start:end + 1]
    data = json.loads(cleaned)
    if not isinstance(data, dict):
        raise ValueError("Model output is not a JSON object")
    return data


class BaseLLM(ABC):
    """Base class for LLM providers."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.temperature = temperature

    @abstractmethod
    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        """Generate a response from the LLM."""
        pass

    @abstractmethod
    def stream(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a response from the LLM, ending with the full response."""
        pass

    async def generate_json(
        self,
        prompt: str,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        """Ask for a JSON object and parse it."""
        response = await self.generate(
            messages=[LLMMessage(role="user", content=prompt)],
            system_prompt=(system_prompt or "") + "\n\nReply with a single JSON object and nothing else.",
            max_tokens=max_tokens,
            temperature=0,
        )
        return parse_json_object(response.content)

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get the provider name."""
        pass
