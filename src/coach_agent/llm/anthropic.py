"""
Anthropic Claude LLM provider.
"""

import base64
from typing import Any, AsyncIterator

import anthropic
import structlog

from ..errors import classify_provider_error
from .base import (
    BaseLLM,
    ContentPart,
    ImagePart,
    LLMMessage,
    LLMResponse,
    StreamChunk,
    TextPart,
    ToolCall,
    ToolDefinition,
)

logger = structlog.get_logger()


class AnthropicLLM(BaseLLM):
    """Anthropic Claude LLM provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature)
        self.client = anthropic.AsyncAnthropic(
            api_key=api_key,
            base_url=base_url,
        )

    @property
    def provider_name(self) -> str:
        return "anthropic"

    def _convert_part(self, part: ContentPart) -> dict[str, Any]:
        if isinstance(part, TextPart):
            return {"type": "text", "text": part.text}

        if isinstance(part, ImagePart):
            if part.url.startswith("data:"):
                header, _, data = part.url.partition(",")
                media_type = header[len("data:"):].split(";", 1)[0] or (part.media_type or "image/png")
                return {
                    "type": "image",
                    "source": {"type": "base64", "media_type": media_type, "data": data},
                }
            return {"type": "image", "source": {"type": "url", "url": part.url}}

        if part.media_type == "application/pdf":
            return {
                "type": "document",
                "source": {
                    "type": "base64",
                    "media_type": "application/pdf",
                    "data": base64.b64encode(part.data).decode("ascii"),
                },
            }

        # Claude has no audio input; keep the turn coherent with a marker
        label = part.filename or part.media_type
        return {"type": "text", "text": f"[Attachment not supported by this model: {label}]"}

    def _convert_messages(self, messages: list[LLMMessage]) -> list[dict[str, Any]]:
        """Convert LLMMessages to Anthropic format."""
        converted = []

        for msg in messages:
            if msg.role == "system":
                continue

            if msg.role == "tool":
                converted.append({
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": msg.tool_call_id,
                            "content": msg.content,
                        }
                    ],
                })
            elif msg.role == "assistant" and msg.tool_calls:
                content: list[dict[str, Any]] = []
                if msg.content:
                    content.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls:
                    content.append({
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.name,
                        "input": tc.arguments,
                    })
                converted.append({"role": "assistant", "content": content})
            elif msg.parts:
                converted.append({
                    "role": msg.role,
                    "content": [self._convert_part(p) for p in msg.parts],
                })
            else:
                converted.append({
                    "role": msg.role,
                    "content": msg.content,
                })

        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to Anthropic format."""
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.parameters,
            }
            for tool in tools
        ]

    def _system_text(self, messages: list[LLMMessage], system_prompt: str | None) -> str | None:
        """Merge the explicit system prompt with inline system messages."""
        blocks = [system_prompt] if system_prompt else []
        blocks.extend(m.content for m in messages if m.role == "system" and m.content)
        return "\n\n".join(blocks) or None

    def _build_kwargs(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None,
        system_prompt: str | None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature if temperature is None else temperature,
            "messages": self._convert_messages(messages),
        }

        system = self._system_text(messages, system_prompt)
        if system:
            kwargs["system"] = system

        if tools:
            kwargs["tools"] = self._convert_tools(tools)

        return kwargs

    def _to_response(self, message: Any) -> LLMResponse:
        content = ""
        tool_calls = []

        for block in message.content:
            if block.type == "text":
                content += block.text
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(
                    id=block.id,
                    name=block.name,
                    arguments=dict(block.input) if isinstance(block.input, dict) else {},
                ))

        return LLMResponse(
            content=content,
            tool_calls=tool_calls,
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens,
            model=message.model,
            stop_reason=message.stop_reason,
            raw_response=message,
        )

    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        """Generate a response from Claude."""
        kwargs = self._build_kwargs(messages, tools, system_prompt, max_tokens, temperature)

        try:
            response = await self.client.messages.create(**kwargs)
        except anthropic.APIError as e:
            logger.error("Anthropic API error", error=str(e), model=self.model)
            raise classify_provider_error(e) from e

        return self._to_response(response)

    async def stream(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a response from Claude."""
        kwargs = self._build_kwargs(messages, tools, system_prompt)

        try:
            async with self.client.messages.stream(**kwargs) as stream:
                async for text in stream.text_stream:
                    yield StreamChunk(text=text)
                final = await stream.get_final_message()
        except anthropic.APIError as e:
            logger.error("Anthropic streaming error", error=str(e), model=self.model)
            raise classify_provider_error(e) from e

        yield StreamChunk(response=self._to_response(final))
