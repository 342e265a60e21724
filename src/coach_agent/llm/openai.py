"""
OpenAI GPT LLM provider (also works with OpenRouter and compatible APIs).
"""

import base64
import json
from typing import Any, AsyncIterator

import openai
import structlog

from ..errors import classify_provider_error
from .base import (
    BaseLLM,
    ContentPart,
    ImagePart,
    LLMMessage,
    LLMResponse,
    ProviderUsage,
    StreamChunk,
    TextPart,
    ToolCall,
    ToolDefinition,
    parse_json_object,
)

logger = structlog.get_logger()

_AUDIO_FORMATS = {
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
}


def _parse_arguments(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Malformed tool call arguments", raw=raw[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}


class OpenAILLM(BaseLLM):
    """OpenAI GPT LLM provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4.1-mini",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature)
        self.client = openai.AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
        )

    @property
    def provider_name(self) -> str:
        return "openrouter" if self._is_openrouter else "openai"

    @property
    def _is_openrouter(self) -> bool:
        return bool(self.base_url and "openrouter.ai" in self.base_url)

    def _convert_part(self, part: ContentPart) -> dict[str, Any]:
        if isinstance(part, TextPart):
            return {"type": "text", "text": part.text}
        if isinstance(part, ImagePart):
            return {"type": "image_url", "image_url": {"url": part.url}}

        encoded = base64.b64encode(part.data).decode("ascii")
        if part.media_type.startswith("audio/"):
            audio_format = _AUDIO_FORMATS.get(part.media_type, part.media_type.split("/", 1)[1])
            return {
                "type": "input_audio",
                "input_audio": {"data": encoded, "format": audio_format},
            }
        return {
            "type": "file",
            "file": {
                "filename": part.filename or "attachment",
                "file_data": f"data:{part.media_type};base64,{encoded}",
            },
        }

    def _convert_messages(self, messages: list[LLMMessage]) -> list[dict[str, Any]]:
        """Convert LLMMessages to OpenAI format."""
        converted = []

        for msg in messages:
            if msg.role == "tool":
                converted.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id,
                    "content": msg.content,
                })
            elif msg.role == "assistant" and msg.tool_calls:
                tool_calls = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": json.dumps(tc.arguments),
                        },
                    }
                    for tc in msg.tool_calls
                ]
                converted.append({
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": tool_calls,
                })
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
        """Convert ToolDefinitions to OpenAI format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }
            for tool in tools
        ]

    def _build_kwargs(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None,
        system_prompt: str | None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> dict[str, Any]:
        converted_messages = self._convert_messages(messages)

        if system_prompt:
            converted_messages.insert(0, {"role": "system", "content": system_prompt})

        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature if temperature is None else temperature,
            "messages": converted_messages,
        }

        if tools:
            kwargs["tools"] = self._convert_tools(tools)

        if self._is_openrouter:
            # OpenRouter only reports its own cost figure when asked to
            kwargs["extra_body"] = {"usage": {"include": True}}

        return kwargs

    def _provider_usage(self, usage: Any) -> ProviderUsage | None:
        if usage is None or not self._is_openrouter:
            return None
        cost = getattr(usage, "cost", None)
        return ProviderUsage(
            input_tokens=getattr(usage, "prompt_tokens", None),
            output_tokens=getattr(usage, "completion_tokens", None),
            cost_usd=float(cost) if cost is not None else None,
        )

    @staticmethod
    def _reasoning_tokens(usage: Any) -> int:
        details = getattr(usage, "completion_tokens_details", None)
        return getattr(details, "reasoning_tokens", None) or 0

    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        """Generate a response from GPT."""
        kwargs = self._build_kwargs(messages, tools, system_prompt, max_tokens, temperature)

        try:
            response = await self.client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            logger.error("OpenAI API error", error=str(e), model=self.model)
            raise classify_provider_error(e) from e

        choice = response.choices[0]
        message = choice.message

        tool_calls = [
            ToolCall(
                id=tc.id,
                name=tc.function.name,
                arguments=_parse_arguments(tc.function.arguments),
            )
            for tc in (message.tool_calls or [])
        ]

        usage = response.usage
        return LLMResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            reasoning_tokens=self._reasoning_tokens(usage),
            model=response.model,
            stop_reason=choice.finish_reason,
            provider_usage=self._provider_usage(usage),
            reasoning=getattr(message, "reasoning", None),
            raw_response=response,
        )

    async def generate_json(
        self,
        prompt: str,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        """Generate a JSON object using the provider's JSON mode."""
        kwargs = self._build_kwargs(
            [LLMMessage(role="user", content=prompt)],
            None,
            (system_prompt or "") + "\n\nReply with a single JSON object and nothing else.",
            max_tokens,
            0,
        )
        kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await self.client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            logger.error("OpenAI JSON generation error", error=str(e), model=self.model)
            raise classify_provider_error(e) from e

        return parse_json_object(response.choices[0].message.content or "")

    async def stream(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a response from GPT."""
        kwargs = self._build_kwargs(messages, tools, system_prompt)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        try:
            stream = await self.client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            logger.error("OpenAI streaming error", error=str(e), model=self.model)
            raise classify_provider_error(e) from e

        text_parts: list[str] = []
        pending_calls: dict[int, dict[str, str]] = {}
        finish_reason = None
        usage = None
        model = self.model

        try:
            async for chunk in stream:  # type: ignore
                if chunk.usage:
                    usage = chunk.usage
                if chunk.model:
                    model = chunk.model
                if not chunk.choices:
                    continue

                choice = chunk.choices[0]
                delta = choice.delta
                if delta.content:
                    text_parts.append(delta.content)
                    yield StreamChunk(text=delta.content)

                for tc in delta.tool_calls or []:
                    entry = pending_calls.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        entry["id"] = tc.id
                    if tc.function and tc.function.name:
                        entry["name"] += tc.function.name
                    if tc.function and tc.function.arguments:
                        entry["arguments"] += tc.function.arguments

                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except openai.APIError as e:
            logger.error("OpenAI streaming error", error=str(e), model=self.model)
            raise classify_provider_error(e) from e
        finally:
            await stream.close()

        tool_calls = [
            ToolCall(
                id=entry["id"] or f"call_{index}",
                name=entry["name"],
                arguments=_parse_arguments(entry["arguments"]),
            )
            for index, entry in sorted(pending_calls.items())
        ]

        yield StreamChunk(response=LLMResponse(
            content="".join(text_parts),
            tool_calls=tool_calls,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            reasoning_tokens=self._reasoning_tokens(usage),
            model=model,
            stop_reason=finish_reason,
            provider_usage=self._provider_usage(usage),
        ))
