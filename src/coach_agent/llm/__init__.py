"""
LLM module for multi-provider AI model support.

Providers:
- Anthropic Claude (native SDK)
- OpenAI GPT (native SDK)
- OpenRouter (via OpenAI-compatible endpoint)
"""

from .base import (
    BaseLLM,
    FilePart,
    ImagePart,
    LLMMessage,
    LLMResponse,
    ProviderUsage,
    StreamChunk,
    TextPart,
    ToolCall,
    ToolDefinition,
)
from .anthropic import AnthropicLLM
from .openai import OpenAILLM
from .factory import create_llm
from .embeddings import BaseEmbedder, EmbeddingRetryConfig, OpenAIEmbedder

__all__ = [
    "BaseLLM",
    "FilePart",
    "ImagePart",
    "LLMMessage",
    "LLMResponse",
    "ProviderUsage",
    "StreamChunk",
    "TextPart",
    "ToolCall",
    "ToolDefinition",
    "AnthropicLLM",
    "OpenAILLM",
    "create_llm",
    "BaseEmbedder",
    "EmbeddingRetryConfig",
    "OpenAIEmbedder",
]
