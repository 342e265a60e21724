"""
Agent module - the brain of the system.

Includes:
- GenerationOrchestrator: prompt assembly, tool loop, streaming, usage
- SessionContextBuilder: bounded, deduplicated conversation history
- ContextCompactor: context-budget enforcement via summarization
- Style, prompt and multi-modal helpers
"""

from .compaction import CompactionConfig, CompactionResult, CompactionState, ContextCompactor, Summarizer
from .context import ConversationContext, ConversationMessage
from .core import (
    GenerationOrchestrator,
    OrchestratorConfig,
    PreparedTurn,
    StepReport,
    ToolLoop,
    TurnRequest,
    TurnResult,
    TurnState,
)
from .multimodal import IncomingPart
from .session import InMemoryMessageStore, MessageStore, SessionContextBuilder
from .title import generate_chat_title

__all__ = [
    "CompactionConfig",
    "CompactionResult",
    "CompactionState",
    "ContextCompactor",
    "Summarizer",
    "ConversationContext",
    "ConversationMessage",
    "GenerationOrchestrator",
    "OrchestratorConfig",
    "PreparedTurn",
    "StepReport",
    "ToolLoop",
    "TurnRequest",
    "TurnResult",
    "TurnState",
    "IncomingPart",
    "InMemoryMessageStore",
    "MessageStore",
    "SessionContextBuilder",
    "generate_chat_title",
]
