"""
Command-line interface for Coach-Agent.
"""

import argparse
import asyncio
import logging
import sys
import uuid
from pathlib import Path
from typing import Any

import structlog
import uvicorn

from .config import Settings, get_settings
from .errors import CoachAgentError, ConfigurationError

logger = structlog.get_logger()

SECRET_KEYS = ("api_key", "authorization", "token", "password")
REDACTED = "[REDACTED]"


def redact_secrets(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor masking secret-bearing keys."""
    for key in list(event_dict):
        name = key.lower()
        if any(name == secret or name.endswith("_" + secret) for secret in SECRET_KEYS):
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog for console output."""
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level.upper())
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            redact_secrets,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main() -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="coach-agent",
        description="Coach-Agent - response orchestration for a coaching assistant",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default=None, help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    chat_parser = subparsers.add_parser("chat", help="Interactive chat in the terminal")
    chat_parser.add_argument("--user", default="local-user", help="User id to chat as")
    chat_parser.add_argument("--conversation", default=None, help="Conversation id to continue")
    chat_parser.add_argument("--tier", default=None, help="Subscription tier (basic, pro, unlimited)")

    ingest_parser = subparsers.add_parser("ingest", help="Add a document to the knowledge base")
    ingest_parser.add_argument("file", help="Text or markdown file to ingest")
    ingest_parser.add_argument("--title", default=None, help="Document title (default: file name)")

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--check", action="store_true", help="Check configuration validity")

    subparsers.add_parser("init", help="Initialize the project (create .env, data directory)")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    settings = get_settings()
    configure_logging(settings.log_level)

    try:
        if args.command == "serve":
            run_server(settings, args.host, args.port, args.reload)
        elif args.command == "chat":
            asyncio.run(chat_repl(settings, args.user, args.conversation, args.tier))
        elif args.command == "ingest":
            asyncio.run(ingest_file(settings, Path(args.file), args.title))
        elif args.command == "config":
            ok = show_config(settings, args.check)
            sys.exit(0 if ok else 1)
        elif args.command == "init":
            init_project()
        else:
            parser.print_help()
    except ConfigurationError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)


def run_server(settings: Settings, host: str | None, port: int | None, reload: bool) -> None:
    """Run the FastAPI server."""
    host = host or settings.host
    port = port or settings.port
    logger.info("Starting Coach-Agent server", host=host, port=port)

    uvicorn.run(
        "coach_agent.api.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
        log_level=settings.log_level.lower(),
    )


async def chat_repl(settings: Settings, user_id: str, conversation_id: str | None, tier: str | None) -> None:
    """Interactive streaming chat."""
    from .runtime import create_runtime

    runtime = await create_runtime(settings)
    conversation_id = conversation_id or str(uuid.uuid4())

    print(f"Conversation {conversation_id} - empty line or Ctrl-D to quit\n")
    while True:
        try:
            text = input("you> ").strip()
        except EOFError:
            break
        if not text:
            break

        print("coach> ", end="", flush=True)
        try:
            async for delta in runtime.chat.stream_reply(user_id, conversation_id, text=text, tier=tier):
                print(delta, end="", flush=True)
        except CoachAgentError as e:
            print(f"\n[error] {e}")
            continue
        print("\n")

    await runtime.chat.drain()


async def ingest_file(settings: Settings, path: Path, title: str | None) -> None:
    """Add a file to the knowledge base."""
    from .runtime import create_runtime

    runtime = await create_runtime(settings)
    if runtime.knowledge_base is None:
        raise ConfigurationError("Knowledge base disabled: set OPENROUTER_API_KEY or OPENAI_API_KEY")

    content = path.read_text(encoding="utf-8")
    report = await runtime.knowledge_base.add_document(title or path.stem, content, source=str(path))
    print(
        f"Added '{report.title}' ({report.document_id}): "
        f"{report.embedded_count}/{report.chunk_count} chunks embedded"
    )


def show_config(settings: Settings, check: bool) -> bool:
    """Show current configuration. Returns False when the check finds errors."""

    def mask(value: str) -> str:
        if not value:
            return "(not set)"
        return value[:4] + "..." + value[-4:] if len(value) > 10 else "****"

    print("\n=== Coach-Agent Configuration ===\n")

    print("Server:")
    print(f"  Host: {settings.host}")
    print(f"  Port: {settings.port}")
    print(f"  Debug: {settings.debug}")

    print("\nLLM Providers:")
    print(f"  Default: {settings.default_provider}")
    print(f"  Orchestrator Model: {settings.orchestrator_model}")
    print(f"  Classifier Model: {settings.classifier_model}")
    print(f"  Summarization Model: {settings.summarization_model}")
    print(f"  Embedding Model: {settings.embedding_model}")
    print(f"  OpenRouter Key: {mask(settings.openrouter_api_key)}")
    print(f"  OpenAI Key: {mask(settings.openai_api_key)}")
    print(f"  Anthropic Key: {mask(settings.anthropic_api_key)}")

    print("\nContext:")
    print(f"  History (basic/pro/unlimited): {settings.max_context_messages_basic}/"
          f"{settings.max_context_messages_pro}/{settings.max_context_messages_unlimited}")
    print(f"  Compaction: at {settings.compaction_threshold_percent}%, "
          f"target {settings.target_percent_after_compaction}%, "
          f"keep last {settings.preserve_recent_messages}")
    print(f"  Tool step cap: {settings.tool_step_cap}")

    print("\nKnowledge:")
    print(f"  Similarity threshold: {settings.rag_similarity_threshold}")
    print(f"  Top K: {settings.rag_top_k}")

    print("\nFeatures:")
    print(f"  Web Search: {settings.enable_web_search} (Tavily key: {mask(settings.tavily_api_key)})")
    print(f"  Memory Extraction: {settings.enable_memory_extraction}")

    print("\nDatabase:")
    print(f"  URL: {settings.database_url}")

    if not check:
        return True

    print("\n=== Configuration Check ===\n")
    errors = []
    warnings = []

    provider_key = settings.get_llm_config().api_key
    if not provider_key:
        errors.append(f"No API key for the default provider '{settings.default_provider}'")

    if not (settings.openrouter_api_key or settings.openai_api_key):
        warnings.append("No embedding key (OPENROUTER_API_KEY or OPENAI_API_KEY): knowledge retrieval disabled")

    if settings.enable_web_search and not settings.tavily_api_key:
        warnings.append("ENABLE_WEB_SEARCH is on but TAVILY_API_KEY is not set")

    if settings.target_percent_after_compaction >= settings.compaction_threshold_percent:
        errors.append("TARGET_PERCENT_AFTER_COMPACTION must be below COMPACTION_THRESHOLD_PERCENT")

    if errors:
        print("Errors:")
        for e in errors:
            print(f"   - {e}")

    if warnings:
        print("Warnings:")
        for w in warnings:
            print(f"   - {w}")

    if not errors and not warnings:
        print("Configuration looks good!")
    elif not errors:
        print("\nConfiguration is valid (with warnings)")
    else:
        print("\nConfiguration has errors - fix them before starting")

    return not errors


def init_project() -> None:
    """Create a starter .env and the data directory."""
    env_file = Path(".env")
    data_dir = Path("data")

    data_dir.mkdir(exist_ok=True)

    if not env_file.exists():
        env_content = """# Coach-Agent Configuration

# === REQUIRED ===

# LLM API keys (OpenRouter covers chat, classifier, summaries and embeddings)
OPENROUTER_API_KEY=
# OPENAI_API_KEY=
# ANTHROPIC_API_KEY=

# === OPTIONAL ===

DEFAULT_PROVIDER=openrouter
ORCHESTRATOR_MODEL=openai/gpt-4.1-mini
# CLASSIFIER_MODEL=google/gemini-2.0-flash-001
# SUMMARIZATION_MODEL=google/gemini-2.0-flash-001
# EMBEDDING_MODEL=openai/text-embedding-3-small

# Web search
# TAVILY_API_KEY=

# Server
HOST=0.0.0.0
PORT=8080
DEBUG=false
LOG_LEVEL=INFO

# Database
DATABASE_URL=sqlite+aiosqlite:///./data/coach.db
"""
        env_file.write_text(env_content)
        print(f"Created {env_file}")
    else:
        print(f"{env_file} already exists")

    print(f"Created {data_dir}")
    print("\n=== Next Steps ===")
    print("1. Edit .env and add your OPENROUTER_API_KEY")
    print("2. Ingest coaching documents: coach-agent ingest docs/method.md")
    print("3. Run: coach-agent serve (or coach-agent chat)")


if __name__ == "__main__":
    main()
