"""
FastAPI application factory.

Manages the lifecycle of:
- Database connection
- Chat service (orchestrator and stores)
- Knowledge base ingestion
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Literal

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ..agent.multimodal import IncomingPart
from ..config import Settings, get_settings
from ..errors import ContextBuildError, ModelInvocationError
from ..runtime import CoachRuntime, create_runtime

logger = structlog.get_logger()

VERSION = "0.1.0"


class MessagePart(BaseModel):
    """An attachment of a chat message."""
    type: Literal["text", "image", "audio", "file"]
    text: str | None = None
    data: str | None = None
    url: str | None = None
    media_type: str | None = None
    filename: str | None = None


class ChatRequest(BaseModel):
    """Chat request."""
    user_id: str
    conversation_id: str | None = None
    message: str | None = None
    parts: list[MessagePart] = Field(default_factory=list)
    tier: str | None = None


class ConversationRequest(BaseModel):
    """New conversation request."""
    user_id: str
    first_message: str | None = None


class DocumentRequest(BaseModel):
    """Knowledge document upload."""
    title: str
    content: str
    source: str | None = None


def _runtime(request: Request) -> CoachRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return runtime


def create_app(settings: Settings | None = None, runtime: CoachRuntime | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    A prebuilt ``runtime`` skips database initialization.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        if runtime is not None:
            app.state.runtime = runtime
        else:
            app.state.runtime = await create_runtime(settings)
            logger.info("Database initialized", database_url=settings.database_url)

        yield

        await app.state.runtime.chat.drain()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title=settings.app_name,
        description="Coaching assistant response orchestration",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ------------------------------------------------------------------ #
    # Health
    # ------------------------------------------------------------------ #
    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        runtime = getattr(request.app.state, "runtime", None)
        return {
            "status": "healthy" if runtime is not None else "starting",
            "version": VERSION,
            "llm_configured": bool(
                settings.openrouter_api_key
                or settings.openai_api_key
                or settings.anthropic_api_key
            ),
            "knowledge_enabled": runtime is not None and runtime.knowledge_base is not None,
        }

    # ------------------------------------------------------------------ #
    # Conversations
    # ------------------------------------------------------------------ #
    @app.post("/conversations")
    async def create_conversation(body: ConversationRequest, request: Request):
        """Start a conversation."""
        runtime = _runtime(request)
        conversation_id = await runtime.chat.start_conversation(body.user_id, body.first_message)
        return {"conversation_id": conversation_id}

    @app.get("/conversations/{conversation_id}/messages")
    async def list_messages(
        conversation_id: str,
        user_id: str,
        request: Request,
        offset: int = 0,
        limit: int = 50,
    ):
        """One page of a conversation's history."""
        runtime = _runtime(request)
        messages = await runtime.chat.message_store.history(user_id, conversation_id, offset, limit)
        return {
            "messages": [
                {"role": m.role, "content": m.content, "timestamp": m.timestamp.isoformat()}
                for m in messages
            ]
        }

    @app.post("/chat")
    async def chat(body: ChatRequest, request: Request):
        """Stream the reply to a user message as plain text."""
        runtime = _runtime(request)
        if not (body.message and body.message.strip()) and not body.parts:
            raise HTTPException(status_code=400, detail="Empty message")

        conversation_id = body.conversation_id
        if conversation_id is None:
            conversation_id = await runtime.chat.start_conversation(body.user_id, body.message)

        parts = [IncomingPart(**p.model_dump()) for p in body.parts] or None
        stream = runtime.chat.stream_reply(
            body.user_id,
            conversation_id,
            text=body.message,
            parts=parts,
            tier=body.tier,
        )

        # Pull the first delta so preparation errors become HTTP errors
        try:
            first = await anext(stream)
        except StopAsyncIteration:
            first = ""
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except ContextBuildError as e:
            raise HTTPException(status_code=503, detail=str(e))
        except ModelInvocationError as e:
            raise HTTPException(status_code=502, detail=str(e))

        async def body_stream() -> AsyncGenerator[str, None]:
            try:
                if first:
                    yield first
                async for delta in stream:
                    yield delta
            except ModelInvocationError as e:
                logger.error("Stream aborted", conversation_id=conversation_id, error=str(e))
            finally:
                await stream.aclose()

        return StreamingResponse(
            body_stream(),
            media_type="text/plain; charset=utf-8",
            headers={"X-Conversation-Id": conversation_id},
        )

    # ------------------------------------------------------------------ #
    # Knowledge documents
    # ------------------------------------------------------------------ #
    def _knowledge(request: Request):
        runtime = _runtime(request)
        if runtime.knowledge_base is None:
            raise HTTPException(status_code=503, detail="Knowledge base disabled: no embedding provider")
        return runtime.knowledge_base

    @app.post("/documents")
    async def add_document(body: DocumentRequest, request: Request) -> dict[str, Any]:
        """Chunk, embed and store a knowledge document."""
        report = await _knowledge(request).add_document(body.title, body.content, source=body.source)
        return {
            "document_id": report.document_id,
            "title": report.title,
            "chunks": report.chunk_count,
            "embedded": report.embedded_count,
            "skipped": report.skipped_count,
        }

    @app.get("/documents")
    async def list_documents(request: Request):
        """List knowledge documents."""
        documents = await _knowledge(request).list_documents()
        return {
            "documents": [
                {
                    "id": d.id,
                    "title": d.title,
                    "source": d.source,
                    "chunks": d.chunk_count,
                    "created_at": d.created_at.isoformat() if d.created_at else None,
                }
                for d in documents
            ],
            "count": len(documents),
        }

    @app.delete("/documents/{document_id}")
    async def delete_document(document_id: str, request: Request):
        """Delete a knowledge document."""
        if not await _knowledge(request).delete_document(document_id):
            raise HTTPException(status_code=404, detail="Document not found")
        return {"status": "deleted", "document_id": document_id}

    return app
