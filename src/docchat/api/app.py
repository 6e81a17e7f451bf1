"""FastAPI application exposing the DocChat answer endpoints."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import AsyncIterator, Sequence, Type, TypeVar
from uuid import uuid4

import chromadb
from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ValidationError
from starlette.background import BackgroundTask

from docchat.access import (
    AccessGate,
    JWTIdentityResolver,
    RateLimiter,
    resolve_client_address,
    validate_user_message,
)
from docchat.api.schemas import ChatRequest, ErrorResponse, MessageListResponse, SharedChatRequest, StoredMessageModel
from docchat.config import Settings, get_settings
from docchat.embeddings import (
    ChromaChunkStore,
    ChunkStore,
    EmbeddingClient,
    EmbeddingConfig,
    HuggingFaceEmbeddingBackend,
    InMemoryChunkStore,
)
from docchat.errors import DocChatError, InputError
from docchat.metrics.observability import bind_correlation_id, clear_correlation_id, configure_logging, get_logger
from docchat.models import ChatMessage, Done, SourcesResolved, StreamError, StreamEvent, TextDelta
from docchat.policy import ChatPolicies, build_policies
from docchat.retrieval import ChunkRetriever
from docchat.services import (
    ChatService,
    ExchangePersister,
    GenerationBackend,
    GenerationConfig,
    PreparedChat,
    QwenGenerator,
    TemplateGenerator,
)
from docchat.storage import (
    CollectionStore,
    Database,
    InMemoryCollectionStore,
    InMemoryMessageStore,
    InMemoryShareTokenStore,
    MessageStore,
    ShareTokenStore,
    SQLiteCollectionStore,
    SQLiteMessageStore,
    SQLiteShareTokenStore,
)

ModelT = TypeVar("ModelT", bound=BaseModel)

STREAM_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


@dataclass(frozen=True)
class AppDependencies:
    gate: AccessGate
    chat_service: ChatService
    chunk_store: ChunkStore
    collections: CollectionStore
    share_tokens: ShareTokenStore
    messages: MessageStore
    rate_limiter: RateLimiter
    policies: ChatPolicies


def _build_chunk_store(settings: Settings) -> ChunkStore:
    if not settings.use_chroma:
        return InMemoryChunkStore()
    chroma_client = None
    if settings.chroma_host:
        chroma_client = chromadb.HttpClient(
            host=settings.chroma_host,
            port=settings.chroma_port or 8000,
            ssl=settings.chroma_ssl,
        )
    return ChromaChunkStore(
        collection_name=settings.chroma_collection,
        client=chroma_client,
        persist_directory=None if chroma_client else settings.chroma_persist_dir,
    )


def build_dependencies(
    settings: Settings,
    *,
    chunk_store: ChunkStore | None = None,
    collections: CollectionStore | None = None,
    share_tokens: ShareTokenStore | None = None,
    messages: MessageStore | None = None,
    rate_limiter: RateLimiter | None = None,
    embedding_client: EmbeddingClient | None = None,
    generator: GenerationBackend | None = None,
) -> AppDependencies:
    if collections is None or share_tokens is None or messages is None:
        if settings.is_test:
            collections = collections or InMemoryCollectionStore()
            share_tokens = share_tokens or InMemoryShareTokenStore()
            messages = messages or InMemoryMessageStore()
        else:
            database = Database(settings.database_path)
            collections = collections or SQLiteCollectionStore(database)
            share_tokens = share_tokens or SQLiteShareTokenStore(database)
            messages = messages or SQLiteMessageStore(database)
    chunk_store = chunk_store or _build_chunk_store(settings)
    rate_limiter = rate_limiter or RateLimiter(
        max_entries=settings.rate_limit_max_entries,
        evict_fraction=settings.rate_limit_evict_fraction,
    )
    policies = build_policies(settings)
    gate = AccessGate(
        rate_limiter=rate_limiter,
        identity=JWTIdentityResolver(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            algorithms=settings.jwt_algorithms,
        ),
        collections=collections,
        share_tokens=share_tokens,
        share_token_length=settings.share_token_length_band,
    )
    embedding_client = embedding_client or EmbeddingClient(
        HuggingFaceEmbeddingBackend(
            EmbeddingConfig(
                model=settings.embedding_model,
                dim=settings.embedding_dim,
                use_model=settings.use_model_embeddings,
                normalize=True,
            ),
        ),
        dim=settings.embedding_dim,
        max_retries=settings.embedding_max_retries,
        retry_base_seconds=settings.embedding_retry_base_seconds,
    )
    generator = generator or QwenGenerator(
        GenerationConfig(
            model=settings.generator_model,
            max_new_tokens=settings.generator_max_new_tokens,
            temperature=settings.generator_temperature,
            use_model=settings.use_model_generator,
        ),
        fallback=TemplateGenerator(),
    )
    chat_service = ChatService(
        embedder=embedding_client,
        retriever=ChunkRetriever(chunk_store),
        persister=ExchangePersister(messages),
        generator=generator,
        timeout_seconds=settings.request_timeout_seconds,
        max_history_messages=settings.max_history_messages,
    )
    return AppDependencies(
        gate=gate,
        chat_service=chat_service,
        chunk_store=chunk_store,
        collections=collections,
        share_tokens=share_tokens,
        messages=messages,
        rate_limiter=rate_limiter,
        policies=policies,
    )


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    deps = dependencies or build_dependencies(settings)

    configure_logging()
    logger = get_logger("api")
    app = FastAPI(title="DocChat API", version="0.1.0")
    app.state.dependencies = deps

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_allow_origins),
            allow_credentials=settings.cors_allow_credentials,
            allow_methods=list(settings.cors_allow_methods),
            allow_headers=list(settings.cors_allow_headers),
        )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    def _error_response(request: Request, status_code: int, message: str, headers=None) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        body = ErrorResponse(error=message, correlation_id=correlation_id)
        return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)

    @app.exception_handler(DocChatError)
    async def handle_docchat_error(request: Request, exc: DocChatError) -> JSONResponse:
        logger.info("request.rejected", status_code=exc.status_code, error=type(exc).__name__, path=request.url.path)
        return _error_response(request, exc.status_code, exc.message, exc.headers)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error_response(request, status.HTTP_400_BAD_REQUEST, "Invalid request")

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc), error=type(exc).__name__)
        return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error")

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    @app.post("/chat")
    async def owner_chat(request: Request, dep: AppDependencies = Depends(get_dependencies)) -> Response:
        user_id = dep.gate.authenticate(request.headers.get("Authorization"))
        dep.gate.enforce(dep.policies.owner.rate_limit, user_id)
        payload = await _parse_body(request, ChatRequest)
        messages = _validated_messages(payload.messages, settings.max_message_chars)
        grant = dep.gate.authorize_owner(user_id, payload.collection_id, dep.policies.owner)
        prepared = await dep.chat_service.prepare(grant, messages)
        return _stream_response(prepared)

    @app.post("/shared/{token}/chat")
    async def shared_chat(token: str, request: Request, dep: AppDependencies = Depends(get_dependencies)) -> Response:
        client_address = resolve_client_address(
            request.headers.get("X-Forwarded-For"),
            request.client.host if request.client else None,
            trust_forwarded_for=settings.trust_forwarded_for,
        )
        grant = dep.gate.authorize_share(token, client_address, dep.policies.shared)
        payload = await _parse_body(request, SharedChatRequest)
        messages = _validated_messages(payload.messages, settings.max_message_chars)
        prepared = await dep.chat_service.prepare(grant, messages)
        return _stream_response(prepared)

    @app.get("/messages", response_model=MessageListResponse)
    async def list_messages(
        request: Request,
        collection_id: str | None = Query(default=None, alias="collectionId"),
        dep: AppDependencies = Depends(get_dependencies),
    ) -> MessageListResponse:
        user_id = dep.gate.authenticate(request.headers.get("Authorization"))
        dep.gate.enforce(dep.policies.messages_rate_limit, user_id, message="Rate limit exceeded")
        grant = dep.gate.authorize_owner(user_id, collection_id, dep.policies.owner, require_ready=False)
        stored = await asyncio.to_thread(
            dep.messages.list_for_collection, grant.collection_id, settings.message_history_limit
        )
        return MessageListResponse(messages=[StoredMessageModel.from_domain(m) for m in stored])

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        from docchat import __version__

        return {"status": "ok", "version": __version__, "environment": settings.environment}

    @app.head("/healthz")
    async def healthcheck_head() -> Response:
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/healthz/ready")
    async def readiness(dep: AppDependencies = Depends(get_dependencies)) -> JSONResponse:
        try:
            await asyncio.to_thread(dep.chunk_store.count)
        except Exception as exc:
            logger.error("readiness.failed", detail=str(exc))
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "error"},
            )
        return JSONResponse(content={"status": "ready"})

    return app


async def _parse_body(request: Request, model: Type[ModelT]) -> ModelT:
    try:
        data = await request.json()
    except ValueError as exc:
        raise InputError("Invalid request body") from exc
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        if isinstance(data, dict) and not data.get("messages"):
            raise InputError("No messages provided") from exc
        raise InputError("Invalid request body") from exc


def _validated_messages(messages: Sequence, max_chars: int) -> list[ChatMessage]:
    domain = [message.to_domain() for message in messages]
    last = domain[-1]
    if last.role != "user":
        raise InputError("Last message must be from user")
    problem = validate_user_message(last.content, max_chars=max_chars)
    if problem:
        raise InputError(problem)
    return domain


def encode_event(event: StreamEvent) -> str:
    if isinstance(event, SourcesResolved):
        name, data = "sources", {"sources": [source.to_dict() for source in event.sources]}
    elif isinstance(event, TextDelta):
        name, data = "text", {"delta": event.text}
    elif isinstance(event, Done):
        name, data = "done", {"text": event.text}
    elif isinstance(event, StreamError):
        name, data = "error", {"kind": event.kind}
    else:  # pragma: no cover - exhaustive over StreamEvent
        raise TypeError(f"Unknown stream event {event!r}")
    return f"event: {name}\ndata: {json.dumps(data)}\n\n"


def _stream_response(prepared: PreparedChat) -> StreamingResponse:
    async def iter_sse() -> AsyncIterator[str]:
        async for event in prepared.stream.events():
            yield encode_event(event)

    return StreamingResponse(
        iter_sse(),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
        background=BackgroundTask(prepared.finalize),
    )
