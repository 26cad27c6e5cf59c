"""FastAPI application entry point."""
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from docuchat import __version__
from docuchat.api.routes import chat, collections, documents, metrics
from docuchat.config import Settings, get_settings
from docuchat.db.database import create_engine, create_session_factory, init_db
from docuchat.db.repository import Repository
from docuchat.exceptions import DocuchatError
from docuchat.services.chat_service import ChatService
from docuchat.services.chunking import TextChunker
from docuchat.services.document_processor import DocumentProcessor
from docuchat.services.embedding_service import EmbeddingService
from docuchat.services.job_queue import ProcessingQueue
from docuchat.services.llm_service import CompletionService
from docuchat.services.processing_service import DocumentProcessingService
from docuchat.services.rate_limiter import RouteRateLimiter
from docuchat.services.retrieval_cache import RetrievalCache
from docuchat.services.storage import LocalObjectStorage
from docuchat.utils.logger import logger
from docuchat.utils.tracer import initialize_tracing, shutdown_tracing


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings to use instead of the environment
        transport: Optional httpx transport for both providers (tests inject a mock)
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup/shutdown."""
        logger.info("Starting docuchat")

        # Initialize tracing before services
        tracer_provider = initialize_tracing(
            service_name="docuchat",
            service_version=__version__,
            otlp_endpoint=settings.otlp_endpoint or None,
            tracing_enabled=settings.tracing_enabled,
        )

        engine = create_engine(settings.database_url)
        await init_db(engine)
        repository = Repository(create_session_factory(engine))

        cache = RetrievalCache(
            max_entries=settings.cache_max_entries,
            default_ttl_seconds=settings.cache_ttl_seconds,
        )
        embedding_service = EmbeddingService(
            base_url=settings.provider_base_url,
            model=settings.embedding_model,
            api_key=settings.provider_api_key,
            batch_size=settings.embedding_batch_size,
            max_batch_tokens=settings.embedding_max_batch_tokens,
            timeout=settings.provider_timeout_seconds,
            transport=transport,
        )
        completion_service = CompletionService(
            base_url=settings.provider_base_url,
            model=settings.completion_model,
            api_key=settings.provider_api_key,
            timeout=settings.provider_timeout_seconds,
            max_stream_seconds=settings.stream_max_seconds,
            transport=transport,
        )
        storage = LocalObjectStorage(settings.storage_dir)
        document_processor = DocumentProcessor(settings.allowed_extensions)
        processing_service = DocumentProcessingService(
            repository=repository,
            storage=storage,
            processor=document_processor,
            chunker=TextChunker(settings.chunk_size, settings.chunk_overlap),
            embedding_service=embedding_service,
            cache=cache,
        )
        processing_queue = ProcessingQueue(processing_service, workers=settings.processing_workers)

        app.state.settings = settings
        app.state.repository = repository
        app.state.storage = storage
        app.state.document_processor = document_processor
        app.state.retrieval_cache = cache
        app.state.processing_service = processing_service
        app.state.processing_queue = processing_queue
        app.state.rate_limiter = RouteRateLimiter()
        app.state.chat_service = ChatService(
            repository=repository,
            cache=cache,
            embedding_service=embedding_service,
            completion_service=completion_service,
            top_k=settings.top_k_chunks,
            max_candidates=settings.max_candidates,
            max_history_messages=settings.max_history_messages,
            min_similarity_score=settings.min_similarity_score,
        )

        cache.start_sweeper(settings.cache_sweep_interval_seconds)
        processing_queue.start()
        await processing_queue.recover(repository)

        logger.info("All services initialized successfully")

        yield

        # Shutdown
        logger.info("Shutting down docuchat")
        await processing_queue.stop()
        await cache.stop_sweeper()
        await embedding_service.aclose()
        await completion_service.aclose()
        await engine.dispose()
        shutdown_tracing(tracer_provider)

    app = FastAPI(
        title="docuchat",
        description="Retrieval-augmented chat over document collections",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    @app.exception_handler(DocuchatError)
    async def docuchat_exception_handler(request: Request, exc: DocuchatError):
        content = {"error": exc.message}
        if exc.details is not None and settings.environment != "production":
            content["details"] = exc.details
        if exc.status_code >= 500:
            logger.error(f"Request failed: {exc.message}", extra={"route": request.url.path})
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Report malformed JSON separately from schema violations."""
        errors = exc.errors()
        for error in errors:
            if error.get("type") == "json_invalid":
                return JSONResponse(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    content={"error": "Invalid JSON in request body", "details": error.get("msg")},
                )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"error": "Invalid request", "details": jsonable_errors(errors)},
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Conversation-Id", "Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
    )

    app.include_router(metrics.router)
    app.include_router(collections.router, prefix="/api")
    app.include_router(documents.router, prefix="/api")
    app.include_router(chat.router, prefix="/api")

    return app


def jsonable_errors(errors):
    """Validation errors without the non-serialisable ``ctx``/``input`` values."""
    return [{"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")} for error in errors]


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
