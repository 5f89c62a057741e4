"""FastAPI application entry point."""
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic_settings import BaseSettings, SettingsConfigDict
from starlette.exceptions import HTTPException as StarletteHTTPException

from pdfqa.api.routes import chat, metrics, upload
from pdfqa.services.context_builder import ContextBudget, tiktoken_counter
from pdfqa.services.document_processor import DocumentProcessor
from pdfqa.services.document_upload_service import DocumentUploadService
from pdfqa.services.embedding_service import (
    DEFAULT_MODEL,
    EmbeddingClient,
    HuggingFaceInferenceBackend,
)
from pdfqa.services.llm_service import LLMService
from pdfqa.services.response_streamer import ResponseStreamer
from pdfqa.services.retrieval_service import RetrievalConfig, RetrievalService
from pdfqa.services.vector_store import VectorStore
from pdfqa.validators import ValidationLimits
from pdfqa.utils.logger import logger
from pdfqa.utils.metrics import metrics_response
from pdfqa.utils.tracer import initialize_tracing, shutdown_tracing


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        # Look for .env in the repository root
        env_file=os.path.join(os.path.dirname(__file__), "..", "..", ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    # Embedding service
    embedding_backend: str = "hosted"  # "hosted" (HF Inference) or "local" (sentence-transformers)
    hf_api_token: str = ""
    embedding_model: str = DEFAULT_MODEL
    embedding_base_url: str = "https://router.huggingface.co/hf-inference/models"
    embedding_http_timeout_seconds: float = 30.0
    embedding_device: str = "cpu"
    embedding_batch_size: int = 16
    embedding_concurrency: int = 3
    embedding_max_retries: int = 3
    embedding_retry_delay_ms: float = 400
    normalize_embeddings: bool = True
    embedding_dimension: int = 384
    embedding_timeout_ms: float = 5000

    # Chunk store (Qdrant: ":memory:", a URL or a local directory)
    qdrant_location: str = "./qdrant_db"
    qdrant_api_key: Optional[str] = None
    qdrant_collection: str = "pdf_chunks"
    qdrant_batch_size: int = 50

    # LLM provider (OpenAI-compatible)
    llm_api_key: str = ""
    llm_base_url: str = "https://openrouter.ai/api/v1"
    llm_model: str = "openrouter/free"
    llm_max_tokens: Optional[int] = None
    llm_timeout_seconds: float = 60.0

    # Document upload limits
    max_file_size_mb: int = 10
    min_pages: int = 1
    max_pages: int = 12
    min_extracted_chars: int = 50
    max_chunks: int = 2000

    # Chunking
    chunk_size: int = 500
    chunk_overlap: int = 200

    # Retrieval
    min_similarity: float = 0.35
    match_threshold: float = 0.25
    match_count: int = 8
    fallback_threshold: float = 0.10
    fallback_count: int = 20
    match_count_final: int = 12
    rpc_timeout_ms: float = 5000
    rpc_fallback_timeout_ms: float = 7000

    # Context budget (token limits apply only when set)
    max_context_chars: int = 14000
    per_chunk_chars: Optional[int] = 2000
    max_context_tokens: Optional[int] = None
    per_chunk_tokens: Optional[int] = None
    tiktoken_encoding: str = "cl100k_base"
    include_chunk_ids: bool = False

    # OpenTelemetry tracing configuration
    tracing_enabled: bool = False
    otlp_endpoint: str = ""  # Empty = console exporter

    def retrieval_config(self) -> RetrievalConfig:
        return RetrievalConfig(
            min_similarity=self.min_similarity,
            match_threshold=self.match_threshold,
            match_count=self.match_count,
            fallback_threshold=self.fallback_threshold,
            fallback_count=self.fallback_count,
            match_count_final=self.match_count_final,
            rpc_timeout_ms=self.rpc_timeout_ms,
            rpc_fallback_timeout_ms=self.rpc_fallback_timeout_ms,
        )

    def context_budget(self) -> ContextBudget:
        return ContextBudget(
            max_context_chars=self.max_context_chars,
            max_context_tokens=self.max_context_tokens,
            per_chunk_chars=self.per_chunk_chars,
            per_chunk_tokens=self.per_chunk_tokens,
            include_chunk_ids=self.include_chunk_ids,
        )

    @property
    def uses_token_budget(self) -> bool:
        return self.max_context_tokens is not None or self.per_chunk_tokens is not None


def build_embedding_backend(settings: Settings):
    """Create the feature-extraction backend selected by ``EMBEDDING_BACKEND``."""
    if settings.embedding_backend == "local":
        # Optional extra: sentence-transformers pulls in torch
        from pdfqa.services.local_embedding import SentenceTransformerBackend

        return SentenceTransformerBackend(
            model_name=settings.embedding_model, device=settings.embedding_device
        )
    if settings.embedding_backend != "hosted":
        raise ValueError(f"Unknown embedding backend: {settings.embedding_backend}")
    return HuggingFaceInferenceBackend(
        api_token=settings.hf_api_token,
        model=settings.embedding_model,
        base_url=settings.embedding_base_url,
        timeout_seconds=settings.embedding_http_timeout_seconds,
    )


# Global services (initialized in lifespan)
upload_service: DocumentUploadService = None
vector_store: VectorStore = None
retrieval_service: RetrievalService = None
response_streamer: ResponseStreamer = None
embedding_client: EmbeddingClient = None
llm_service: LLMService = None
settings: Settings = None
tracer_provider = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown."""
    global upload_service, vector_store, retrieval_service, response_streamer
    global embedding_client, llm_service, settings, tracer_provider

    # Startup
    logger.info("Starting PDF QA service")
    settings = Settings()

    # Initialize tracing before services
    tracer_provider = initialize_tracing(
        settings.tracing_enabled,
        otlp_endpoint=settings.otlp_endpoint or None,
    )

    vector_store = VectorStore.from_location(
        settings.qdrant_location,
        api_key=settings.qdrant_api_key,
        collection_name=settings.qdrant_collection,
        batch_size=settings.qdrant_batch_size,
    )

    try:
        embedding_client = EmbeddingClient(
            build_embedding_backend(settings),
            batch_size=settings.embedding_batch_size,
            concurrency=settings.embedding_concurrency,
            max_retries=settings.embedding_max_retries,
            retry_delay_ms=settings.embedding_retry_delay_ms,
            normalize=settings.normalize_embeddings,
            query_timeout_ms=settings.embedding_timeout_ms,
            expected_dimension=settings.embedding_dimension,
        )
    except ValueError as e:
        logger.error(f"Embedding client not configured: {str(e)}")
        embedding_client = None

    if embedding_client is not None:
        document_processor = DocumentProcessor(
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
        )
        upload_service = DocumentUploadService(
            document_processor=document_processor,
            embedding_client=embedding_client,
            vector_store=vector_store,
            limits=ValidationLimits.from_settings(settings),
        )
        retrieval_service = RetrievalService(
            embedding_client=embedding_client,
            vector_store=vector_store,
            config=settings.retrieval_config(),
        )

    try:
        llm_service = LLMService(
            api_key=settings.llm_api_key,
            base_url=settings.llm_base_url,
            model=settings.llm_model,
            max_tokens=settings.llm_max_tokens,
            timeout_seconds=settings.llm_timeout_seconds,
        )
    except ValueError as e:
        logger.error(f"LLM provider not configured: {str(e)}")
        llm_service = None

    if llm_service is not None:
        response_streamer = ResponseStreamer(
            llm_service=llm_service,
            budget=settings.context_budget(),
            token_counter=(
                tiktoken_counter(settings.tiktoken_encoding) if settings.uses_token_budget else None
            ),
        )

    logger.info(
        f"Services initialized (embedding backend: {settings.embedding_backend}, "
        f"chunk store: {settings.qdrant_location}, model: {settings.llm_model})"
    )

    yield

    # Shutdown
    logger.info("Shutting down PDF QA service")
    if embedding_client:
        await embedding_client.close()
    if llm_service:
        await llm_service.close()
    if vector_store:
        await vector_store.close()
    if tracer_provider:
        shutdown_tracing(tracer_provider)


# Create FastAPI app
app = FastAPI(
    title="PDF QA",
    description="Chat with an uploaded PDF through retrieval-augmented generation",
    version="1.0.0",
    lifespan=lifespan,
)


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    error = errors[0]
    if error.get("type") == "json_invalid":
        return "Invalid JSON body"
    msg = str(error.get("msg", "Invalid request"))
    # pydantic prefixes messages raised from validators
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    loc = [str(part) for part in error.get("loc", ()) if part != "body"]
    if error.get("type") == "missing" and loc:
        return f"Missing field: {'.'.join(loc)}"
    return msg


# Exception handler for request body validation errors
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report body validation failures as 400 ``{error}``."""
    message = _validation_message(exc)
    logger.info(f"Rejected request to {request.url.path}: {message}")
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": message})


# Exception handler for HTTPException raised by routes and dependency getters
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Report HTTP errors with the same ``{error}`` body as every other failure."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-Id"],
)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "PDF QA"}


# Prometheus metrics endpoint
@app.get("/metrics")
async def prometheus_metrics():
    """Prometheus metrics endpoint."""
    return metrics_response()


# Include routers
app.include_router(upload.router, prefix="/api", tags=["upload"])
app.include_router(chat.router, prefix="/api", tags=["chat"])
app.include_router(metrics.router, prefix="/api", tags=["metrics"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.api_host if settings else "0.0.0.0", port=settings.api_port if settings else 8000)
