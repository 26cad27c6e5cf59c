"""Application settings."""
import os
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    environment: str = "development"
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: List[str] = ["*"]

    database_url: str = "sqlite+aiosqlite:///./docuchat.db"
    storage_dir: str = "./uploads"  # Local object storage root

    # Embedding and completion providers (OpenAI-compatible HTTP APIs)
    provider_api_key: str = ""  # Fallback when a request carries no credential
    provider_base_url: str = "https://api.mistral.ai/v1"
    embedding_model: str = "mistral-embed"
    completion_model: str = "mistral-large-latest"
    embedding_batch_size: int = 16
    embedding_max_batch_tokens: int = 8000
    provider_timeout_seconds: float = 60.0
    stream_max_seconds: float = 300.0  # Upper bound on one streamed answer

    # Document upload limits
    max_file_size_mb: int = 50
    allowed_extensions: List[str] = ["pdf", "txt", "md", "docx"]

    # Document chunking configuration (characters)
    chunk_size: int = 2048
    chunk_overlap: int = 200

    # Retrieval
    top_k_chunks: int = 5
    max_candidates: int = 500
    min_similarity_score: float = -1.0  # Cosine floor; -1.0 keeps every candidate
    max_history_messages: int = 10

    # Retrieval cache
    cache_ttl_seconds: int = 300
    cache_max_entries: int = 1000
    cache_sweep_interval_seconds: float = 60.0

    # Rate limits (requests per window, per caller and route)
    rate_limit_window_seconds: int = 60
    rate_limit_chat: int = 20
    rate_limit_upload: int = 10
    rate_limit_processing: int = 10

    # Detached document processing
    processing_workers: int = 2

    # OpenTelemetry tracing configuration
    tracing_enabled: bool = False
    otlp_endpoint: str = ""  # OTLP endpoint URL (empty = use console exporter)

    class Config:
        env_file = os.path.join(os.path.dirname(__file__), "..", "..", ".env")
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


@lru_cache()
def get_settings() -> Settings:
    return Settings()
