from __future__ import annotations

import logging
from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings validated via Pydantic.

    Values are loaded from environment variables and/or a .env file.
    Components receive this object explicitly; nothing below the API and
    script entry points reads the environment on its own.
    """

    # API Keys
    fireflies_api_key: str = ""
    openai_api_key: str = ""
    anthropic_api_key: str = ""  # Optional, only /ask needs it
    webhook_secret: str = ""  # Empty disables signature verification

    # Transcript provider
    fireflies_api_url: str = "https://api.fireflies.ai/graphql"
    fireflies_page_size: int = 50

    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""
    transcripts_bucket: str = "meeting-transcripts"

    # Timeouts (seconds) for every external call
    http_timeout_seconds: float = 30.0
    db_timeout_seconds: int = 15

    # Retry policy for provider calls
    max_retries: int = 3
    retry_backoff_base: float = 2.0
    retry_max_wait: float = 30.0

    # Embeddings
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    embedding_batch_size: int = 100
    embedding_batch_max_tokens: int = 250_000
    embedding_requests_per_minute: int = 500

    # Chunking
    time_segment_seconds: int = 300
    time_segment_overlap_seconds: int = 60
    speaker_turn_min_words: int = 8
    speaker_turn_max_words: int = 500
    full_chunk_max_chars: int = 24_000

    # Sync / work queue
    sync_default_limit: int = 50
    claim_ttl_seconds: int = 600
    failure_backoff_seconds: int = 300

    # Retrieval
    vector_min_similarity: float = 0.35
    search_candidate_limit: int = 2000

    # App config
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    llm_model: str = "claude-sonnet-4-20250514"
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance.

    Gracefully handles missing .env files (e.g. in CI/testing) by falling
    back to environment variables and defaults.
    """
    try:
        return Settings()
    except Exception:
        # If .env is missing or unreadable, build settings from env vars only.
        return Settings(_env_file=None)  # type: ignore[call-arg]


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for API and script entry points."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # httpx logs every request at INFO; keep it quieter than our own pipeline logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
