"""Centralized journal-rag configuration.

All embedding, store, search, cache and pipeline settings in one place.
Override via environment variables or a .env file at the repository root.

=== CONFIGURATION HIERARCHY ===

1. Embedding Service (JOURNAL_RAG_EMBEDDING_*)
   - JOURNAL_RAG_EMBEDDING_URL: OpenAI-compatible base URL
   - JOURNAL_RAG_EMBEDDING_MODEL / _DIM / _MAX_LENGTH / _CACHE_SIZE

2. Structured Store (JOURNAL_RAG_STORE_*)
   - JOURNAL_RAG_STORE_URL: PostgREST base URL (e.g. https://<project>.supabase.co/rest/v1)
   - JOURNAL_RAG_STORE_KEY: Service key sent as apikey + bearer token
   - JOURNAL_RAG_ENTRIES_TABLE: Table holding the user documents

3. Search Tuning (JOURNAL_RAG_SEARCH_*)
   - Similarity thresholds, per-backend limits, recent-documents fallback size
   - Optional recency tiebreak for near-equal scores

4. Caching (JOURNAL_RAG_CACHE_*)
   - Base/max response TTL, capacity, embedding cache size

5. Pipeline (JOURNAL_RAG_PIPELINE_*)
   - Sub-question batch size, request deadline, classification retries

6. Completion Service (JOURNAL_RAG_COMPLETION_*)
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent / ".env"
if _env_path.exists():
    load_dotenv(_env_path)


def _get_env(key: str, default: str) -> str:
    """Get environment variable with default."""
    return os.getenv(key, default)


def _get_env_int(key: str, default: int) -> int:
    """Get integer environment variable with default."""
    return int(os.getenv(key, str(default)))


def _get_env_float(key: str, default: float) -> float:
    """Get float environment variable with default."""
    return float(os.getenv(key, str(default)))


def _get_env_bool(key: str, default: bool) -> bool:
    """Get boolean environment variable with default."""
    val = os.getenv(key, str(default)).lower()
    return val in ("true", "1", "yes", "on")


# ============================================================================
# EXTERNAL SERVICES
# ============================================================================

@dataclass
class EmbeddingConfig:
    """Embedding service configuration.

    Environment Variables:
        OPENAI_API_KEY: API key for the embedding endpoint
        JOURNAL_RAG_EMBEDDING_URL: Base URL (default: https://api.openai.com/v1)
        JOURNAL_RAG_EMBEDDING_MODEL: Model name (default: text-embedding-3-small)
        JOURNAL_RAG_EMBEDDING_DIM: Embedding dimension (default: 1536)
    """

    api_key: str = field(default_factory=lambda: _get_env("OPENAI_API_KEY", ""))
    url: str = field(default_factory=lambda: _get_env("JOURNAL_RAG_EMBEDDING_URL", "https://api.openai.com/v1"))
    model: str = field(default_factory=lambda: _get_env("JOURNAL_RAG_EMBEDDING_MODEL", "text-embedding-3-small"))
    dimension: int = field(default_factory=lambda: _get_env_int("JOURNAL_RAG_EMBEDDING_DIM", 1536))

    # Max input length (chars), longer text is truncated before submission
    max_input_length: int = field(default_factory=lambda: _get_env_int("JOURNAL_RAG_EMBEDDING_MAX_LENGTH", 8000))

    # Bounded embedding cache (LRU)
    cache_size: int = field(default_factory=lambda: _get_env_int("JOURNAL_RAG_EMBEDDING_CACHE_SIZE", 1000))
    cache_ttl_seconds: float = field(default_factory=lambda: _get_env_float("JOURNAL_RAG_EMBEDDING_CACHE_TTL", 900.0))

    timeout: float = field(default_factory=lambda: _get_env_float("JOURNAL_RAG_EMBEDDING_TIMEOUT", 30.0))


@dataclass
class StoreConfig:
    """Relational store (PostgREST) configuration.

    The vector index is reached through the same store's RPC interface.
    """

    url: str = field(default_factory=lambda: _get_env("JOURNAL_RAG_STORE_URL", "http://localhost:54321/rest/v1"))
    api_key: str = field(default_factory=lambda: _get_env("JOURNAL_RAG_STORE_KEY", ""))
    entries_table: str = field(default_factory=lambda: _get_env("JOURNAL_RAG_ENTRIES_TABLE", "Journal Entries"))
    content_column: str = field(default_factory=lambda: _get_env("JOURNAL_RAG_CONTENT_COLUMN", "transcription text"))
    timeout: float = field(default_factory=lambda: _get_env_float("JOURNAL_RAG_STORE_TIMEOUT", 15.0))


@dataclass
class CompletionConfig:
    """Completion service configuration (consumed at the boundary only)."""

    api_key: str = field(default_factory=lambda: _get_env("OPENAI_API_KEY", ""))
    url: str = field(default_factory=lambda: _get_env("JOURNAL_RAG_COMPLETION_URL", "https://api.openai.com/v1"))
    model: str = field(default_factory=lambda: _get_env("JOURNAL_RAG_COMPLETION_MODEL", "gpt-4.1-mini"))
    max_tokens: int = field(default_factory=lambda: _get_env_int("JOURNAL_RAG_COMPLETION_MAX_TOKENS", 800))
    temperature: float = field(default_factory=lambda: _get_env_float("JOURNAL_RAG_COMPLETION_TEMPERATURE", 0.7))
    timeout: float = field(default_factory=lambda: _get_env_float("JOURNAL_RAG_COMPLETION_TIMEOUT", 60.0))

    # Conversation history kept per performance mode ("fast", "balanced", "quality")
    performance_mode: str = field(default_factory=lambda: _get_env("JOURNAL_RAG_PERFORMANCE_MODE", "balanced"))
    max_message_chars: int = field(default_factory=lambda: _get_env_int("JOURNAL_RAG_HISTORY_MESSAGE_CHARS", 1000))


# ============================================================================
# CORE TUNING
# ============================================================================

@dataclass
class SearchConfig:
    """Search backend tuning.

    Lower thresholds increase recall for comprehensive/analytical queries.
    """

    default_threshold: float = field(default_factory=lambda: _get_env_float("JOURNAL_RAG_SEARCH_THRESHOLD", 0.3))
    comprehensive_threshold: float = field(default_factory=lambda: _get_env_float("JOURNAL_RAG_SEARCH_COMPREHENSIVE_THRESHOLD", 0.1))

    # Structured variant thresholds: strict first, then the looser secondary match
    structured_threshold: float = field(default_factory=lambda: _get_env_float("JOURNAL_RAG_STRUCTURED_THRESHOLD", 0.3))
    structured_loose_threshold: float = field(default_factory=lambda: _get_env_float("JOURNAL_RAG_STRUCTURED_LOOSE_THRESHOLD", 0.15))

    vector_limit: int = field(default_factory=lambda: _get_env_int("JOURNAL_RAG_VECTOR_LIMIT", 15))
    structured_limit: int = field(default_factory=lambda: _get_env_int("JOURNAL_RAG_STRUCTURED_LIMIT", 10))
    recent_fallback_count: int = field(default_factory=lambda: _get_env_int("JOURNAL_RAG_RECENT_FALLBACK", 10))

    # When enabled, dual search results whose scores lie within the tolerance are ordered newest first
    recency_tiebreak: bool = field(default_factory=lambda: _get_env_bool("JOURNAL_RAG_RECENCY_TIEBREAK", False))
    recency_tolerance: float = field(default_factory=lambda: _get_env_float("JOURNAL_RAG_RECENCY_TOLERANCE", 0.1))


@dataclass
class CacheConfig:
    """Response and embedding cache configuration."""

    base_ttl_seconds: float = field(default_factory=lambda: _get_env_float("JOURNAL_RAG_CACHE_BASE_TTL", 300.0))
    max_ttl_seconds: float = field(default_factory=lambda: _get_env_float("JOURNAL_RAG_CACHE_MAX_TTL", 1800.0))
    max_size: int = field(default_factory=lambda: _get_env_int("JOURNAL_RAG_CACHE_MAX_SIZE", 500))
    key_token_limit: int = field(default_factory=lambda: _get_env_int("JOURNAL_RAG_CACHE_KEY_TOKENS", 10))
    context_bucket: int = field(default_factory=lambda: _get_env_int("JOURNAL_RAG_CACHE_CONTEXT_BUCKET", 5))
    enabled: bool = field(default_factory=lambda: _get_env_bool("JOURNAL_RAG_CACHE_ENABLED", True))


@dataclass
class PipelineConfig:
    """Request pipeline configuration."""

    sub_question_batch_size: int = field(default_factory=lambda: _get_env_int("JOURNAL_RAG_PIPELINE_BATCH_SIZE", 3))
    max_sub_questions: int = field(default_factory=lambda: _get_env_int("JOURNAL_RAG_PIPELINE_MAX_SUB_QUESTIONS", 5))

    # Per-request deadline; pending backend calls are cancelled when it expires
    request_deadline_seconds: float = field(default_factory=lambda: _get_env_float("JOURNAL_RAG_PIPELINE_DEADLINE", 20.0))

    # Only the classification step retries
    classification_attempts: int = field(default_factory=lambda: _get_env_int("JOURNAL_RAG_CLASSIFY_ATTEMPTS", 3))
    classification_base_delay: float = field(default_factory=lambda: _get_env_float("JOURNAL_RAG_CLASSIFY_BASE_DELAY", 1.0))
    classifier_url: str = field(default_factory=lambda: _get_env("JOURNAL_RAG_CLASSIFIER_URL", ""))

    strict_date_enforcement: bool = field(default_factory=lambda: _get_env_bool("JOURNAL_RAG_STRICT_DATES", True))


@dataclass
class RagConfig:
    """Master journal-rag configuration."""

    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    completion: CompletionConfig = field(default_factory=CompletionConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)


# Global singleton
_config: Optional[RagConfig] = None


def get_config() -> RagConfig:
    """Get the global configuration singleton."""
    global _config
    if _config is None:
        _config = RagConfig()
    return _config


def reset_config() -> None:
    """Reset configuration (for testing)."""
    global _config
    _config = None


# Convenience accessors
def get_embedding_config() -> EmbeddingConfig:
    """Get embedding service configuration."""
    return get_config().embedding


def get_store_config() -> StoreConfig:
    """Get structured store configuration."""
    return get_config().store


def get_search_config() -> SearchConfig:
    """Get search tuning configuration."""
    return get_config().search


def get_cache_config() -> CacheConfig:
    """Get cache configuration."""
    return get_config().cache


def get_pipeline_config() -> PipelineConfig:
    """Get pipeline configuration."""
    return get_config().pipeline
