"""Retrieval layer for a journaling assistant.

Plans a query, embeds it, searches the user's journal semantically and by
structured attributes, merges and ranks the evidence, and hands it to a
completion service.
"""

from .caching import CacheStore, ResponseCache
from .classifier import Classification, MessageCategory, MessageClassifier, classify_message
from .completion import CompletionClient, PromptAssembler
from .config import RagConfig, get_config, reset_config
from .dual_search import DualSearchOrchestrator
from .embeddings import EmbeddingGateway, OpenAIEmbeddingClient
from .errors import (
    APOLOGETIC_MESSAGE,
    ClassificationError,
    CompletionServiceError,
    EmbeddingServiceError,
    InvalidInputError,
    NoDataInRangeError,
    PipelineError,
    RagError,
    SearchBackendError,
)
from .models import (
    Complexity,
    ComplexityTier,
    DualSearchResult,
    ExecutionMode,
    QueryPlan,
    ResponseType,
    SearchResult,
    SourceMethod,
    SubQuestion,
    SubQuestionResult,
    TimeRange,
)
from .pipeline import PipelineResponse, RetrievalPipeline
from .query_planner import QueryPlanner, analyze_complexity, max_entries, use_analytical_formatting
from .ranking import ResultRanker, merge_results
from .resilience import RetryConfig, with_async_retry
from .store import StoreClient
from .structured_search import StructuredSearch
from .sub_questions import (
    SubQuestionContext,
    SubQuestionGenerator,
    SubQuestionProcessor,
    detect_emotional_query,
)
from .vector_search import VectorSearch

__version__ = "0.1.0"

__all__ = [
    "APOLOGETIC_MESSAGE",
    "CacheStore",
    "Classification",
    "ClassificationError",
    "CompletionClient",
    "CompletionServiceError",
    "Complexity",
    "ComplexityTier",
    "DualSearchOrchestrator",
    "DualSearchResult",
    "EmbeddingGateway",
    "EmbeddingServiceError",
    "ExecutionMode",
    "InvalidInputError",
    "MessageCategory",
    "MessageClassifier",
    "NoDataInRangeError",
    "OpenAIEmbeddingClient",
    "PipelineError",
    "PipelineResponse",
    "PromptAssembler",
    "QueryPlan",
    "QueryPlanner",
    "RagConfig",
    "RagError",
    "ResponseCache",
    "ResponseType",
    "ResultRanker",
    "RetrievalPipeline",
    "RetryConfig",
    "SearchBackendError",
    "SearchResult",
    "SourceMethod",
    "StoreClient",
    "StructuredSearch",
    "SubQuestion",
    "SubQuestionContext",
    "SubQuestionGenerator",
    "SubQuestionProcessor",
    "SubQuestionResult",
    "TimeRange",
    "VectorSearch",
    "analyze_complexity",
    "classify_message",
    "detect_emotional_query",
    "get_config",
    "max_entries",
    "merge_results",
    "reset_config",
    "use_analytical_formatting",
    "with_async_retry",
]
