"""Request pipeline: cache, classify, plan, retrieve, complete.

Usage:
    pipeline = RetrievalPipeline.from_config()
    async with pipeline:
        response = await pipeline.answer("user-1", "How did I feel last week?")
        print(response.text)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .caching import CacheStore, ResponseCache
from .classifier import Classification, MessageClassifier
from .completion import CompletionClient, PromptAssembler
from .config import PipelineConfig, RagConfig, get_config
from .dual_search import DualSearchOrchestrator
from .embeddings import EmbeddingGateway, OpenAIEmbeddingClient
from .errors import EmbeddingServiceError, InvalidInputError, PipelineError
from .models import Complexity, QueryPlan, SearchResult, TimeRange
from .observability.metrics import record_cache_event, track_latency, track_operation
from .observability.tracing import trace_operation
from .query_planner import QueryPlanner, analyze_complexity, max_entries, use_analytical_formatting
from .ranking import ResultRanker
from .resilience import RetryConfig
from .store import StoreClient
from .structured_search import StructuredSearch
from .sub_questions import SubQuestionContext, SubQuestionGenerator, SubQuestionProcessor
from .vector_search import VectorSearch

logger = logging.getLogger(__name__)


@dataclass
class PipelineResponse:
    text: str
    references: List[Dict[str, Any]] = field(default_factory=list)
    plan: Optional[QueryPlan] = None
    cached: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return "error" in self.metadata


class RetrievalPipeline:
    """Answers one user message per call.

    Only ``PipelineError`` payloads ever leave ``answer``: any failure is
    converted to the fixed apologetic text plus stage diagnostics.
    """

    def __init__(
        self,
        classifier: MessageClassifier,
        planner: QueryPlanner,
        embeddings: EmbeddingGateway,
        orchestrator: DualSearchOrchestrator,
        processor: SubQuestionProcessor,
        completion: CompletionClient,
        prompts: Optional[PromptAssembler] = None,
        cache: Optional[ResponseCache] = None,
        generator: Optional[SubQuestionGenerator] = None,
        config: Optional[PipelineConfig] = None,
    ) -> None:
        self._config = config or get_config().pipeline
        self._classifier = classifier
        self._planner = planner
        self._embeddings = embeddings
        self._orchestrator = orchestrator
        self._processor = processor
        self._completion = completion
        self._prompts = prompts or PromptAssembler()
        self._cache = cache
        self._generator = generator or SubQuestionGenerator(planner, self._config.max_sub_questions)
        self._closeables: List[Any] = []

    @classmethod
    def from_config(cls, config: Optional[RagConfig] = None) -> "RetrievalPipeline":
        """Wire the full pipeline from configuration."""
        cfg = config or get_config()

        store = StoreClient(config=cfg.store)
        embedding_client = OpenAIEmbeddingClient(config=cfg.embedding)
        completion = CompletionClient(config=cfg.completion)

        embeddings = EmbeddingGateway(
            embedding_client,
            cache=CacheStore(max_size=cfg.embedding.cache_size, default_ttl_seconds=cfg.embedding.cache_ttl_seconds),
            max_input_length=cfg.embedding.max_input_length,
        )
        vector = VectorSearch(store, cfg.search)
        structured = StructuredSearch(store, cfg.search)
        ranker = ResultRanker()
        planner = QueryPlanner()

        cache = None
        if cfg.cache.enabled:
            cache = ResponseCache(
                CacheStore(max_size=cfg.cache.max_size),
                base_ttl_seconds=cfg.cache.base_ttl_seconds,
                max_ttl_seconds=cfg.cache.max_ttl_seconds,
                key_token_limit=cfg.cache.key_token_limit,
                context_bucket=cfg.cache.context_bucket,
            )

        classifier = MessageClassifier(
            remote_url=cfg.pipeline.classifier_url or None,
            retry_config=RetryConfig(
                max_attempts=cfg.pipeline.classification_attempts,
                base_delay=cfg.pipeline.classification_base_delay,
            ),
        )

        pipeline = cls(
            classifier=classifier,
            planner=planner,
            embeddings=embeddings,
            orchestrator=DualSearchOrchestrator(
                vector,
                structured,
                ranker,
                recency_tolerance=cfg.search.recency_tolerance if cfg.search.recency_tiebreak else None,
            ),
            processor=SubQuestionProcessor(
                vector, structured, embeddings, batch_size=cfg.pipeline.sub_question_batch_size, ranker=ranker
            ),
            completion=completion,
            prompts=PromptAssembler(cfg.completion.performance_mode, cfg.completion.max_message_chars),
            cache=cache,
            config=cfg.pipeline,
        )
        pipeline._closeables = [store, embedding_client, completion]
        return pipeline

    async def __aenter__(self) -> "RetrievalPipeline":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        for closeable in self._closeables:
            await closeable.aclose()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    @trace_operation("pipeline_answer")
    async def answer(
        self,
        user_id: str,
        message: str,
        history: Sequence[Dict[str, Any]] = (),
        timezone: Optional[str] = None,
        time_range: Optional[TimeRange] = None,
    ) -> PipelineResponse:
        stage = "validation"
        try:
            with track_operation():
                if message is None or not message.strip():
                    raise InvalidInputError("Message is empty")
                history = tuple(history)
                tier = analyze_complexity(message, len(history)).tier

                stage = "cache_lookup"
                if self._cache is not None:
                    cached = self._cache.get(message, user_id, len(history), tier)
                    record_cache_event(cached is not None)
                    if cached is not None:
                        return PipelineResponse(cached=True, **cached)

                stage = "classification"
                with track_latency("classification"):
                    classification = await self._classifier.classify(message)

                if not classification.should_use_journal:
                    stage = "completion"
                    response = await self._answer_general(message, history, classification)
                    return response

                stage = "planning"
                plan, query_vector = await self._plan_and_embed(message, history, timezone, time_range)

                stage = "retrieval"
                evidence, sub_results, search_method = await self._retrieve(
                    user_id, message, history, plan, query_vector, timezone, time_range
                )

                stage = "completion"
                analytical = use_analytical_formatting(plan, message)
                messages = self._prompts.build(
                    message, evidence=evidence, sub_results=sub_results, history=history, analytical=analytical
                )
                with track_latency("completion"):
                    text = await self._completion.complete(messages)

                payload = {
                    "text": text,
                    "references": [r.to_reference() for r in evidence],
                    "plan": plan,
                    "metadata": {
                        "classification": classification.category.value,
                        "strategy": plan.strategy,
                        "search_method": search_method,
                        "evidence_count": len(evidence),
                        "sub_questions": len(sub_results),
                        "complexity_tier": tier.value,
                    },
                }

                stage = "cache_store"
                if self._cache is not None:
                    self._cache.set(message, user_id, len(history), tier, payload, analytical=plan.is_analytical)
                return PipelineResponse(**payload)
        except Exception as e:
            error = PipelineError(stage, e)
            logger.error(f"Pipeline failed for user {user_id} during {stage}: {type(e).__name__}: {e}")
            failure = error.to_payload()
            return PipelineResponse(text=failure["text"], metadata={"error": failure["diagnostics"]})

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _answer_general(
        self, message: str, history: Sequence[Dict[str, Any]], classification: Classification
    ) -> PipelineResponse:
        messages = self._prompts.build(message, history=history, use_journal=False)
        with track_latency("completion"):
            text = await self._completion.complete(messages)
        return PipelineResponse(
            text=text,
            metadata={
                "classification": classification.category.value,
                "classification_reasoning": classification.reasoning,
            },
        )

    async def _plan_and_embed(
        self,
        message: str,
        history: Sequence[Dict[str, Any]],
        timezone: Optional[str],
        time_range: Optional[TimeRange],
    ):
        """Plan, then embed the query unless sub-questions will embed their own text."""
        with track_latency("planning"):
            plan = self._planner.plan(
                message, timezone=timezone, time_range=time_range, history_length=len(history)
            )
        if plan.complexity is Complexity.MULTI_PART:
            return plan, None
        return plan, await self._embed_or_none(message)

    async def _embed_or_none(self, message: str) -> Optional[List[float]]:
        try:
            with track_latency("embedding"):
                return await self._embeddings.embed(message)
        except EmbeddingServiceError as e:
            logger.warning(f"Query embedding failed, continuing with structured search only: {e}")
            return None

    async def _retrieve(
        self,
        user_id: str,
        message: str,
        history: Sequence[Dict[str, Any]],
        plan: QueryPlan,
        query_vector: Optional[List[float]],
        timezone: Optional[str],
        time_range: Optional[TimeRange],
    ):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.request_deadline_seconds
        budget = max_entries(plan)

        if plan.complexity is Complexity.MULTI_PART:
            sub_questions = self._generator.generate(message, timezone=timezone, time_range=time_range)
            date_filter = plan.time_range if plan.requires_time_filter else None
            run = await self._processor.process_batches(
                sub_questions,
                SubQuestionContext(user_id, message, tuple(history)),
                date_filter=date_filter,
                strict_date_enforcement=self._config.strict_date_enforcement,
                deadline=deadline,
            )
            if run.partial:
                logger.warning(f"Deadline reached with {run.timed_out}/{len(sub_questions)} sub-questions unfinished")

            evidence: List[SearchResult] = []
            seen = set()
            for sub_result in run.results:
                for item in sub_result.results:
                    if item.id not in seen:
                        seen.add(item.id)
                        evidence.append(item)
            return evidence[:budget], run.results, "sub_questions_partial" if run.partial else "sub_questions"

        result = await self._orchestrator.execute(user_id, query_vector, plan, message, deadline=deadline)
        return result.combined[:budget], [], result.search_method

    def get_metrics(self) -> Dict[str, Any]:
        metrics: Dict[str, Any] = {"embeddings": self._embeddings.get_metrics()}
        if self._cache is not None:
            metrics["response_cache"] = self._cache.get_metrics()
        return metrics
