"""Concurrent vector + structured search with deterministic merging."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Sequence

from .models import DualSearchResult, ExecutionMode, QueryPlan, SearchResult
from .observability.metrics import track_latency
from .observability.tracing import trace_operation
from .ranking import ResultRanker, merge_results
from .structured_search import StructuredSearch
from .vector_search import VectorSearch

logger = logging.getLogger(__name__)


class DualSearchOrchestrator:
    """Runs both backends per the plan's execution mode and merges the output.

    Parallel mode starts both searches at once and waits for both (or the
    deadline). Sequential mode runs vector search first and hands its hits to
    structured search as context. Whatever has arrived when the deadline
    passes is merged and ranked; outstanding calls are cancelled.
    """

    def __init__(
        self,
        vector_search: VectorSearch,
        structured_search: StructuredSearch,
        ranker: Optional[ResultRanker] = None,
        recency_tolerance: Optional[float] = None,
    ) -> None:
        self._vector = vector_search
        self._structured = structured_search
        self._ranker = ranker or ResultRanker()
        self._recency_tolerance = recency_tolerance

    @trace_operation("dual_search")
    async def execute(
        self,
        user_id: str,
        query_vector: Optional[Sequence[float]],
        plan: QueryPlan,
        raw_query: str,
        deadline: Optional[float] = None,
    ) -> DualSearchResult:
        """Search both backends.

        Args:
            user_id: Owner whose documents are searched
            query_vector: Query embedding; None skips the vector branch
            plan: Plan for this request
            raw_query: Original message text (keywords for hybrid search)
            deadline: Absolute event-loop time after which pending calls are cancelled
        """
        with track_latency("dual_search"):
            if plan.execution_mode is ExecutionMode.PARALLEL:
                result = await self._execute_parallel(user_id, query_vector, plan, raw_query, deadline)
            else:
                result = await self._execute_sequential(user_id, query_vector, plan, raw_query, deadline)

        logger.info(
            f"Dual search ({result.search_method}): {len(result.vector_results)} vector + "
            f"{len(result.structured_results)} structured = {len(result.combined)} combined"
        )
        return result

    async def _vector_branch(
        self, user_id: str, query_vector: Optional[Sequence[float]], plan: QueryPlan
    ) -> List[SearchResult]:
        if query_vector is None:
            logger.warning("No query vector available, skipping vector search")
            return []
        return await self._vector.search_for_plan(user_id, query_vector, plan)

    async def _execute_parallel(
        self,
        user_id: str,
        query_vector: Optional[Sequence[float]],
        plan: QueryPlan,
        raw_query: str,
        deadline: Optional[float],
    ) -> DualSearchResult:
        vector_task = asyncio.ensure_future(self._vector_branch(user_id, query_vector, plan))
        structured_task = asyncio.ensure_future(self._structured.search(user_id, plan, raw_query))

        done, pending = await asyncio.wait(
            {vector_task, structured_task}, timeout=_remaining(deadline)
        )
        for task in pending:
            task.cancel()
        if pending:
            # Let cancellations settle before returning
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"Deadline reached with {len(pending)} search branch(es) outstanding")

        vector_results = _task_results(vector_task, done, "vector")
        structured_results = _task_results(structured_task, done, "structured")
        return self._finish(vector_results, structured_results, "dual_parallel", bool(pending))

    async def _execute_sequential(
        self,
        user_id: str,
        query_vector: Optional[Sequence[float]],
        plan: QueryPlan,
        raw_query: str,
        deadline: Optional[float],
    ) -> DualSearchResult:
        vector_results: List[SearchResult] = []
        structured_results: List[SearchResult] = []
        timed_out = False

        try:
            vector_results = await asyncio.wait_for(
                self._vector_branch(user_id, query_vector, plan), timeout=_remaining(deadline)
            )
            structured_results = await asyncio.wait_for(
                self._structured.search(user_id, plan, raw_query, context=vector_results),
                timeout=_remaining(deadline),
            )
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning("Deadline reached during sequential search, using partial results")

        return self._finish(vector_results, structured_results, "dual_sequential", timed_out)

    def _finish(
        self,
        vector_results: List[SearchResult],
        structured_results: List[SearchResult],
        method: str,
        timed_out: bool,
    ) -> DualSearchResult:
        merged = merge_results(vector_results, structured_results)
        if self._recency_tolerance is None:
            combined = self._ranker.rank(merged)
        else:
            combined = self._ranker.rank_with_recency(merged, self._recency_tolerance)
        return DualSearchResult(
            vector_results=vector_results,
            structured_results=structured_results,
            combined=combined,
            search_method=f"{method}_partial" if timed_out else method,
            timed_out=timed_out,
        )


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return max(0.0, deadline - asyncio.get_running_loop().time())


def _task_results(task: asyncio.Future, done: set, name: str) -> List[SearchResult]:
    if task not in done or task.cancelled():
        return []
    error = task.exception()
    if error is not None:
        logger.error(f"{name} search branch failed: {error}")
        return []
    return task.result()
