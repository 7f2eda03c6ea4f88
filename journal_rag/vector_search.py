"""Semantic nearest-neighbour search over the user's documents."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from .config import SearchConfig, get_search_config
from .errors import SearchBackendError
from .models import QueryPlan, SearchResult, SourceMethod, TimeRange
from .observability.metrics import record_search_results
from .store import StoreClient

logger = logging.getLogger(__name__)

MATCH_FUNCTION = "match_journal_entries"
MATCH_WITH_DATE_FUNCTION = "match_journal_entries_with_date"


class VectorSearch:
    """Nearest-neighbour lookup through the store's RPC functions.

    Never raises for backend failures: they are logged and an empty list is
    returned so orchestration can continue with partial results.
    """

    def __init__(self, store: StoreClient, config: Optional[SearchConfig] = None) -> None:
        self._store = store
        self._config = config or get_search_config()

    def threshold_for(self, plan: Optional[QueryPlan]) -> float:
        """Lower threshold for analytical plans to favour recall."""
        if plan is not None and plan.is_analytical:
            return self._config.comprehensive_threshold
        return self._config.default_threshold

    async def search(
        self,
        user_id: str,
        query_vector: Sequence[float],
        time_range: Optional[TimeRange] = None,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> List[SearchResult]:
        params = {
            "query_embedding": list(query_vector),
            "match_threshold": threshold if threshold is not None else self._config.default_threshold,
            "match_count": limit or self._config.vector_limit,
            "user_id_filter": user_id,
        }
        function = MATCH_FUNCTION
        if time_range is not None:
            function = MATCH_WITH_DATE_FUNCTION
            params.update(time_range.to_params())

        try:
            rows = await self._store.rpc(function, params)
            results = [
                SearchResult.from_row(row, SourceMethod.VECTOR, self._store.content_column)
                for row in rows
            ]
        except (SearchBackendError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Vector search failed for user {user_id}: {e}")
            return []

        logger.debug(f"Vector search ({function}) returned {len(results)} results")
        record_search_results("vector", len(results))
        return results

    async def search_for_plan(
        self,
        user_id: str,
        query_vector: Sequence[float],
        plan: QueryPlan,
        limit: Optional[int] = None,
    ) -> List[SearchResult]:
        time_range = plan.time_range if plan.requires_time_filter else None
        return await self.search(
            user_id,
            query_vector,
            time_range=time_range,
            limit=limit,
            threshold=self.threshold_for(plan),
        )
