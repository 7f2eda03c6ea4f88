"""Result merging and ranking."""

from __future__ import annotations

import functools
from datetime import datetime, timezone
from typing import Iterable, List, Sequence

from .models import SearchResult, SourceMethod

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def merge_results(
    vector_results: Iterable[SearchResult],
    structured_results: Iterable[SearchResult],
) -> List[SearchResult]:
    """Vector hits first, then structured hits with unseen ids.

    A document found by both backends keeps its vector score and tag.
    """
    seen = set()
    merged: List[SearchResult] = []
    for result in vector_results:
        if result.id not in seen:
            seen.add(result.id)
            merged.append(result.with_source(SourceMethod.VECTOR))
    for result in structured_results:
        if result.id not in seen:
            seen.add(result.id)
            merged.append(result.with_source(SourceMethod.STRUCTURED))
    return merged


class ResultRanker:
    """Orders merged results by score without ever dropping any."""

    def rank(self, results: Sequence[SearchResult]) -> List[SearchResult]:
        """Descending by score, then match strength, then 0.5.

        ``sorted`` is stable, so equal scores keep merge order (vector first).
        """
        return sorted(results, key=lambda r: r.effective_score, reverse=True)

    def rank_with_recency(self, results: Sequence[SearchResult], tolerance: float = 0.1) -> List[SearchResult]:
        """Like ``rank`` but scores within ``tolerance`` are ordered newest first."""

        def compare(a: SearchResult, b: SearchResult) -> int:
            diff = b.effective_score - a.effective_score
            if abs(diff) > tolerance:
                return 1 if diff > 0 else -1
            a_time = a.created_at or _EPOCH
            b_time = b.created_at or _EPOCH
            if a_time == b_time:
                return 0
            return 1 if b_time > a_time else -1

        return sorted(results, key=functools.cmp_to_key(compare))
