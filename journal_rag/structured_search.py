"""Attribute-scoped retrieval: theme, entity, emotion and joint lookups.

Every variant walks the same fallback chain:

1. strict   - RPC match at the configured threshold
2. loose    - RPC match at the lower threshold, then keyword ILIKE on content
3. recent   - the user's most recent documents

so a user with at least one document always gets something back. Backend
errors at any level are logged and treated as an empty level.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .config import SearchConfig, get_search_config
from .errors import SearchBackendError
from .models import (
    QueryPlan,
    SearchResult,
    SourceMethod,
    StructuredStrategy,
    TimeRange,
)
from .observability.metrics import record_fallback, record_search_results
from .store import Filter, StoreClient, quote_column

logger = logging.getLogger(__name__)

THEME_FUNCTION = "match_journal_entries_by_theme"
ENTITY_FUNCTION = "match_journal_entries_by_entities"
EMOTION_FUNCTION = "match_journal_entries_by_emotion"
ENTITY_EMOTION_FUNCTION = "match_journal_entries_by_entity_emotion"
TOP_EMOTIONS_FUNCTION = "get_top_emotions_with_entries"

MAX_THEMES = 3
MAX_ENTITIES = 3
MAX_EMOTIONS = 2
STRICT_EMOTION_SCORE = 0.3
LOOSE_EMOTION_SCORE = 0.1

STOPWORDS = frozenset(
    """
    a about after again all am an and any are as at be been before being but by can could
    did do does doing during each few for from had has have having he her here hers him his
    how i if in into is it its just me more most my myself no nor not now of off on once only
    or other our out over own same she should so some such than that the their them then there
    these they this those through to too under until up very was we were what when where which
    while who whom why will with would you your yours feel felt journal entries entry
    """.split()
)

_WORD_RE = re.compile(r"[a-z][a-z']+")


def query_keywords(text: str, limit: int = 5) -> Tuple[str, ...]:
    """Significant lower-case words from a query, in order of appearance."""
    seen: Dict[str, None] = {}
    for word in _WORD_RE.findall(text.lower()):
        word = word.strip("'")
        if len(word) > 3 and word not in STOPWORDS:
            seen.setdefault(word, None)
        if len(seen) >= limit:
            break
    return tuple(seen)


@dataclass(frozen=True)
class StrategySelection:
    strategy: StructuredStrategy
    themes: Tuple[str, ...] = ()
    entities: Tuple[str, ...] = ()
    emotions: Tuple[str, ...] = ()


def select_strategy(
    plan: QueryPlan,
    context: Optional[Sequence[SearchResult]] = None,
) -> StrategySelection:
    """Choose the structured variant for a plan.

    Joint entity+emotion is checked before entity-only so both filters
    together reach the combined lookup. When the plan carries no filters,
    themes and entities seen in ``context`` (earlier vector hits) steer the
    choice instead.
    """
    themes = plan.theme_filters
    entities = plan.entity_filters
    emotions = plan.emotion_filters

    if not plan.has_filters and context:
        theme_counts = Counter(t for r in context for t in r.metadata.themes)
        entity_counts = Counter(e for r in context for e in r.metadata.entities)
        themes = tuple(t for t, _ in theme_counts.most_common(MAX_THEMES))
        entities = tuple(e for e, _ in entity_counts.most_common(MAX_ENTITIES))

    if themes:
        return StrategySelection(StructuredStrategy.THEME, themes=themes)
    if entities and emotions:
        return StrategySelection(StructuredStrategy.ENTITY_EMOTION, entities=entities, emotions=emotions)
    if entities:
        return StrategySelection(StructuredStrategy.ENTITY, entities=entities)
    if emotions:
        return StrategySelection(StructuredStrategy.EMOTION, emotions=emotions)
    return StrategySelection(StructuredStrategy.HYBRID)


Level = Callable[[], Awaitable[List[SearchResult]]]


class StructuredSearch:
    """Structured attribute search with a three-level fallback chain.

    Example:
        >>> search = StructuredSearch(store)
        >>> results = await search.search_by_emotions("user-1", ["anxiety"])
    """

    def __init__(self, store: StoreClient, config: Optional[SearchConfig] = None) -> None:
        self._store = store
        self._config = config or get_search_config()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def search(
        self,
        user_id: str,
        plan: QueryPlan,
        raw_query: str,
        time_range: Optional[TimeRange] = None,
        limit: Optional[int] = None,
        context: Optional[Sequence[SearchResult]] = None,
    ) -> List[SearchResult]:
        """Run the variant the plan (or sequential-mode context) calls for."""
        if time_range is None and plan.requires_time_filter:
            time_range = plan.time_range
        selection = select_strategy(plan, context)
        logger.debug(f"Structured strategy for user {user_id}: {selection.strategy.value}")

        if selection.strategy is StructuredStrategy.THEME:
            return await self.search_by_themes(user_id, selection.themes, time_range, limit)
        if selection.strategy is StructuredStrategy.ENTITY_EMOTION:
            return await self.search_by_entity_emotion(
                user_id, selection.entities, selection.emotions, time_range, limit
            )
        if selection.strategy is StructuredStrategy.ENTITY:
            return await self.search_by_entities(user_id, selection.entities, time_range, limit)
        if selection.strategy is StructuredStrategy.EMOTION:
            return await self.search_by_emotions(user_id, selection.emotions, time_range, limit)
        return await self.hybrid_search(user_id, plan, raw_query, time_range, limit)

    # ------------------------------------------------------------------
    # Variants
    # ------------------------------------------------------------------

    async def search_by_themes(
        self,
        user_id: str,
        themes: Sequence[str],
        time_range: Optional[TimeRange] = None,
        limit: Optional[int] = None,
    ) -> List[SearchResult]:
        themes = tuple(themes)[:MAX_THEMES]
        count = limit or self._config.structured_limit

        async def by_threshold(threshold: float) -> List[SearchResult]:
            results: List[SearchResult] = []
            for theme in themes:
                params = {
                    "theme_query": theme,
                    "user_id_filter": user_id,
                    "match_threshold": threshold,
                    "match_count": count,
                    **_range_params(time_range),
                }
                results.extend(await self._rpc(THEME_FUNCTION, params, SourceMethod.THEME))
            return results

        return await self._run_chain(
            StructuredStrategy.THEME,
            user_id,
            time_range,
            count,
            strict=lambda: by_threshold(self._config.structured_threshold),
            loose=lambda: by_threshold(self._config.structured_loose_threshold),
            keywords=themes,
        )

    async def search_by_entities(
        self,
        user_id: str,
        entities: Sequence[str],
        time_range: Optional[TimeRange] = None,
        limit: Optional[int] = None,
    ) -> List[SearchResult]:
        entities = tuple(entities)[:MAX_ENTITIES]
        count = limit or self._config.structured_limit

        async def by_threshold(threshold: float) -> List[SearchResult]:
            params = {
                "entity_queries": list(entities),
                "user_id_filter": user_id,
                "match_threshold": threshold,
                "match_count": count,
                **_range_params(time_range),
            }
            return await self._rpc(ENTITY_FUNCTION, params, SourceMethod.ENTITY)

        return await self._run_chain(
            StructuredStrategy.ENTITY,
            user_id,
            time_range,
            count,
            strict=lambda: by_threshold(self._config.structured_threshold),
            loose=lambda: by_threshold(self._config.structured_loose_threshold),
            keywords=entities,
        )

    async def search_by_emotions(
        self,
        user_id: str,
        emotions: Sequence[str],
        time_range: Optional[TimeRange] = None,
        limit: Optional[int] = None,
    ) -> List[SearchResult]:
        emotions = tuple(emotions)[:MAX_EMOTIONS]
        count = limit or self._config.structured_limit

        async def by_score(min_score: float) -> List[SearchResult]:
            results: List[SearchResult] = []
            for emotion in emotions:
                params = {
                    "emotion_name": emotion,
                    "user_id_filter": user_id,
                    "min_score": min_score,
                    "limit_count": count,
                    **_range_params(time_range),
                }
                results.extend(await self._rpc(EMOTION_FUNCTION, params, SourceMethod.EMOTION))
            return results

        return await self._run_chain(
            StructuredStrategy.EMOTION,
            user_id,
            time_range,
            count,
            strict=lambda: by_score(STRICT_EMOTION_SCORE),
            loose=lambda: by_score(LOOSE_EMOTION_SCORE),
            keywords=emotions,
        )

    async def search_by_entity_emotion(
        self,
        user_id: str,
        entities: Sequence[str],
        emotions: Sequence[str],
        time_range: Optional[TimeRange] = None,
        limit: Optional[int] = None,
    ) -> List[SearchResult]:
        entities = tuple(entities)[:MAX_ENTITIES]
        emotions = tuple(emotions)[:MAX_EMOTIONS]
        count = limit or self._config.structured_limit

        async def by_threshold(threshold: float) -> List[SearchResult]:
            params = {
                "entity_queries": list(entities),
                "emotion_queries": list(emotions),
                "user_id_filter": user_id,
                "match_threshold": threshold,
                "match_count": count,
                **_range_params(time_range),
            }
            return await self._rpc(ENTITY_EMOTION_FUNCTION, params, SourceMethod.ENTITY)

        return await self._run_chain(
            StructuredStrategy.ENTITY_EMOTION,
            user_id,
            time_range,
            count,
            strict=lambda: by_threshold(self._config.structured_threshold),
            loose=lambda: by_threshold(self._config.structured_loose_threshold),
            keywords=entities + emotions,
        )

    async def hybrid_search(
        self,
        user_id: str,
        plan: QueryPlan,
        raw_query: str,
        time_range: Optional[TimeRange] = None,
        limit: Optional[int] = None,
    ) -> List[SearchResult]:
        """Generic default: every filter the plan suggests, then raw-query keywords."""
        count = limit or self._config.structured_limit
        keywords = tuple(dict.fromkeys(
            plan.theme_filters + plan.entity_filters + plan.emotion_filters + query_keywords(raw_query)
        ))

        async def strict() -> List[SearchResult]:
            results: List[SearchResult] = []
            threshold = self._config.structured_threshold
            for theme in plan.theme_filters[:MAX_THEMES]:
                results.extend(await self._rpc(THEME_FUNCTION, {
                    "theme_query": theme,
                    "user_id_filter": user_id,
                    "match_threshold": threshold,
                    "match_count": count,
                    **_range_params(time_range),
                }, SourceMethod.THEME))
            if plan.entity_filters:
                results.extend(await self._rpc(ENTITY_FUNCTION, {
                    "entity_queries": list(plan.entity_filters[:MAX_ENTITIES]),
                    "user_id_filter": user_id,
                    "match_threshold": threshold,
                    "match_count": count,
                    **_range_params(time_range),
                }, SourceMethod.ENTITY))
            for emotion in plan.emotion_filters[:MAX_EMOTIONS]:
                results.extend(await self._rpc(EMOTION_FUNCTION, {
                    "emotion_name": emotion,
                    "user_id_filter": user_id,
                    "min_score": STRICT_EMOTION_SCORE,
                    "limit_count": count,
                    **_range_params(time_range),
                }, SourceMethod.EMOTION))
            return results

        async def no_loose_match() -> List[SearchResult]:
            return []

        return await self._run_chain(
            StructuredStrategy.HYBRID,
            user_id,
            time_range,
            count,
            strict=strict,
            loose=no_loose_match,
            keywords=keywords,
        )

    # ------------------------------------------------------------------
    # Auxiliary lookups
    # ------------------------------------------------------------------

    async def recent_documents(
        self,
        user_id: str,
        time_range: Optional[TimeRange] = None,
        limit: Optional[int] = None,
    ) -> List[SearchResult]:
        """Most recent non-empty documents, newest first."""
        filters = self._base_filters(user_id, time_range)
        try:
            rows = await self._store.select(
                self._store.entries_table,
                self._columns(),
                filters,
                order="created_at.desc",
                limit=limit or self._config.recent_fallback_count,
            )
        except SearchBackendError as e:
            logger.error(f"Recent-documents lookup failed for user {user_id}: {e}")
            return []
        return self._rows_to_results(rows, SourceMethod.FALLBACK)

    async def keyword_search(
        self,
        user_id: str,
        keywords: Sequence[str],
        time_range: Optional[TimeRange] = None,
        limit: Optional[int] = None,
    ) -> List[SearchResult]:
        """Case-insensitive substring match of any keyword against content."""
        terms = [re.sub(r"[^\w\s-]", "", k).strip() for k in keywords]
        terms = [t for t in terms if t]
        if not terms:
            return []

        column = quote_column(self._store.content_column)
        clauses = ",".join(f"{column}.ilike.*{term}*" for term in terms)
        filters = self._base_filters(user_id, time_range) + [("or", f"({clauses})")]
        try:
            rows = await self._store.select(
                self._store.entries_table,
                self._columns(),
                filters,
                order="created_at.desc",
                limit=limit or self._config.structured_limit,
            )
        except SearchBackendError as e:
            logger.error(f"Keyword search failed for user {user_id}: {e}")
            return []
        return self._rows_to_results(rows, SourceMethod.STRUCTURED)

    async def count_in_range(self, user_id: str, time_range: TimeRange) -> int:
        """Exact count of the user's documents inside ``time_range``.

        Raises:
            SearchBackendError: if the count cannot be obtained
        """
        filters: List[Filter] = [("user_id", f"eq.{user_id}")]
        filters.extend(_range_filters(time_range))
        return await self._store.count(self._store.entries_table, filters)

    async def top_emotions(
        self,
        user_id: str,
        time_range: Optional[TimeRange] = None,
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        """Aggregated top emotions with sample entries. Empty on failure."""
        range_params = _range_params(time_range)
        params = {
            "user_id_param": user_id,
            "start_date": range_params["start_date"],
            "end_date": range_params["end_date"],
            "limit_count": limit,
        }
        try:
            rows = await self._store.rpc(TOP_EMOTIONS_FUNCTION, params)
        except SearchBackendError as e:
            logger.error(f"Top-emotions lookup failed for user {user_id}: {e}")
            return []
        return [row for row in rows if isinstance(row, dict) and row.get("emotion")]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run_chain(
        self,
        strategy: StructuredStrategy,
        user_id: str,
        time_range: Optional[TimeRange],
        count: int,
        strict: Level,
        loose: Level,
        keywords: Sequence[str],
    ) -> List[SearchResult]:
        results = _dedupe(await strict())
        level = "strict"

        if not results:
            results = _dedupe(await loose())
            level = "loose"
        if not results and keywords:
            results = await self.keyword_search(user_id, keywords, time_range, count)
            level = "loose"
        if not results:
            # Not scoped to the time range: any user with documents gets a non-empty answer
            results = await self.recent_documents(user_id)
            level = "recent"

        if level != "strict":
            logger.info(f"{strategy.value} search fell back to '{level}' level for user {user_id}")
        record_fallback(strategy.value, level)
        record_search_results(f"structured_{strategy.value}", len(results))
        return results

    async def _rpc(
        self,
        function: str,
        params: Dict[str, Any],
        source: SourceMethod,
    ) -> List[SearchResult]:
        try:
            rows = await self._store.rpc(function, params)
        except SearchBackendError as e:
            logger.error(f"Structured search {function} failed: {e}")
            return []
        return self._rows_to_results(rows, source)

    def _rows_to_results(self, rows: Sequence[Dict[str, Any]], source: SourceMethod) -> List[SearchResult]:
        results: List[SearchResult] = []
        for row in rows:
            try:
                results.append(SearchResult.from_row(row, source, self._store.content_column))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed row from store: {e}")
        return results

    def _columns(self) -> List[str]:
        return ["id", self._store.content_column, "created_at", "emotions", "master_themes", "entities", "sentiment"]

    def _base_filters(self, user_id: str, time_range: Optional[TimeRange]) -> List[Filter]:
        filters: List[Filter] = [
            ("user_id", f"eq.{user_id}"),
            (quote_column(self._store.content_column), "not.is.null"),
        ]
        filters.extend(_range_filters(time_range))
        return filters


def _range_params(time_range: Optional[TimeRange]) -> Dict[str, Optional[str]]:
    if time_range is None:
        return {"start_date": None, "end_date": None}
    return dict(time_range.to_params())


def _range_filters(time_range: Optional[TimeRange]) -> List[Filter]:
    if time_range is None:
        return []
    params = time_range.to_params()
    return [("created_at", f"gte.{params['start_date']}"), ("created_at", f"lte.{params['end_date']}")]


def _dedupe(results: List[SearchResult]) -> List[SearchResult]:
    seen = set()
    unique: List[SearchResult] = []
    for result in results:
        if result.id not in seen:
            seen.add(result.id)
            unique.append(result)
    return unique
