"""Value types shared by the planner, search backends, ranker and pipeline."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Complexity(str, Enum):
    """Coarse query complexity used for execution decisions."""

    SIMPLE = "simple"
    COMPLEX = "complex"
    MULTI_PART = "multi_part"


class ComplexityTier(str, Enum):
    """Finer-grained tier used for cache TTL and search budgets."""

    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    VERY_COMPLEX = "very_complex"


class ExecutionMode(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class ResponseType(str, Enum):
    DIRECT = "direct"
    ANALYSIS = "analysis"
    AGGREGATED = "aggregated"
    NARRATIVE = "narrative"


class SourceMethod(str, Enum):
    """Which retrieval path produced a result."""

    VECTOR = "vector"
    STRUCTURED = "structured"
    EMOTION = "emotion"
    THEME = "theme"
    ENTITY = "entity"
    FALLBACK = "fallback"


class StructuredStrategy(str, Enum):
    THEME = "theme"
    ENTITY = "entity"
    EMOTION = "emotion"
    ENTITY_EMOTION = "entity_emotion"
    HYBRID = "hybrid"


_FRACTION_RE = re.compile(r"\.(\d+)")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a store timestamp into an aware datetime (UTC when naive)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip().replace(" ", "T", 1)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        # fromisoformat before 3.11 only accepts 3 or 6 fractional digits
        text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class TimeRange:
    """Inclusive time window in UTC."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"TimeRange start {self.start} is after end {self.end}")

    def to_params(self) -> Dict[str, str]:
        """RPC parameters understood by the store functions."""
        return {
            "start_date": self.start.astimezone(timezone.utc).isoformat(),
            "end_date": self.end.astimezone(timezone.utc).isoformat(),
        }

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


@dataclass(frozen=True)
class ResultMetadata:
    """Structured attributes attached to a document."""

    themes: Tuple[str, ...] = ()
    emotions: Dict[str, float] = field(default_factory=dict)
    entities: Tuple[str, ...] = ()

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ResultMetadata":
        themes = row.get("themes") or row.get("master_themes") or []
        emotions = row.get("emotions") or {}
        raw_entities = row.get("entities") or []

        # Entities arrive either as a flat list or as {"type": [names...]}
        entities: List[str] = []
        if isinstance(raw_entities, dict):
            for names in raw_entities.values():
                if isinstance(names, (list, tuple)):
                    entities.extend(str(n) for n in names)
                elif names:
                    entities.append(str(names))
        else:
            entities.extend(str(n) for n in raw_entities)

        clean_emotions: Dict[str, float] = {}
        if isinstance(emotions, dict):
            for name, score in emotions.items():
                try:
                    clean_emotions[str(name)] = float(score)
                except (TypeError, ValueError):
                    continue

        return cls(
            themes=tuple(str(t) for t in themes),
            emotions=clean_emotions,
            entities=tuple(entities),
        )

    def top_emotions(self, n: int = 3) -> List[Tuple[str, float]]:
        return sorted(self.emotions.items(), key=lambda kv: kv[1], reverse=True)[:n]


@dataclass(frozen=True)
class SearchResult:
    """One retrieved document.

    ``score`` is the similarity from the vector index; ``match_strength`` is the
    attribute-match strength from structured lookups. Either may be absent.
    """

    id: str
    content: str
    created_at: Optional[datetime] = None
    score: Optional[float] = None
    match_strength: Optional[float] = None
    source_method: SourceMethod = SourceMethod.VECTOR
    metadata: ResultMetadata = field(default_factory=ResultMetadata)

    @property
    def effective_score(self) -> float:
        if self.score is not None:
            return self.score
        if self.match_strength is not None:
            return self.match_strength
        return 0.5

    def with_source(self, source_method: SourceMethod) -> "SearchResult":
        return replace(self, source_method=source_method)

    @classmethod
    def from_row(
        cls,
        row: Dict[str, Any],
        source_method: SourceMethod,
        content_column: str = "transcription text",
    ) -> "SearchResult":
        """Build a result from a store row or RPC record."""
        content = row.get("content")
        if content is None:
            content = row.get(content_column) or row.get("refined text") or ""

        score = row.get("similarity")
        strength = row.get("match_strength")
        if strength is None:
            strength = row.get("emotion_score")

        return cls(
            id=str(row["id"]),
            content=str(content),
            created_at=parse_timestamp(row.get("created_at")),
            score=float(score) if score is not None else None,
            match_strength=float(strength) if strength is not None else None,
            source_method=source_method,
            metadata=ResultMetadata.from_row(row),
        )

    def to_reference(self, snippet_chars: int = 150) -> Dict[str, Any]:
        """Compact citation shown next to the generated answer."""
        snippet = self.content[:snippet_chars]
        if len(self.content) > snippet_chars:
            snippet += "..."
        return {
            "id": self.id,
            "date": self.created_at.isoformat() if self.created_at else None,
            "snippet": snippet,
            "source": self.source_method.value,
            "score": round(self.effective_score, 4),
        }


@dataclass(frozen=True)
class QueryPlan:
    """Immutable retrieval plan produced once per request."""

    strategy: str
    complexity: Complexity
    requires_time_filter: bool
    requires_aggregation: bool
    execution_mode: ExecutionMode
    expected_response_type: ResponseType
    time_range: Optional[TimeRange] = None
    theme_filters: Tuple[str, ...] = ()
    entity_filters: Tuple[str, ...] = ()
    emotion_filters: Tuple[str, ...] = ()
    confidence: float = 0.7
    complexity_tier: ComplexityTier = ComplexityTier.SIMPLE
    matched_rules: Tuple[str, ...] = ()

    @property
    def has_filters(self) -> bool:
        return bool(self.theme_filters or self.entity_filters or self.emotion_filters)

    @property
    def is_analytical(self) -> bool:
        return self.complexity is not Complexity.SIMPLE or self.requires_aggregation


@dataclass(frozen=True)
class SubQuestion:
    """Independently resolvable part of a multi-part question."""

    question_text: str
    search_plan: QueryPlan
    question_type: str = "specific"
    priority: int = 1
    reasoning_note: str = ""


@dataclass
class SubQuestionResult:
    sub_question: SubQuestion
    results: List[SearchResult] = field(default_factory=list)
    has_data_in_range: bool = True
    context: str = ""
    reasoning: str = ""
    failed: bool = False
    timed_out: bool = False


@dataclass
class DualSearchResult:
    """Outputs of one dual search execution."""

    vector_results: List[SearchResult]
    structured_results: List[SearchResult]
    combined: List[SearchResult]
    search_method: str
    timed_out: bool = False
