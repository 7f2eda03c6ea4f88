"""Rule-based query planning.

Turns a user message into an immutable ``QueryPlan``: complexity, required
filters, execution mode and expected response shape. Planning is pure: the
reference instant is a parameter, so identical inputs give identical plans.

Every classification is an ordered list of ``PlannerRule`` entries evaluated
top-to-bottom; the first match wins. Each rule can be tested on its own.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Pattern, Sequence, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import InvalidInputError
from .models import (
    Complexity,
    ComplexityTier,
    ExecutionMode,
    QueryPlan,
    ResponseType,
    TimeRange,
)

logger = logging.getLogger(__name__)

UTC = timezone.utc

Matcher = Union[Pattern[str], Callable[[str], bool]]


@dataclass(frozen=True)
class PlannerRule:
    """One (name, pattern, classification) rule."""

    name: str
    pattern: Matcher
    classification: Any

    def matches(self, text: str) -> bool:
        if isinstance(self.pattern, re.Pattern):
            return self.pattern.search(text) is not None
        return bool(self.pattern(text))


def first_match(rules: Sequence[PlannerRule], text: str) -> Optional[PlannerRule]:
    for rule in rules:
        if rule.matches(text):
            return rule
    return None


# ---------------------------------------------------------------------------
# Complexity
# ---------------------------------------------------------------------------

_QUESTION_MARK = re.compile(r"\?")
_AND = re.compile(r"\band\b", re.IGNORECASE)
_ALSO = re.compile(r"\balso\b", re.IGNORECASE)


def _multiple_questions(text: str) -> bool:
    return len(_QUESTION_MARK.findall(text)) > 1


def _conjoined_question(text: str) -> bool:
    questions = len(_QUESTION_MARK.findall(text))
    ands = len(_AND.findall(text))
    alsos = len(_ALSO.findall(text))
    return ands > 0 and (questions > 0 or alsos > 0)


COMPLEXITY_RULES: Tuple[PlannerRule, ...] = (
    PlannerRule("multiple_questions", _multiple_questions, Complexity.MULTI_PART),
    PlannerRule("conjoined_question", _conjoined_question, Complexity.MULTI_PART),
    PlannerRule(
        "analytical_vocabulary",
        re.compile(
            r"\b(pattern|trend|analysis|compare|correlation|top\s+\d+|most\s+(common|frequent)"
            r"|when do|what time|how often|frequency|usually|typically)\b",
            re.IGNORECASE,
        ),
        Complexity.COMPLEX,
    ),
    PlannerRule(
        "progress_vocabulary",
        re.compile(
            r"\b(progress|journey|improv(e|ed|ing|ement)|growth|grown|evolv(e|ed|ing)"
            r"|over time|changed|getting better|getting worse)\b",
            re.IGNORECASE,
        ),
        Complexity.COMPLEX,
    ),
)

# ---------------------------------------------------------------------------
# Aggregation and response type
# ---------------------------------------------------------------------------

AGGREGATION_RULES: Tuple[PlannerRule, ...] = (
    PlannerRule(
        "ranking",
        re.compile(r"\b(top\s+\d+|most\s+(common|frequent))\b", re.IGNORECASE),
        True,
    ),
    PlannerRule(
        "statistics",
        re.compile(r"\b(average|total|sum|count|how\s+many)\b", re.IGNORECASE),
        True,
    ),
    PlannerRule(
        "frequency",
        re.compile(r"\b(how\s+often|when do|what time|frequency|usually|typically)\b", re.IGNORECASE),
        True,
    ),
    PlannerRule("pattern", re.compile(r"\b(pattern|trend)\b", re.IGNORECASE), True),
)

RESPONSE_TYPE_RULES: Tuple[PlannerRule, ...] = (
    PlannerRule(
        "date_lookup",
        re.compile(r"^\s*(what\s+are\s+the\s+dates?|when\s+(is|was))\b", re.IGNORECASE),
        ResponseType.DIRECT,
    ),
    PlannerRule(
        "aggregation",
        re.compile(
            r"\b(top\s+\d+|most\s+(common|frequent)|average|total|sum|count|how\s+many|how\s+often"
            r"|when do|what time|frequency|usually|typically|pattern|trend)\b",
            re.IGNORECASE,
        ),
        ResponseType.AGGREGATED,
    ),
    PlannerRule(
        "analysis",
        re.compile(r"\b(analy[sz]e|analysis|insights?|pattern|trend)\b", re.IGNORECASE),
        ResponseType.ANALYSIS,
    ),
)

# ---------------------------------------------------------------------------
# Time phrases
# ---------------------------------------------------------------------------

TIME_PHRASE_RULES: Tuple[PlannerRule, ...] = (
    PlannerRule(
        "relative_count",
        re.compile(r"\b(last|past)\s+(\d+)\s+(days?|weeks?|months?|years?)\b", re.IGNORECASE),
        "relative_count",
    ),
    PlannerRule(
        "relative_period",
        re.compile(r"\b(last|this|current|recent|past)\s+(week|month|year|day)\b", re.IGNORECASE),
        "relative_period",
    ),
    PlannerRule("today", re.compile(r"\btoday\b", re.IGNORECASE), "today"),
    PlannerRule("yesterday", re.compile(r"\byesterday\b", re.IGNORECASE), "yesterday"),
)

# ---------------------------------------------------------------------------
# Attribute vocabularies
# ---------------------------------------------------------------------------

THEME_PATTERNS: Tuple[Tuple[str, Pattern[str]], ...] = (
    ("work", re.compile(r"\b(work|job|career|meeting|office|colleague|boss|project)\b", re.IGNORECASE)),
    ("family", re.compile(r"\b(family|mom|dad|parent|child|sibling|relative|home)\b", re.IGNORECASE)),
    ("health", re.compile(r"\b(health|doctor|medical|exercise|fitness|diet|wellness)\b", re.IGNORECASE)),
    ("relationships", re.compile(r"\b(relationship|friend|love|partner|dating|marriage)\b", re.IGNORECASE)),
    ("travel", re.compile(r"\b(travel|vacation|trip|journey|adventure|explore)\b", re.IGNORECASE)),
    ("stress", re.compile(r"\b(stress|anxiety|worry|fear|concern|pressure)\b", re.IGNORECASE)),
    ("happiness", re.compile(r"\b(happiness|joy|celebration|success|achievement|pride)\b", re.IGNORECASE)),
    ("learning", re.compile(r"\b(learning|education|study|course|skill|knowledge)\b", re.IGNORECASE)),
)

ENTITY_PATTERNS: Tuple[Tuple[str, Pattern[str]], ...] = (
    (
        "person",
        re.compile(
            r"\b(mom|dad|mother|father|parent|brother|sister|friend|colleague|boss|manager"
            r"|doctor|teacher|partner|spouse|wife|husband)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "place",
        re.compile(
            r"\b(home|office|gym|restaurant|hospital|school|university|park|beach|store|mall"
            r"|workplace|clinic)\b",
            re.IGNORECASE,
        ),
    ),
)

# Canonical emotion name -> surface forms
EMOTION_PATTERNS: Tuple[Tuple[str, Pattern[str]], ...] = (
    ("joy", re.compile(r"\b(happy|happiness|joy|excited|elated|cheerful|delighted|joyful)\b", re.IGNORECASE)),
    ("sadness", re.compile(r"\b(sad|sadness|depressed|down|melancholy|grief|sorrow|upset)\b", re.IGNORECASE)),
    ("anger", re.compile(r"\b(angry|anger|mad|furious|irritated|annoyed|frustrated|rage)\b", re.IGNORECASE)),
    ("anxiety", re.compile(r"\b(anxious|anxiety|worried|nervous|stressed|panic|fear|fearful)\b", re.IGNORECASE)),
    ("love", re.compile(r"\b(love|loving|affection|caring|tender|devoted|adore)\b", re.IGNORECASE)),
    ("pride", re.compile(r"\b(proud|pride|accomplished|confident|satisfied|achievement)\b", re.IGNORECASE)),
    ("gratitude", re.compile(r"\b(grateful|thankful|appreciation|blessed|appreciative)\b", re.IGNORECASE)),
    ("disappointment", re.compile(r"\b(disappointed|letdown|discouraged|dejected)\b", re.IGNORECASE)),
    ("confusion", re.compile(r"\b(confused|uncertainty|bewildered|puzzled|uncertain)\b", re.IGNORECASE)),
    ("calm", re.compile(r"\b(calm|peaceful|relaxed|serene|tranquil|content)\b", re.IGNORECASE)),
)


def extract_theme_keywords(message: str) -> Tuple[str, ...]:
    return _collect_matches(message, THEME_PATTERNS)


def extract_entity_keywords(message: str) -> Tuple[str, ...]:
    return _collect_matches(message, ENTITY_PATTERNS)


def extract_emotion_names(message: str) -> Tuple[str, ...]:
    """Canonical emotion names mentioned in the message, in vocabulary order."""
    return tuple(name for name, pattern in EMOTION_PATTERNS if pattern.search(message))


def _collect_matches(message: str, patterns: Sequence[Tuple[str, Pattern[str]]]) -> Tuple[str, ...]:
    seen: Dict[str, None] = {}
    for _, pattern in patterns:
        for match in pattern.finditer(message):
            seen.setdefault(match.group(0).lower(), None)
    return tuple(seen)


# ---------------------------------------------------------------------------
# Complexity tier (cache TTL / budgets)
# ---------------------------------------------------------------------------

_TIER_ENTITY_PATTERNS = (
    ENTITY_PATTERNS[0][1],
    ENTITY_PATTERNS[1][1],
    re.compile(r"\b(company|workplace|team|department|organization|clinic|hospital|school)\b", re.IGNORECASE),
    re.compile(
        r"\b(meeting|appointment|party|wedding|conference|interview|vacation|trip|date|presentation)\b",
        re.IGNORECASE,
    ),
)

_TIER_TIME_PATTERNS = (
    re.compile(
        r"\b(last week|yesterday|this week|last month|today|recently|lately|this morning|last night)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\b(last year|this year|next week|next month|tomorrow|soon|earlier|later)\b", re.IGNORECASE),
    re.compile(r"\b(when|what time|how often|frequency|pattern|trend|over time)\b", re.IGNORECASE),
)

_TIER_PRONOUN_PATTERNS = (
    re.compile(r"\b(i|me|my|mine|myself)\b", re.IGNORECASE),
    re.compile(r"\bam i\b", re.IGNORECASE),
    re.compile(r"\bdo i\b", re.IGNORECASE),
    re.compile(r"\bhow am i\b", re.IGNORECASE),
    re.compile(r"\bhow do i\b", re.IGNORECASE),
    re.compile(r"\bwhat makes me\b", re.IGNORECASE),
)

_TIER_INDICATORS: Tuple[Tuple[Pattern[str], int], ...] = (
    (re.compile(r"\b(analyze|analysis|pattern|trend|insight|correlation)\b", re.IGNORECASE), 8),
    (re.compile(r"\b(top \d+|most common|most frequent)\b", re.IGNORECASE), 6),
    (re.compile(r"\b(why|how|what causes|what makes)\b", re.IGNORECASE), 4),
    (re.compile(r"\band\b", re.IGNORECASE), 2),
    (re.compile(r"\balso\b", re.IGNORECASE), 2),
    (re.compile(r"\b(compare|comparison)\b", re.IGNORECASE), 5),
    (re.compile(r"\b(relationship|between)\b", re.IGNORECASE), 4),
    (re.compile(r"\b(statistics|stats|data)\b", re.IGNORECASE), 6),
)

TIER_THRESHOLDS = (
    (15.0, ComplexityTier.SIMPLE),
    (35.0, ComplexityTier.MODERATE),
    (60.0, ComplexityTier.COMPLEX),
)


@dataclass(frozen=True)
class ComplexityMetrics:
    word_count: int
    question_count: int
    entity_count: int
    emotion_count: int
    time_references: int
    personal_pronouns: int
    score: float
    tier: ComplexityTier


def analyze_complexity(message: str, history_length: int = 0) -> ComplexityMetrics:
    """Weighted complexity score mapped onto a four-level tier."""
    words = message.split()
    question_count = message.count("?")
    entity_count = sum(len(p.findall(message)) for p in _TIER_ENTITY_PATTERNS)
    emotion_count = sum(len(p.findall(message)) for _, p in EMOTION_PATTERNS)
    time_refs = sum(len(p.findall(message)) for p in _TIER_TIME_PATTERNS)
    pronouns = sum(len(p.findall(message)) for p in _TIER_PRONOUN_PATTERNS)

    score = min(len(words) * 0.5, 15.0)
    score += question_count * 3
    score += entity_count * 2
    score += emotion_count * 2
    score += time_refs * 3
    score += pronouns * 4
    for pattern, weight in _TIER_INDICATORS:
        score += len(pattern.findall(message)) * weight
    if history_length > 0:
        score += min(history_length * 2, 10)

    tier = ComplexityTier.VERY_COMPLEX
    for limit, candidate in TIER_THRESHOLDS:
        if score <= limit:
            tier = candidate
            break

    return ComplexityMetrics(
        word_count=len(words),
        question_count=question_count,
        entity_count=entity_count,
        emotion_count=emotion_count,
        time_references=time_refs,
        personal_pronouns=pronouns,
        score=score,
        tier=tier,
    )


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------

ANALYTICAL_KEYWORDS = (
    "pattern", "trend", "analysis", "when do", "what time", "how often",
    "frequency", "usually", "typically", "most", "least", "statistics",
    "insights", "breakdown", "summary", "overview", "comparison",
)


def _resolve_zone(name: Optional[str]):
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{name}', falling back to UTC")
        return timezone.utc


def _start_of_day(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time.min, tzinfo=moment.tzinfo)


def _end_of_day(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time.max, tzinfo=moment.tzinfo)


def _shift_month(moment: datetime, months: int) -> datetime:
    index = moment.month - 1 + months
    year = moment.year + index // 12
    return moment.replace(year=year, month=index % 12 + 1, day=1)


def resolve_time_phrase(message: str, now: datetime, tz_name: Optional[str] = None) -> Optional[TimeRange]:
    """Resolve the first relative-time phrase in ``message`` to a UTC range.

    Calendar periods ("this week", "last month") follow the local calendar of
    ``tz_name``; rolling periods ("past week", "last 3 days") count back from
    ``now``. Weeks start on Monday.
    """
    rule = first_match(TIME_PHRASE_RULES, message)
    if rule is None:
        return None

    zone = _resolve_zone(tz_name)
    local_now = now.astimezone(zone)
    today = _start_of_day(local_now)
    start: datetime
    end: datetime = local_now

    if rule.classification == "today":
        start = today
    elif rule.classification == "yesterday":
        start = today - timedelta(days=1)
        end = _end_of_day(start)
    elif rule.classification == "relative_count":
        match = rule.pattern.search(message)
        amount = int(match.group(2))
        unit = match.group(3).lower().rstrip("s")
        days = {"day": 1, "week": 7, "month": 30, "year": 365}[unit] * amount
        start = local_now - timedelta(days=days)
    else:
        match = rule.pattern.search(message)
        modifier = match.group(1).lower()
        unit = match.group(2).lower()
        if modifier in ("recent", "past"):
            days = {"day": 1, "week": 7, "month": 30, "year": 365}[unit]
            start = local_now - timedelta(days=days)
        elif unit == "day":
            if modifier == "last":
                start = today - timedelta(days=1)
                end = _end_of_day(start)
            else:
                start = today
        elif unit == "week":
            week_start = today - timedelta(days=today.weekday())
            if modifier == "last":
                start = week_start - timedelta(days=7)
                end = week_start - timedelta(microseconds=1)
            else:
                start = week_start
        elif unit == "month":
            month_start = today.replace(day=1)
            if modifier == "last":
                start = _shift_month(month_start, -1)
                end = month_start - timedelta(microseconds=1)
            else:
                start = month_start
        else:
            year_start = today.replace(month=1, day=1)
            if modifier == "last":
                start = year_start.replace(year=year_start.year - 1)
                end = year_start - timedelta(microseconds=1)
            else:
                start = year_start

    return TimeRange(start=start.astimezone(timezone.utc), end=end.astimezone(timezone.utc))


class QueryPlanner:
    """Builds a ``QueryPlan`` from a message.

    Example:
        >>> planner = QueryPlanner()
        >>> plan = planner.plan("How often do I feel anxious and what themes come up?")
        >>> plan.complexity, plan.requires_aggregation
        (<Complexity.MULTI_PART: 'multi_part'>, True)
    """

    def plan(
        self,
        message: str,
        timezone: Optional[str] = None,
        time_range: Optional[TimeRange] = None,
        now: Optional[datetime] = None,
        history_length: int = 0,
    ) -> QueryPlan:
        if message is None or not message.strip():
            raise InvalidInputError("Cannot plan an empty message")

        text = message.strip()
        matched: List[str] = []

        complexity_rule = first_match(COMPLEXITY_RULES, text)
        complexity = complexity_rule.classification if complexity_rule else Complexity.SIMPLE
        if complexity_rule:
            matched.append(complexity_rule.name)

        aggregation_rule = first_match(AGGREGATION_RULES, text)
        requires_aggregation = aggregation_rule is not None
        if aggregation_rule:
            matched.append(aggregation_rule.name)

        resolved_range = time_range
        if resolved_range is None:
            reference = now or datetime.now(tz=UTC)
            resolved_range = resolve_time_phrase(text, reference, timezone)
        requires_time_filter = resolved_range is not None

        response_rule = first_match(RESPONSE_TYPE_RULES, text)
        response_type = response_rule.classification if response_rule else ResponseType.NARRATIVE
        if response_rule:
            matched.append(response_rule.name)

        if complexity in (Complexity.COMPLEX, Complexity.MULTI_PART) or requires_aggregation:
            execution_mode = ExecutionMode.PARALLEL
        else:
            execution_mode = ExecutionMode.SEQUENTIAL

        theme_filters = extract_theme_keywords(text)
        entity_filters = extract_entity_keywords(text)
        emotion_filters = extract_emotion_names(text)

        confidence = 0.7
        if theme_filters:
            confidence += 0.1
        if emotion_filters:
            confidence += 0.1
        if complexity is Complexity.SIMPLE:
            confidence += 0.05
        confidence = round(min(confidence, 1.0), 2)

        if complexity is Complexity.MULTI_PART:
            strategy = "dual_search_database_segmented_processing"
        elif response_type is ResponseType.AGGREGATED:
            strategy = "dual_search_database_aggregation"
        elif response_type is ResponseType.ANALYSIS:
            strategy = "dual_search_database_pattern_analysis"
        elif requires_time_filter:
            strategy = "dual_search_database_time_filtered"
        elif theme_filters or entity_filters or emotion_filters:
            strategy = "dual_search_database_filtered"
        else:
            strategy = "dual_search_database_aware"

        plan = QueryPlan(
            strategy=strategy,
            complexity=complexity,
            requires_time_filter=requires_time_filter,
            requires_aggregation=requires_aggregation,
            execution_mode=execution_mode,
            expected_response_type=response_type,
            time_range=resolved_range,
            theme_filters=theme_filters,
            entity_filters=entity_filters,
            emotion_filters=emotion_filters,
            confidence=confidence,
            complexity_tier=analyze_complexity(text, history_length).tier,
            matched_rules=tuple(matched),
        )
        logger.debug(
            f"Planned '{text[:60]}': {plan.complexity.value}/{plan.execution_mode.value}"
            f"/{plan.expected_response_type.value} via {plan.strategy}"
        )
        return plan


def max_entries(plan: QueryPlan) -> int:
    """Result budget for a plan."""
    if plan.execution_mode is ExecutionMode.PARALLEL and (plan.theme_filters or plan.emotion_filters):
        return 150
    if plan.execution_mode is ExecutionMode.PARALLEL:
        return 100
    if plan.complexity is Complexity.COMPLEX:
        return 50
    return 20


def use_analytical_formatting(plan: QueryPlan, message: str) -> bool:
    lowered = message.lower()
    has_keywords = any(keyword in lowered for keyword in ANALYTICAL_KEYWORDS)
    has_filters = bool(plan.theme_filters or plan.emotion_filters)
    return (
        plan.expected_response_type in (ResponseType.ANALYSIS, ResponseType.AGGREGATED)
        or has_keywords
        or (has_filters and plan.complexity is not Complexity.SIMPLE)
    )
