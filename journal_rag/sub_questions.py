"""Multi-part question decomposition and batched sub-question retrieval.

Multi-part messages are split into sub-questions, each with its own plan.
The processor resolves them in batches: batches run one after another and
the members of a batch run concurrently, so at most ``batch_size`` searches
are in flight. A failing sub-question becomes a placeholder result and never
takes its siblings down. When the deadline passes, unfinished sub-questions
are cancelled and replaced by timed-out placeholders; finished ones are kept.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import EmbeddingServiceError, NoDataInRangeError
from .models import SearchResult, SubQuestion, SubQuestionResult, TimeRange
from .observability.metrics import track_latency
from .query_planner import QueryPlanner
from .ranking import ResultRanker, merge_results

logger = logging.getLogger(__name__)

SUB_QUESTION_VECTOR_LIMIT = 8
SUB_QUESTION_VECTOR_THRESHOLD = 0.1

NO_DATA_REASONING = "No entries found in specified date range"
FAILED_REASONING = "Error processing sub-question"
TIMED_OUT_REASONING = "Sub-question did not finish before the deadline"


# ============================================================================
# Emotion query detection
# ============================================================================

_EMOTION_WORDS = "happy|sad|excited|anxious|content"

_PERSONAL_EMOTION_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"\b(am|are) (i|we) (happy|sad|anxious|depressed|excited|content|fulfilled|joyful)\b",
    r"\bhow (happy|sad|excited|content|fulfilled|am|do) (am )?i\b",
    r"\bwhat (emotions?|feelings?) (am i|do i)\b",
    r"\b(my|our) (mood|happiness|emotional? state)\b",
    r"\bhow (am i|do i) feel\b",
))

_CONTEXTUAL_EMOTION_PATTERNS = tuple(re.compile(p, re.IGNORECASE) for p in (
    rf"\bwhen (i'?m|i am) ({_EMOTION_WORDS})\b",
    rf"\balso ({_EMOTION_WORDS})\b",
    rf"\band ({_EMOTION_WORDS})\b",
))

_HAPPINESS_RE = re.compile(r"\b(happy|happiness|joy|joyful|content|fulfilled|cheerful)\b", re.IGNORECASE)

_EMOTION_TYPES: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    ("happiness", _HAPPINESS_RE),
    ("sadness", re.compile(r"\b(sad|sadness|down|depressed|unhappy)\b", re.IGNORECASE)),
    ("anxiety", re.compile(r"\b(anxious|anxiety|worried|nervous|stress(ed)?)\b", re.IGNORECASE)),
    ("excitement", re.compile(r"\b(excited|excitement|thrilled|enthusiastic)\b", re.IGNORECASE)),
)

_EMOTION_TOPIC_RE = re.compile(r"\b(emotion|emotions|emotional|feel|feeling|feelings|mood)\b", re.IGNORECASE)


@dataclass(frozen=True)
class EmotionDetection:
    is_emotional: bool
    is_contextual: bool
    emotion_type: Optional[str]
    requires_emotion_analysis: bool


def detect_emotional_query(message: str, history: Sequence[Dict[str, Any]] = ()) -> EmotionDetection:
    """Decide whether a (sub-)question asks about the user's emotional state.

    Contextual follow-ups ("and sad?") only count when recent history was
    already about emotions.
    """
    is_emotional = any(p.search(message) for p in _PERSONAL_EMOTION_PATTERNS)
    is_contextual = any(p.search(message) for p in _CONTEXTUAL_EMOTION_PATTERNS)
    is_happiness = bool(_HAPPINESS_RE.search(message))

    emotion_type = None
    for name, pattern in _EMOTION_TYPES:
        if pattern.search(message):
            emotion_type = name
            break

    emotional_history = any(
        _EMOTION_TOPIC_RE.search(str(turn.get("content", ""))) for turn in list(history)[-4:]
    )

    return EmotionDetection(
        is_emotional=is_emotional,
        is_contextual=is_contextual,
        emotion_type=emotion_type,
        requires_emotion_analysis=is_emotional or is_happiness or (is_contextual and emotional_history),
    )


# ============================================================================
# Generation
# ============================================================================

ANALYTICAL_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = tuple(
    (name, re.compile(expr, re.IGNORECASE)) for name, expr in (
        ("improvement", r"improve|improved|better|progress|growth|positive|decline|worse|negative"),
        ("temporal", r"since|when|over time|recently|lately|before|after|during|throughout|timeline|progression"),
        ("patterns", r"pattern|trend|usually|typically|often|frequency|consistently|regularly"),
        ("comparison", r"different|compare|versus|\bvs\b|contrast|both|either|neither|between"),
        ("causation", r"why|because|reason|cause|effect|impact|influence|result|outcome|leads to"),
        ("emotional", r"feel|emotion|mood|stress|anxiety|happy|sad|excited|calm|overwhelmed"),
        ("specific", r"what|which|how|where|specific|details|examples|instances"),
    )
)

IMPROVEMENT_AREAS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = tuple(
    (name, re.compile(expr, re.IGNORECASE)) for name, expr in (
        ("meditation", r"meditation|mindfulness|practice"),
        ("sleep", r"sleep|rest|bedtime|wake"),
        ("work", r"work|job|career|productivity"),
        ("relationships", r"relationship|friend|family|social"),
        ("health", r"health|exercise|fitness|physical"),
        ("mood", r"mood|emotion|feel|mental|anxiety|stress"),
    )
)

_SENTENCE_SPLIT_RE = re.compile(r"(?<=\?)\s+")
_CLAUSE_SPLIT_RE = re.compile(
    r",?\s+(?:and|also|plus)\s+(?=(?:what|how|when|why|which|who|where|do|did|does|am|is|are|was|were|have|has|can)\b)",
    re.IGNORECASE,
)


def split_question(message: str) -> List[str]:
    """Split on question marks, then on conjunctions that open a new question."""
    parts: List[str] = []
    for sentence in _SENTENCE_SPLIT_RE.split(message.strip()):
        for clause in _CLAUSE_SPLIT_RE.split(sentence):
            clause = clause.strip(" ,;")
            if len(clause.split()) >= 2:
                if not clause.endswith("?"):
                    clause += "?"
                parts.append(clause[0].upper() + clause[1:])
    return parts


def improvement_question(message: str, negative: bool) -> str:
    areas = [name for name, pattern in IMPROVEMENT_AREAS if pattern.search(message)]
    if areas:
        area_context = ", ".join(areas)
        if negative:
            return f"What ongoing challenges or areas of concern persist in {area_context} based on journal entries?"
        return f"What improvements and positive changes are evident in {area_context} based on journal entries?"
    if negative:
        return "What areas show ongoing challenges, stagnation, or negative patterns in recent journal entries?"
    return "What areas show clear improvement, progress, or positive changes in recent journal entries?"


class SubQuestionGenerator:
    """Rule-based decomposition of a message into prioritized sub-questions.

    Example:
        >>> generator = SubQuestionGenerator(QueryPlanner())
        >>> [q.question_type for q in generator.generate("Why do I feel anxious at work?")]
        ['emotional', 'causal']
    """

    def __init__(self, planner: Optional[QueryPlanner] = None, max_sub_questions: int = 5) -> None:
        self._planner = planner or QueryPlanner()
        self._max = max_sub_questions

    def generate(
        self,
        message: str,
        timezone: Optional[str] = None,
        time_range: Optional[TimeRange] = None,
        now: Optional[datetime] = None,
    ) -> List[SubQuestion]:
        lowered = message.lower()
        detected = {name for name, pattern in ANALYTICAL_PATTERNS if pattern.search(lowered)}
        candidates: List[Tuple[str, str, int, str]] = []

        parts = split_question(message)
        if len(parts) > 1:
            for part in parts:
                candidates.append((part, "specific", 1, "Explicit part of the question"))

        if "improvement" in detected:
            if "not" in lowered or "hasn't" in lowered:
                candidates.extend([
                    (improvement_question(message, negative=True), "comparative", 1, "Lack of improvement"),
                    ("What are the persistent challenges or ongoing issues mentioned in recent entries?",
                     "pattern", 2, "Persistent challenges"),
                    ("What areas show stagnation or lack of progress over time?", "temporal", 3, "Stagnation"),
                ])
            else:
                candidates.extend([
                    (improvement_question(message, negative=False), "comparative", 1, "Improvement"),
                    ("What positive changes and progress are mentioned in recent entries?",
                     "pattern", 2, "Positive changes"),
                ])
                if "temporal" in detected:
                    candidates.append((
                        "How have patterns changed over the specified time period?", "temporal", 3, "Change over time"
                    ))

        if "emotional" in detected:
            candidates.append((
                "What emotional patterns and mood changes are evident in the entries?", "emotional", 1, "Emotions"
            ))
        if "patterns" in detected:
            candidates.append((
                "What behavioral patterns and recurring themes appear frequently?", "pattern", 2, "Recurring patterns"
            ))
        if "causation" in detected:
            candidates.append((
                "What cause-and-effect relationships or triggers are mentioned?", "causal", 2, "Causes and triggers"
            ))

        if not candidates:
            candidates.append((message.strip(), "specific", 1, "Single focused question"))

        seen = set()
        unique = []
        for candidate in candidates:
            key = candidate[0].lower()
            if key not in seen:
                seen.add(key)
                unique.append(candidate)

        # sorted() is stable: equal priorities keep discovery order
        unique = sorted(unique, key=lambda c: c[2])[: self._max]

        # Sub-questions inherit the time window of the whole message
        inherited_range = time_range
        if inherited_range is None:
            inherited_range = self._planner.plan(message, timezone=timezone, now=now).time_range

        sub_questions = []
        for text, question_type, priority, note in unique:
            plan = self._planner.plan(text, timezone=timezone, time_range=inherited_range, now=now)
            sub_questions.append(SubQuestion(
                question_text=text,
                search_plan=plan,
                question_type=question_type,
                priority=priority,
                reasoning_note=note,
            ))

        logger.info(
            f"Generated {len(sub_questions)} sub-questions: "
            f"{[q.question_type for q in sub_questions]}"
        )
        return sub_questions


# ============================================================================
# Processing
# ============================================================================

@dataclass(frozen=True)
class SubQuestionContext:
    """Request-level data every sub-question needs."""

    user_id: str
    original_message: str = ""
    history: Tuple[Dict[str, Any], ...] = ()


@dataclass
class SubQuestionRun:
    """Results and batch statistics of one processing call."""

    results: List[SubQuestionResult] = field(default_factory=list)
    batches_run: int = 0
    in_flight: int = 0
    peak_in_flight: int = 0
    timed_out: int = 0

    @property
    def partial(self) -> bool:
        return self.timed_out > 0


def _timed_out_result(sub_question: SubQuestion) -> SubQuestionResult:
    return SubQuestionResult(sub_question=sub_question, reasoning=TIMED_OUT_REASONING, timed_out=True)


class SubQuestionProcessor:
    """Resolves sub-questions in bounded, order-preserving batches."""

    def __init__(
        self,
        vector_search,
        structured_search,
        embedding_gateway,
        batch_size: int = 3,
        ranker: Optional[ResultRanker] = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._vector = vector_search
        self._structured = structured_search
        self._embeddings = embedding_gateway
        self._batch_size = batch_size
        self._ranker = ranker or ResultRanker()

    async def process_all(
        self,
        sub_questions: Sequence[SubQuestion],
        context: SubQuestionContext,
        date_filter: Optional[TimeRange] = None,
        strict_date_enforcement: bool = False,
        deadline: Optional[float] = None,
    ) -> List[SubQuestionResult]:
        """Resolve every sub-question; the output order matches the input order."""
        run = await self.process_batches(
            sub_questions, context, date_filter, strict_date_enforcement, deadline=deadline
        )
        return run.results

    async def process_batches(
        self,
        sub_questions: Sequence[SubQuestion],
        context: SubQuestionContext,
        date_filter: Optional[TimeRange] = None,
        strict_date_enforcement: bool = False,
        deadline: Optional[float] = None,
    ) -> SubQuestionRun:
        """Resolve every sub-question and report how the batches went.

        Args:
            deadline: Absolute event-loop time. Sub-questions still running
                when it passes are cancelled and replaced by timed-out
                placeholders; finished ones are kept.
        """
        run = SubQuestionRun()
        semaphore = asyncio.Semaphore(self._batch_size)
        loop = asyncio.get_running_loop()

        with track_latency("sub_questions"):
            for start in range(0, len(sub_questions), self._batch_size):
                batch = sub_questions[start:start + self._batch_size]
                remaining = None if deadline is None else deadline - loop.time()
                if remaining is not None and remaining <= 0:
                    run.results.extend(_timed_out_result(sq) for sq in batch)
                    run.timed_out += len(batch)
                    continue

                run.batches_run += 1
                logger.debug(f"Processing sub-question batch {run.batches_run} ({len(batch)} questions)")
                tasks = [
                    asyncio.ensure_future(
                        self._process_guarded(sq, context, date_filter, strict_date_enforcement, semaphore, run)
                    )
                    for sq in batch
                ]
                try:
                    done, pending = await asyncio.wait(tasks, timeout=remaining)
                except asyncio.CancelledError:
                    for task in tasks:
                        task.cancel()
                    raise
                for task in pending:
                    task.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)
                    logger.warning(f"Deadline reached with {len(pending)} sub-question(s) outstanding")

                for sub_question, task in zip(batch, tasks):
                    if task in done:
                        run.results.append(task.result())
                    else:
                        run.results.append(_timed_out_result(sub_question))
                        run.timed_out += 1

        failed = sum(1 for r in run.results if r.failed)
        if failed:
            logger.warning(f"{failed}/{len(run.results)} sub-questions failed")
        return run

    async def _process_guarded(
        self,
        sub_question: SubQuestion,
        context: SubQuestionContext,
        date_filter: Optional[TimeRange],
        strict_date_enforcement: bool,
        semaphore: asyncio.Semaphore,
        run: SubQuestionRun,
    ) -> SubQuestionResult:
        async with semaphore:
            run.in_flight += 1
            run.peak_in_flight = max(run.peak_in_flight, run.in_flight)
            try:
                return await self.process_one(sub_question, context, date_filter, strict_date_enforcement)
            except NoDataInRangeError as e:
                logger.info(f"Sub-question '{sub_question.question_text[:60]}' short-circuited: {e}")
                return SubQuestionResult(
                    sub_question=sub_question,
                    has_data_in_range=False,
                    reasoning=NO_DATA_REASONING,
                )
            except Exception as e:
                logger.error(f"Sub-question '{sub_question.question_text[:60]}' failed: {e}")
                return SubQuestionResult(
                    sub_question=sub_question,
                    reasoning=FAILED_REASONING,
                    failed=True,
                )
            finally:
                run.in_flight -= 1

    async def process_one(
        self,
        sub_question: SubQuestion,
        context: SubQuestionContext,
        date_filter: Optional[TimeRange] = None,
        strict_date_enforcement: bool = False,
    ) -> SubQuestionResult:
        """Resolve a single sub-question.

        Raises:
            NoDataInRangeError: strict enforcement is on and the window is empty
        """
        time_range = date_filter
        if time_range is None and sub_question.search_plan.requires_time_filter:
            time_range = sub_question.search_plan.time_range

        if strict_date_enforcement and time_range is not None:
            count = await self._structured.count_in_range(context.user_id, time_range)
            if count == 0:
                params = time_range.to_params()
                raise NoDataInRangeError(params["start_date"], params["end_date"])

        structured_results, vector_results = await asyncio.gather(
            self._structured.search(
                context.user_id, sub_question.search_plan, sub_question.question_text, time_range=time_range
            ),
            self._vector_branch(context.user_id, sub_question.question_text, time_range),
        )
        combined = self._ranker.rank(merge_results(vector_results, structured_results))

        detection = detect_emotional_query(sub_question.question_text, context.history)
        emotion_rows: List[Dict[str, Any]] = []
        if detection.requires_emotion_analysis or "emotion" in sub_question.question_text.lower():
            emotion_rows = await self._structured.top_emotions(context.user_id, time_range)

        return SubQuestionResult(
            sub_question=sub_question,
            results=combined,
            context=build_context(sub_question.question_text, emotion_rows, combined, time_range is None),
            reasoning=f"{len(combined)} entries via {sub_question.search_plan.strategy}",
        )

    async def _vector_branch(
        self, user_id: str, text: str, time_range: Optional[TimeRange]
    ) -> List[SearchResult]:
        try:
            vector = await self._embeddings.embed(text)
        except EmbeddingServiceError as e:
            logger.warning(f"Embedding failed for sub-question, using structured results only: {e}")
            return []
        return await self._vector.search(
            user_id,
            vector,
            time_range=time_range,
            limit=SUB_QUESTION_VECTOR_LIMIT,
            threshold=SUB_QUESTION_VECTOR_THRESHOLD,
        )


def _format_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if value:
        return str(value)[:10]
    return "Unknown date"


def build_context(
    question: str,
    emotion_rows: Sequence[Dict[str, Any]],
    results: Sequence[SearchResult],
    all_entries: bool = False,
) -> str:
    """Short evidence summary for one sub-question.

    Emotion rows (pre-computed scores with sample entries) take precedence;
    otherwise the top three results are quoted.
    """
    if emotion_rows:
        lines = [f'**EMOTION ANALYSIS for "{question}":**', "", "Pre-computed emotion scores (0.0-1.0 scale):", ""]
        for index, row in enumerate(emotion_rows[:3], start=1):
            samples = row.get("sample_entries") or []
            try:
                score = float(row.get("score", 0.0))
            except (TypeError, ValueError):
                score = 0.0
            lines.append(
                f"**{index}. {str(row['emotion']).upper()}** - Score: {score:.3f}/1.0 ({len(samples)} entries)"
            )
            if samples and isinstance(samples[0], dict):
                sample = samples[0]
                preview = str(sample.get("content", ""))[:80]
                lines.append(f'   Sample: {_format_date(sample.get("created_at"))} - "{preview}..."')
            lines.append("")
        return "\n".join(lines) + "\n"

    if not results:
        return ""

    header = f'**CONTEXT for "{question}":**\n\n'
    if all_entries:
        header += "**SCOPE: Comprehensive analysis**\n\n"
    return header + "\n\n---\n\n".join(
        f"{_format_date(r.created_at)}: {r.content[:200]}..." for r in results[:3]
    )
