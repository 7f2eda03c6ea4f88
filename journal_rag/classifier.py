"""Decides whether a message needs the user's journal or is a general question."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Pattern, Tuple

import httpx

from .errors import ClassificationError, InvalidInputError
from .resilience import RetryConfig, with_async_retry

logger = logging.getLogger(__name__)


class MessageCategory(str, Enum):
    JOURNAL_SPECIFIC = "JOURNAL_SPECIFIC"
    GENERAL = "GENERAL"


@dataclass(frozen=True)
class Classification:
    category: MessageCategory
    confidence: float
    reasoning: str
    source: str = "rules"

    @property
    def should_use_journal(self) -> bool:
        return self.category is MessageCategory.JOURNAL_SPECIFIC or self.confidence > 0.5


@dataclass(frozen=True)
class Indicator:
    pattern: Pattern[str]
    weight: float
    reason: str


def _rx(expr: str) -> Pattern[str]:
    return re.compile(expr, re.IGNORECASE)


PERSONAL_INDICATORS: Tuple[Indicator, ...] = (
    Indicator(_rx(r"\bam i\b|\bdo i\b"), 0.4, "Question about personal traits or preferences"),
    Indicator(_rx(r"\bmy (mental health|wellbeing|wellness|anxiety|depression|stress)\b"), 0.5,
              "Personal mental health question"),
    Indicator(_rx(r"\bhow (can|could|should) i\b|\bwhat should i do\b"), 0.35,
              "Seeking personal advice or self-improvement"),
    Indicator(_rx(r"\bhow (do|did) i feel\b|\bmy emotions\b|\bi feel\b"), 0.4, "Question about personal emotions"),
    Indicator(_rx(r"\b(pattern|habit|routine|tendency|typically|usually|often)\b"), 0.3,
              "Question about personal patterns or habits"),
    Indicator(_rx(r"\bi\b.{1,30}\b(anxiety|stress|depression|mood|emotion|mental)\b"), 0.4,
              "Personal context with mental health terms"),
    Indicator(_rx(r"\b(journal|entry|entries|wrote|written|recorded)\b"), 0.45,
              "Explicit reference to journal entries"),
    Indicator(_rx(r"\bhow (have|did) i\b.{1,20}\b(recently|lately|past|week|month|year)\b"), 0.35,
              "Question about personal changes over time"),
    Indicator(_rx(r"\b(intro|extro)vert\b"), 0.5, "Question about introversion/extroversion"),
    Indicator(_rx(r"\bdo i (like|enjoy|prefer)\b.{0,15}\bpeople\b"), 0.5, "Question about social preferences"),
    Indicator(_rx(r"\bwhat (type|kind) of person\b"), 0.45, "Question about personality type"),
    Indicator(_rx(r"\bmy (personality|character|nature|temperament)\b"), 0.5,
              "Question about personal character traits"),
    Indicator(_rx(r"\b(how|do) i\b.{0,20}\b(handle|manage|deal with|approach) social\b"), 0.45,
              "Question about handling social situations"),
    Indicator(_rx(r"\b(energized|drained|tired)\b.{0,20}\b(after|by|from|when)\b.{0,20}"
                  r"\b(social|people|interaction|talking|conversation)\b"), 0.5,
              "Question about social energy levels"),
)

GENERAL_INDICATORS: Tuple[Indicator, ...] = (
    Indicator(_rx(r"\bwhat (is|are)\b(?!.{0,15}\b(i|me|my|myself)\b)"), -0.3, "General definitional question"),
    Indicator(_rx(r"\bhow (to|do you|does one|can one|can people)\b"), -0.25, "General how-to question"),
    Indicator(_rx(r"\b(people|humans|individuals|everyone|most people)\b"), -0.2,
              "Question about people in general, not self"),
    Indicator(_rx(r"^.{1,15}$"), -0.15, "Very short query lacking personal context"),
)

STRONG_PERSONAL_PATTERNS: Tuple[Pattern[str], ...] = (
    _rx(r"\bam i\b"),
    _rx(r"\bdo i\b.{1,20}\b(like|enjoy|prefer|tend to|usually)\b"),
    _rx(r"\bhow (can|could|should) i\b"),
    _rx(r"\bwhat should i do\b"),
    _rx(r"\bhelp (me|my)\b"),
    _rx(r"\b(intro|extro)vert\b"),
    _rx(r"\bdo i like people\b"),
    _rx(r"\bwhat (kind|type) of person am i\b"),
)

_MENTAL_HEALTH_TOPIC = _rx(r"\b(mental health|anxiety|depression|stress)\b")
_FIRST_PERSON = _rx(r"\b(i|me|my|myself)\b")

BASE_CONFIDENCE = 0.4


def classify_message(message: str) -> Classification:
    """Weighted rule classification of a message."""
    text = message.strip()
    confidence = BASE_CONFIDENCE
    journal_reasons: List[str] = []
    general_reasons: List[str] = []

    for indicator in PERSONAL_INDICATORS:
        if indicator.pattern.search(text):
            confidence += indicator.weight
            journal_reasons.append(indicator.reason)

    for indicator in GENERAL_INDICATORS:
        if indicator.pattern.search(text):
            confidence += indicator.weight
            general_reasons.append(indicator.reason)

    if _MENTAL_HEALTH_TOPIC.search(text) and not _FIRST_PERSON.search(text):
        confidence -= 0.1
        general_reasons.append("Mental health topic without personal context")

    if any(p.search(text) for p in STRONG_PERSONAL_PATTERNS):
        confidence = max(confidence, 0.8)
        journal_reasons.append("Strong personal context indicator")

    if confidence > 0.5:
        category = MessageCategory.JOURNAL_SPECIFIC
        reasoning = "; ".join(journal_reasons[:3]) or "Overall analysis suggests personal nature"
    else:
        category = MessageCategory.GENERAL
        reasoning = "; ".join(general_reasons[:3]) or "Query appears to be seeking general information"

    return Classification(
        category=category,
        confidence=round(max(0.0, min(1.0, confidence)), 4),
        reasoning=reasoning,
    )


class MessageClassifier:
    """Classifies messages, optionally through a remote classifier service.

    The remote call is the only retried step in the pipeline (exponential
    backoff). When every attempt fails the local rules answer instead.
    """

    def __init__(
        self,
        remote_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        timeout: float = 10.0,
    ) -> None:
        self._remote_url = remote_url
        self._client = http_client
        self._timeout = timeout
        self._retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=1.0)
        self._remote_with_retry = with_async_retry(
            self._retry_config, retryable_exceptions=(ClassificationError,), sleep=sleep
        )(self._classify_remote)
        self.remote_attempts = 0

    async def classify(self, message: str) -> Classification:
        if message is None or not message.strip():
            raise InvalidInputError("Cannot classify an empty message")

        if not self._remote_url:
            return classify_message(message)

        try:
            return await self._remote_with_retry(message)
        except ClassificationError as e:
            logger.warning(f"Remote classification failed after retries, using local rules: {e}")
            return classify_message(message)

    async def _classify_remote(self, message: str) -> Classification:
        self.remote_attempts += 1
        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        try:
            response = await client.post(self._remote_url, json={"message": message})
        except httpx.HTTPError as e:
            raise ClassificationError(f"Classifier transport error: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

        if response.status_code != 200:
            raise ClassificationError(f"Classifier returned HTTP {response.status_code}")

        try:
            data = response.json()
            category = MessageCategory(data["category"])
            confidence = float(data.get("confidence", 0.5))
        except (KeyError, TypeError, ValueError) as e:
            raise ClassificationError(f"Malformed classifier response: {e}") from e

        return Classification(
            category=category,
            confidence=confidence,
            reasoning=str(data.get("reasoning", "")),
            source="remote",
        )
