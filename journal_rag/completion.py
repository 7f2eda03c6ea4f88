"""Prompt assembly and the chat completion boundary.

The completion service is an opaque external dependency: it receives the
assembled message list and returns text.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .config import CompletionConfig, get_config
from .errors import CompletionServiceError
from .models import SearchResult, SubQuestionResult

logger = logging.getLogger(__name__)

# Conversation turns kept per performance mode
HISTORY_LIMITS: Dict[str, int] = {"fast": 4, "balanced": 6, "quality": 10}

JOURNAL_SYSTEM_PROMPT = (
    "You are a warm, insightful journaling companion. Answer the user's question using "
    "only the journal evidence below. Cite dates when you refer to an entry. If the "
    "evidence does not answer the question, say so plainly instead of guessing."
)

GENERAL_SYSTEM_PROMPT = (
    "You are a warm, knowledgeable wellbeing assistant. The user's question is general "
    "and does not need their journal; answer it directly and concisely."
)

ANALYTICAL_FORMATTING = """

FORMATTING REQUIREMENTS FOR ANALYTICAL RESPONSES:
- Use clear headers with ## markdown formatting
- Structure information with bullet points using -
- Use **bold text** for key insights and important data points
- Include specific data points and statistics when available
- Use numbered lists for rankings

RESPONSE STRUCTURE:
## Key Insights
## Patterns Identified
## Recommendations"""

NO_EVIDENCE_NOTE = "No journal entries matched this question."


class PromptAssembler:
    """Builds the completion message list from evidence and history."""

    def __init__(self, performance_mode: str = "balanced", max_message_chars: int = 1000) -> None:
        if performance_mode not in HISTORY_LIMITS:
            raise ValueError(f"Unknown performance mode: {performance_mode}")
        self.performance_mode = performance_mode
        self.max_message_chars = max_message_chars

    @property
    def history_limit(self) -> int:
        return HISTORY_LIMITS[self.performance_mode]

    def truncate_history(self, history: Sequence[Dict[str, Any]]) -> List[Dict[str, str]]:
        """Last N user/assistant turns, each message capped."""
        turns = [
            {"role": str(turn["role"]), "content": str(turn.get("content", ""))[: self.max_message_chars]}
            for turn in history
            if turn.get("role") in ("user", "assistant")
        ]
        return turns[-self.history_limit:]

    def evidence_block(
        self,
        evidence: Sequence[SearchResult] = (),
        sub_results: Sequence[SubQuestionResult] = (),
    ) -> str:
        if sub_results:
            sections = []
            for result in sub_results:
                if result.context:
                    sections.append(result.context)
                elif result.reasoning:
                    sections.append(f'**"{result.sub_question.question_text}":** {result.reasoning}')
            return "\n\n".join(sections) or NO_EVIDENCE_NOTE

        if not evidence:
            return NO_EVIDENCE_NOTE

        lines = []
        for index, result in enumerate(evidence, start=1):
            date = result.created_at.date().isoformat() if result.created_at else "Unknown date"
            emotions = ", ".join(name for name, _ in result.metadata.top_emotions(3))
            suffix = f" [emotions: {emotions}]" if emotions else ""
            lines.append(f"Entry {index} ({date}){suffix}: {result.content}")
        return "\n\n".join(lines)

    def build(
        self,
        message: str,
        evidence: Sequence[SearchResult] = (),
        sub_results: Sequence[SubQuestionResult] = (),
        history: Sequence[Dict[str, Any]] = (),
        analytical: bool = False,
        use_journal: bool = True,
    ) -> List[Dict[str, str]]:
        if use_journal:
            system = f"{JOURNAL_SYSTEM_PROMPT}\n\nJOURNAL EVIDENCE:\n\n{self.evidence_block(evidence, sub_results)}"
        else:
            system = GENERAL_SYSTEM_PROMPT
        if analytical:
            system += ANALYTICAL_FORMATTING

        messages = [{"role": "system", "content": system}]
        messages.extend(self.truncate_history(history))
        messages.append({"role": "user", "content": message[: self.max_message_chars]})
        return messages


class CompletionClient:
    """Async client for an OpenAI-compatible ``POST /chat/completions`` endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        config: Optional[CompletionConfig] = None,
    ) -> None:
        cfg = config or get_config().completion
        self.api_key = api_key if api_key is not None else cfg.api_key
        self.model = model or cfg.model
        self.max_tokens = max_tokens or cfg.max_tokens
        self.temperature = temperature if temperature is not None else cfg.temperature
        self.timeout = timeout or cfg.timeout
        self.completions_url = f"{(base_url or cfg.url).rstrip('/')}/chat/completions"
        self._client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self) -> "CompletionClient":
        self._ensure_client()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def complete(self, messages: List[Dict[str, str]], max_tokens: Optional[int] = None) -> str:
        """Generate a reply. Raises CompletionServiceError on any failure."""
        client = self._ensure_client()
        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature,
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = await client.post(self.completions_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise CompletionServiceError(f"Completion request failed: {e}") from e

        if response.status_code != 200:
            raise CompletionServiceError(
                "Completion service returned an error",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            text = response.json()["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise CompletionServiceError(
                "Malformed completion response", status_code=response.status_code, body=response.text
            ) from e

        logger.debug(f"Completion ({self.model}) returned {len(text or '')} chars")
        return text or ""
