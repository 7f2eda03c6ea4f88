"""In-memory stand-ins for the network-facing clients."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from journal_rag.errors import EmbeddingServiceError, SearchBackendError


def row(entry_id, content="entry text", day=1, **extra):
    """A store row as the RPC functions return it."""
    data = {
        "id": entry_id,
        "content": content,
        "created_at": datetime(2024, 3, day, 12, 0, tzinfo=timezone.utc).isoformat(),
    }
    data.update(extra)
    return data


class FakeStore:
    """Duck-typed StoreClient.

    ``rpc_responses`` maps a function name to rows, an exception instance, or
    a callable taking the params and returning either. ``delays`` maps a
    function name (or "select") to seconds slept before answering.
    """

    entries_table = "Journal Entries"
    content_column = "transcription text"

    def __init__(
        self,
        rpc_responses: Optional[Dict[str, Any]] = None,
        select_rows: Any = None,
        count_result: Any = 0,
        delays: Optional[Dict[str, float]] = None,
    ):
        self.rpc_responses = rpc_responses or {}
        self.select_rows = select_rows if select_rows is not None else []
        self.count_result = count_result
        self.delays = delays or {}
        self.rpc_calls: List[tuple] = []
        self.select_calls: List[dict] = []
        self.count_calls: List[list] = []

    async def rpc(self, function: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        self.rpc_calls.append((function, dict(params)))
        if function in self.delays:
            await asyncio.sleep(self.delays[function])
        response = self.rpc_responses.get(function, [])
        if callable(response):
            response = response(params)
        if isinstance(response, Exception):
            raise response
        return list(response)

    async def select(self, table, columns, filters=(), order=None, limit=None):
        if "select" in self.delays:
            await asyncio.sleep(self.delays["select"])
        self.select_calls.append({"table": table, "filters": list(filters), "order": order, "limit": limit})
        rows = self.select_rows
        if callable(rows):
            rows = rows(list(filters))
        if isinstance(rows, Exception):
            raise rows
        return list(rows)[: limit or None]

    async def count(self, table, filters=()):
        self.count_calls.append(list(filters))
        if isinstance(self.count_result, Exception):
            raise self.count_result
        return self.count_result

    def called_functions(self) -> List[str]:
        return [name for name, _ in self.rpc_calls]


def backend_error(name="match_journal_entries"):
    return SearchBackendError(name, "boom", status_code=500)


class FakeEmbeddingClient:
    """Counts calls; optionally blocks until ``gate`` is set, or fails.

    Texts starting with one of ``block_prefixes`` never return.
    """

    def __init__(
        self,
        dimension: int = 4,
        fail: bool = False,
        gate: Optional[asyncio.Event] = None,
        block_prefixes: Tuple[str, ...] = (),
    ):
        self.dimension = dimension
        self.fail = fail
        self.gate = gate
        self.block_prefixes = block_prefixes
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if text.startswith(self.block_prefixes):
            await asyncio.Event().wait()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise EmbeddingServiceError("embedding down", status_code=503)
        return [float(len(text) % 7)] + [0.1] * (self.dimension - 1)


class FakeCompletion:
    def __init__(self, text: str = "Here is what your journal shows.", error: Optional[Exception] = None):
        self.text = text
        self.error = error
        self.calls: List[List[Dict[str, str]]] = []

    async def complete(self, messages, max_tokens=None):
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        return self.text


class RecordingSleep:
    """Replaces asyncio.sleep in retry tests."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_plan(**overrides):
    """A simple sequential plan with optional field overrides."""
    from journal_rag.models import Complexity, ExecutionMode, QueryPlan, ResponseType

    fields = dict(
        strategy="dual_search_database_aware",
        complexity=Complexity.SIMPLE,
        requires_time_filter=False,
        requires_aggregation=False,
        execution_mode=ExecutionMode.SEQUENTIAL,
        expected_response_type=ResponseType.NARRATIVE,
    )
    fields.update(overrides)
    return QueryPlan(**fields)
