"""
Tests for dual (vector + structured) search orchestration.

Test Coverage:
- Parallel and sequential execution modes
- Merge order and deduplication across backends
- Deadline handling: partial results, cancelled branches
- Missing query vector degrades to structured-only search
"""

import asyncio

import pytest

from fakes import FakeStore, backend_error, make_plan, row


def _orchestrator(store, recency_tolerance=None):
    from journal_rag.config import SearchConfig
    from journal_rag.dual_search import DualSearchOrchestrator
    from journal_rag.structured_search import StructuredSearch
    from journal_rag.vector_search import VectorSearch

    config = SearchConfig()
    return DualSearchOrchestrator(
        VectorSearch(store, config), StructuredSearch(store, config), recency_tolerance=recency_tolerance
    )


def _parallel_plan(**overrides):
    from journal_rag.models import Complexity, ExecutionMode

    return make_plan(complexity=Complexity.COMPLEX, execution_mode=ExecutionMode.PARALLEL, **overrides)


@pytest.mark.asyncio
class TestDualSearchOrchestrator:
    async def test_parallel_merges_and_dedupes(self):
        from journal_rag.models import SourceMethod

        store = FakeStore(rpc_responses={
            "match_journal_entries": [row("a", similarity=0.9), row("b", similarity=0.4)],
            "match_journal_entries_by_theme": [row("b", similarity=0.8), row("c", similarity=0.6)],
        })
        result = await _orchestrator(store).execute("u1", [0.1, 0.2], _parallel_plan(theme_filters=("work",)), "work")

        assert result.search_method == "dual_parallel"
        assert not result.timed_out
        assert [r.id for r in result.combined] == ["a", "c", "b"]
        by_id = {r.id: r for r in result.combined}
        # "b" was found by both backends and keeps the vector tag and score
        assert by_id["b"].source_method is SourceMethod.VECTOR
        assert by_id["b"].score == 0.4
        assert by_id["c"].source_method is SourceMethod.STRUCTURED

    async def test_sequential_passes_vector_hits_as_context(self):
        store = FakeStore(rpc_responses={
            "match_journal_entries": [row("a", similarity=0.7, master_themes=["sleep"])],
            "match_journal_entries_by_theme": [row("s", similarity=0.5)],
        })
        result = await _orchestrator(store).execute("u1", [0.1], make_plan(), "how have I been")

        assert result.search_method == "dual_sequential"
        assert store.called_functions() == ["match_journal_entries", "match_journal_entries_by_theme"]
        assert store.rpc_calls[1][1]["theme_query"] == "sleep"
        assert [r.id for r in result.combined] == ["a", "s"]

    async def test_recency_tiebreak_orders_near_equal_scores_newest_first(self):
        store = FakeStore(rpc_responses={
            "match_journal_entries": [row("older", day=1, similarity=0.9), row("newer", day=5, similarity=0.85)],
        })

        by_score = await _orchestrator(store).execute("u1", [0.1], _parallel_plan(), "anything")
        by_recency = await _orchestrator(store, recency_tolerance=0.1).execute(
            "u1", [0.1], _parallel_plan(), "anything"
        )

        assert [r.id for r in by_score.combined] == ["older", "newer"]
        assert [r.id for r in by_recency.combined] == ["newer", "older"]

    async def test_missing_vector_skips_vector_branch(self):
        store = FakeStore(select_rows=[row("recent")])
        result = await _orchestrator(store).execute("u1", None, _parallel_plan(), "anything")

        assert "match_journal_entries" not in store.called_functions()
        assert result.vector_results == []
        assert [r.id for r in result.combined] == ["recent"]

    async def test_vector_failure_keeps_structured_results(self):
        store = FakeStore(
            rpc_responses={"match_journal_entries": backend_error()},
            select_rows=[row("r1")],
        )
        result = await _orchestrator(store).execute("u1", [0.1], _parallel_plan(), "anything")

        assert result.vector_results == []
        assert [r.id for r in result.combined] == ["r1"]
        assert not result.timed_out

    async def test_parallel_deadline_returns_partial_results(self):
        """A slow vector branch is cancelled; structured hits still come back."""
        store = FakeStore(
            rpc_responses={"match_journal_entries": [row("late", similarity=0.99)]},
            select_rows=[row("r1")],
            delays={"match_journal_entries": 5.0},
        )
        deadline = asyncio.get_running_loop().time() + 0.1

        result = await _orchestrator(store).execute("u1", [0.1], _parallel_plan(), "anything", deadline=deadline)

        assert result.timed_out
        assert result.search_method == "dual_parallel_partial"
        assert [r.id for r in result.combined] == ["r1"]

    async def test_sequential_deadline_keeps_vector_results(self):
        store = FakeStore(
            rpc_responses={"match_journal_entries": [row("a", similarity=0.7)]},
            select_rows=[row("r1")],
            delays={"select": 5.0},
        )
        deadline = asyncio.get_running_loop().time() + 0.1

        result = await _orchestrator(store).execute("u1", [0.1], make_plan(), "anything", deadline=deadline)

        assert result.timed_out
        assert result.search_method == "dual_sequential_partial"
        assert [r.id for r in result.combined] == ["a"]
        assert result.structured_results == []

    async def test_expired_deadline_returns_empty(self):
        store = FakeStore(select_rows=[row("r1")], delays={"match_journal_entries": 1.0, "select": 1.0})
        deadline = asyncio.get_running_loop().time() - 1

        result = await _orchestrator(store).execute("u1", [0.1], _parallel_plan(), "anything", deadline=deadline)

        assert result.timed_out
        assert result.combined == []
