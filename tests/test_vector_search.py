"""
Tests for semantic vector search.
"""

from datetime import datetime, timezone

import pytest

from fakes import FakeStore, backend_error, make_plan, row


def _search(store):
    from journal_rag.config import SearchConfig
    from journal_rag.vector_search import VectorSearch

    return VectorSearch(store, SearchConfig())


@pytest.mark.asyncio
class TestVectorSearch:
    async def test_search_without_range_uses_match_function(self):
        from journal_rag.models import SourceMethod

        store = FakeStore(rpc_responses={"match_journal_entries": [row("v1", similarity=0.82)]})
        results = await _search(store).search("u1", [0.1, 0.2], limit=5)

        assert [r.id for r in results] == ["v1"]
        assert results[0].score == 0.82
        assert results[0].source_method is SourceMethod.VECTOR
        function, params = store.rpc_calls[0]
        assert function == "match_journal_entries"
        assert params == {
            "query_embedding": [0.1, 0.2],
            "match_threshold": 0.3,
            "match_count": 5,
            "user_id_filter": "u1",
        }

    async def test_search_with_range_uses_dated_function(self):
        from journal_rag.models import TimeRange

        window = TimeRange(datetime(2024, 3, 1, tzinfo=timezone.utc), datetime(2024, 3, 31, tzinfo=timezone.utc))
        store = FakeStore()
        await _search(store).search("u1", [0.5], time_range=window, threshold=0.1)

        function, params = store.rpc_calls[0]
        assert function == "match_journal_entries_with_date"
        assert params["start_date"] == "2024-03-01T00:00:00+00:00"
        assert params["end_date"] == "2024-03-31T00:00:00+00:00"
        assert params["match_threshold"] == 0.1
        assert params["match_count"] == 15

    async def test_backend_error_returns_empty(self):
        store = FakeStore(rpc_responses={"match_journal_entries": backend_error()})
        assert await _search(store).search("u1", [0.1]) == []

    async def test_malformed_rows_return_empty(self):
        store = FakeStore(rpc_responses={"match_journal_entries": [{"content": "no id"}]})
        assert await _search(store).search("u1", [0.1]) == []

    async def test_search_for_plan_uses_plan_range_and_threshold(self):
        from journal_rag.models import Complexity, TimeRange

        window = TimeRange(datetime(2024, 3, 1, tzinfo=timezone.utc), datetime(2024, 3, 8, tzinfo=timezone.utc))
        plan = make_plan(complexity=Complexity.COMPLEX, requires_time_filter=True, time_range=window)
        store = FakeStore()

        await _search(store).search_for_plan("u1", [0.1], plan, limit=20)

        function, params = store.rpc_calls[0]
        assert function == "match_journal_entries_with_date"
        assert params["match_threshold"] == 0.1
        assert params["match_count"] == 20


class TestThresholdFor:
    def test_analytical_plans_lower_the_threshold(self):
        from journal_rag.models import Complexity

        search = _search(FakeStore())
        assert search.threshold_for(make_plan()) == 0.3
        assert search.threshold_for(make_plan(requires_aggregation=True)) == 0.1
        assert search.threshold_for(make_plan(complexity=Complexity.MULTI_PART)) == 0.1
        assert search.threshold_for(None) == 0.3
