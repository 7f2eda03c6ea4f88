"""
Tests for the PostgREST store client over httpx.MockTransport.
"""

import json

import httpx
import pytest


def _store(handler):
    from journal_rag.store import StoreClient

    return StoreClient(
        base_url="https://db.test/rest/v1",
        api_key="service-key",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.asyncio
class TestStoreClient:
    """StoreClient: RPC, select and exact count."""

    async def test_rpc_posts_params_with_auth_headers(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["apikey"] = request.headers.get("apikey")
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=[{"id": "e1", "content": "hi", "similarity": 0.9}])

        rows = await _store(handler).rpc("match_journal_entries", {"match_count": 5})

        assert rows == [{"id": "e1", "content": "hi", "similarity": 0.9}]
        assert seen["method"] == "POST"
        assert seen["path"] == "/rest/v1/rpc/match_journal_entries"
        assert seen["apikey"] == "service-key"
        assert seen["auth"] == "Bearer service-key"
        assert seen["body"] == {"match_count": 5}

    async def test_rpc_error_status_raises_backend_error(self):
        from journal_rag.errors import SearchBackendError

        store = _store(lambda request: httpx.Response(400, json={"message": "bad params"}))
        with pytest.raises(SearchBackendError) as excinfo:
            await store.rpc("match_journal_entries", {})
        assert excinfo.value.backend == "match_journal_entries"
        assert excinfo.value.status_code == 400

    async def test_rpc_transport_error_raises_backend_error(self):
        from journal_rag.errors import SearchBackendError

        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(SearchBackendError):
            await _store(handler).rpc("match_journal_entries", {})

    async def test_rpc_invalid_json_raises_backend_error(self):
        from journal_rag.errors import SearchBackendError

        store = _store(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(SearchBackendError):
            await store.rpc("match_journal_entries", {})

    async def test_rpc_scalar_and_null_results(self):
        assert await _store(lambda r: httpx.Response(200, content=b"null")).rpc("fn", {}) == []
        assert await _store(lambda r: httpx.Response(200, json={"id": 1})).rpc("fn", {}) == [{"id": 1}]

    async def test_select_builds_query(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["params"] = list(request.url.params.multi_items())
            return httpx.Response(200, json=[{"id": "e1"}])

        rows = await _store(handler).select(
            "Journal Entries",
            ["id", "transcription text"],
            [("user_id", "eq.u1"), ("created_at", "gte.2024-01-01")],
            order="created_at.desc",
            limit=10,
        )

        assert rows == [{"id": "e1"}]
        assert seen["path"] == "/rest/v1/Journal Entries"
        assert ("select", 'id,"transcription text"') in seen["params"]
        assert ("user_id", "eq.u1") in seen["params"]
        assert ("order", "created_at.desc") in seen["params"]
        assert ("limit", "10") in seen["params"]

    async def test_count_reads_content_range(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["prefer"] = request.headers.get("prefer")
            return httpx.Response(200, headers={"Content-Range": "0-9/42"})

        count = await _store(handler).count("Journal Entries", [("user_id", "eq.u1")])

        assert count == 42
        assert seen["method"] == "HEAD"
        assert seen["prefer"] == "count=exact"

    async def test_count_empty_range(self):
        count = await _store(lambda r: httpx.Response(200, headers={"Content-Range": "*/0"})).count("t")
        assert count == 0

    async def test_count_without_range_raises(self):
        from journal_rag.errors import SearchBackendError

        with pytest.raises(SearchBackendError):
            await _store(lambda r: httpx.Response(200)).count("t")


class TestQuoteColumn:
    def test_quotes_only_names_with_spaces(self):
        from journal_rag.store import quote_column

        assert quote_column("created_at") == "created_at"
        assert quote_column("refined text") == '"refined text"'
