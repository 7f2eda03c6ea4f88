"""
Tests for the embedding gateway and the OpenAI-compatible client.

Test Coverage:
- Request coalescing: concurrent identical texts share one network call
- Cache hits skip the network
- Failures reach every waiter and are not cached
- Input validation and truncation
- HTTP client behaviour against httpx.MockTransport
"""

import asyncio
import json

import httpx
import pytest

from fakes import FakeEmbeddingClient


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
class TestEmbeddingGateway:
    """EmbeddingGateway: cache -> in-flight table -> network."""

    async def test_concurrent_identical_requests_coalesce(self):
        """N concurrent requests for one normalized text make one network call."""
        from journal_rag.caching import CacheStore
        from journal_rag.embeddings import EmbeddingGateway

        gate = asyncio.Event()
        client = FakeEmbeddingClient(gate=gate)
        gateway = EmbeddingGateway(client, cache=CacheStore())

        tasks = [asyncio.ensure_future(gateway.embed(text)) for text in ["Hello", "hello", "  HELLO ", "hello", "Hello"]]
        await _settle()
        assert len(client.calls) == 1
        assert gateway.in_flight_count == 1

        gate.set()
        vectors = await asyncio.gather(*tasks)

        assert all(v == vectors[0] for v in vectors)
        assert gateway.in_flight_count == 0
        metrics = gateway.get_metrics()
        assert metrics["network_calls"] == 1
        assert metrics["coalesced"] == 4

    async def test_cached_text_skips_network(self):
        from journal_rag.caching import CacheStore
        from journal_rag.embeddings import EmbeddingGateway

        client = FakeEmbeddingClient()
        gateway = EmbeddingGateway(client, cache=CacheStore())

        first = await gateway.embed("How did I sleep?")
        second = await gateway.embed("how did i sleep?")

        assert first == second
        assert len(client.calls) == 1
        assert gateway.get_metrics()["hits"] == 1

    async def test_failure_reaches_every_waiter(self):
        """All coalesced waiters see the error; nothing is cached."""
        from journal_rag.caching import CacheStore
        from journal_rag.embeddings import EmbeddingGateway
        from journal_rag.errors import EmbeddingServiceError

        gate = asyncio.Event()
        client = FakeEmbeddingClient(fail=True, gate=gate)
        gateway = EmbeddingGateway(client, cache=CacheStore())

        tasks = [asyncio.ensure_future(gateway.embed("stress at work")) for _ in range(3)]
        await _settle()
        gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, EmbeddingServiceError) for r in results)
        assert gateway.in_flight_count == 0

        # The next request goes back to the network
        client.fail = False
        vector = await gateway.embed("stress at work")
        assert len(vector) == client.dimension
        assert len(client.calls) == 2

    async def test_waiters_resolve_when_owner_is_cancelled_after_success(self):
        """Cancelling the owner while the gateway lock is busy must not strand waiters."""
        from journal_rag.caching import CacheStore
        from journal_rag.embeddings import EmbeddingGateway

        gate = asyncio.Event()
        client = FakeEmbeddingClient(gate=gate)
        gateway = EmbeddingGateway(client, cache=CacheStore())

        owner = asyncio.ensure_future(gateway.embed("evening walk"))
        await _settle()
        waiter = asyncio.ensure_future(gateway.embed("evening walk"))
        await _settle()

        await gateway._lock.acquire()
        try:
            gate.set()
            await _settle()
            owner.cancel()
        finally:
            gateway._lock.release()

        vector = await asyncio.wait_for(waiter, timeout=1.0)
        assert len(vector) == client.dimension
        assert gateway.in_flight_count == 0
        assert len(client.calls) == 1

    async def test_empty_text_rejected(self):
        from journal_rag.caching import CacheStore
        from journal_rag.embeddings import EmbeddingGateway
        from journal_rag.errors import InvalidInputError

        client = FakeEmbeddingClient()
        gateway = EmbeddingGateway(client, cache=CacheStore())

        with pytest.raises(InvalidInputError):
            await gateway.embed("   ")
        assert client.calls == []

    async def test_long_input_truncated(self):
        from journal_rag.caching import CacheStore
        from journal_rag.embeddings import EmbeddingGateway

        client = FakeEmbeddingClient()
        gateway = EmbeddingGateway(client, cache=CacheStore(), max_input_length=8000)

        await gateway.embed("a" * 9000)
        assert len(client.calls[0]) == 8000

    async def test_returned_vectors_are_independent(self):
        """Mutating a returned vector does not affect later lookups."""
        from journal_rag.caching import CacheStore
        from journal_rag.embeddings import EmbeddingGateway

        gateway = EmbeddingGateway(FakeEmbeddingClient(), cache=CacheStore())
        first = await gateway.embed("calm morning")
        first.append(99.0)
        second = await gateway.embed("calm morning")
        assert len(second) == 4


def _client(handler, **kwargs):
    from journal_rag.embeddings import OpenAIEmbeddingClient

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAIEmbeddingClient(
        api_key="test-key", base_url="https://embed.test/v1", dimension=3, http_client=http_client, **kwargs
    )


@pytest.mark.asyncio
class TestOpenAIEmbeddingClient:
    """OpenAIEmbeddingClient over a mocked transport."""

    async def test_successful_embedding(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2, 0.3]}]})

        client = _client(handler)
        vector = await client.embed("hello")

        assert vector == [0.1, 0.2, 0.3]
        assert seen["url"] == "https://embed.test/v1/embeddings"
        assert seen["auth"] == "Bearer test-key"
        assert seen["body"]["input"] == "hello"
        assert seen["body"]["model"] == client.model

    async def test_error_status_raises(self):
        from journal_rag.errors import EmbeddingServiceError

        client = _client(lambda request: httpx.Response(503, text="overloaded"))
        with pytest.raises(EmbeddingServiceError) as excinfo:
            await client.embed("hello")
        assert excinfo.value.status_code == 503
        assert excinfo.value.body == "overloaded"

    async def test_malformed_response_raises(self):
        from journal_rag.errors import EmbeddingServiceError

        client = _client(lambda request: httpx.Response(200, json={"unexpected": True}))
        with pytest.raises(EmbeddingServiceError):
            await client.embed("hello")

    async def test_transport_error_raises(self):
        from journal_rag.errors import EmbeddingServiceError

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)
        with pytest.raises(EmbeddingServiceError):
            await client.embed("hello")

    async def test_context_manager_keeps_injected_client_open(self):
        """An injected AsyncClient is owned by the caller and stays open."""
        client = _client(lambda request: httpx.Response(200, json={"data": [{"embedding": [1, 2, 3]}]}))
        async with client:
            assert await client.embed("x") == [1.0, 2.0, 3.0]
        assert not client._client.is_closed
