"""
Prometheus metrics for the retrieval pipeline.

Tracks per-stage latency, search result volume, fallback depth, cache
effectiveness and request outcomes.
"""

import time
from contextlib import contextmanager
from typing import Generator

from prometheus_client import Counter, Histogram, REGISTRY, generate_latest


# Buckets tuned for remote calls (10ms to 20s)
LATENCY_BUCKETS = (0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0)


stage_latency_histogram = Histogram(
    'journal_rag_stage_latency_seconds',
    'Pipeline stage latency in seconds',
    labelnames=['stage'],
    buckets=LATENCY_BUCKETS
)

search_results_counter = Counter(
    'journal_rag_search_results_total',
    'Documents returned by each search backend',
    labelnames=['backend']
)

fallback_counter = Counter(
    'journal_rag_structured_fallback_total',
    'Structured search completions by strategy and fallback level',
    labelnames=['strategy', 'level']
)

cache_events_counter = Counter(
    'journal_rag_response_cache_events_total',
    'Response cache lookups by outcome',
    labelnames=['event']
)

request_counter = Counter(
    'journal_rag_requests_total',
    'Pipeline requests by outcome',
    labelnames=['status']
)


class MetricsRegistry:
    """
    Singleton registry for Prometheus metrics export.
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def export(self) -> str:
        """
        Export all metrics in Prometheus text format.

        Returns:
            str: Prometheus-formatted metrics text
        """
        return generate_latest(REGISTRY).decode('utf-8')


def record_search_results(backend: str, count: int) -> None:
    if count:
        search_results_counter.labels(backend=backend).inc(count)


def record_fallback(strategy: str, level: str) -> None:
    fallback_counter.labels(strategy=strategy, level=level).inc()


def record_cache_event(hit: bool) -> None:
    cache_events_counter.labels(event="hit" if hit else "miss").inc()


@contextmanager
def track_latency(stage: str) -> Generator[None, None, None]:
    """
    Context manager recording the duration of a pipeline stage.

    Example:
        >>> with track_latency("dual_search"):
        ...     await orchestrator.execute(...)
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        stage_latency_histogram.labels(stage=stage).observe(time.perf_counter() - start)


@contextmanager
def track_operation() -> Generator[None, None, None]:
    """
    Context manager counting request outcomes.

    Raises:
        Exception: Re-raises any exception after recording the error
    """
    try:
        yield
        request_counter.labels(status="success").inc()
    except Exception:
        request_counter.labels(status="error").inc()
        raise
