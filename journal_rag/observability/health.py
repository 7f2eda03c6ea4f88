"""
Health checks for the pipeline's external dependencies.

Probes the embedding service and the relational store over HTTP and reports
availability and latency per component.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

import httpx


class HealthStatus(Enum):
    """Health status enumeration."""
    UP = "up"
    DOWN = "down"


@dataclass
class ComponentHealth:
    """
    Health status for a single component.

    Attributes:
        component: Name of the component (e.g., "embedding_service", "store")
        healthy: True if component is operational
        status: "up" or "down"
        latency_ms: Response latency in milliseconds (optional)
        error_message: Error details if unhealthy (optional)
    """

    component: str
    healthy: bool
    status: str
    latency_ms: Optional[float] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "component": self.component,
            "healthy": self.healthy,
            "status": self.status,
            "latency_ms": self.latency_ms,
            "error_message": self.error_message
        }


def _down(component: str, message: str, latency_ms: Optional[float] = None) -> ComponentHealth:
    return ComponentHealth(
        component=component,
        healthy=False,
        status=HealthStatus.DOWN.value,
        latency_ms=latency_ms,
        error_message=message
    )


class HealthChecker:
    """
    Health checker for the embedding service and the relational store.
    """

    def __init__(
        self,
        embedding_url: Optional[str] = None,
        store_url: Optional[str] = None,
        store_api_key: Optional[str] = None,
        embedding_api_key: Optional[str] = None,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        """
        Initialize health checker.

        Args:
            embedding_url: Embedding service base URL (e.g. "https://api.openai.com/v1")
            store_url: PostgREST base URL
            store_api_key: Key sent as ``apikey`` to the store
            embedding_api_key: Bearer token for the embedding service
            timeout_seconds: HTTP request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.embedding_url = embedding_url
        self.store_url = store_url
        self.store_api_key = store_api_key
        self.embedding_api_key = embedding_api_key
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _probe(self, component: str, url: str, headers: Dict[str, str]) -> ComponentHealth:
        start_time = time.time()
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = client.get(url, headers=headers)
                latency_ms = (time.time() - start_time) * 1000

                if response.status_code == 200:
                    return ComponentHealth(
                        component=component,
                        healthy=True,
                        status=HealthStatus.UP.value,
                        latency_ms=latency_ms
                    )
                return _down(component, f"HTTP {response.status_code}", latency_ms)

        except httpx.TimeoutException as e:
            latency_ms = (time.time() - start_time) * 1000
            return _down(component, f"Request timeout: {str(e)}", latency_ms)

        except httpx.HTTPError as e:
            latency_ms = (time.time() - start_time) * 1000
            return _down(component, str(e), latency_ms)

    def check_embedding_service(self) -> ComponentHealth:
        """
        Check the embedding service via its ``/models`` listing.
        """
        if not self.embedding_url:
            return _down("embedding_service", "Embedding URL not configured")
        headers = {}
        if self.embedding_api_key:
            headers["Authorization"] = f"Bearer {self.embedding_api_key}"
        return self._probe("embedding_service", f"{self.embedding_url.rstrip('/')}/models", headers)

    def check_store(self) -> ComponentHealth:
        """
        Check the relational store via the PostgREST root.
        """
        if not self.store_url:
            return _down("store", "Store URL not configured")
        headers = {}
        if self.store_api_key:
            headers["apikey"] = self.store_api_key
            headers["Authorization"] = f"Bearer {self.store_api_key}"
        return self._probe("store", f"{self.store_url.rstrip('/')}/", headers)

    def check_all(self) -> Dict[str, ComponentHealth]:
        """
        Check all configured dependencies.

        Returns:
            Dict mapping component names to ComponentHealth, plus an "overall"
            entry that is UP only if every checked component is healthy.
        """
        results = {}

        if self.embedding_url:
            results['embedding_service'] = self.check_embedding_service()

        if self.store_url:
            results['store'] = self.check_store()

        all_healthy = all(component.healthy for component in results.values())

        results['overall'] = ComponentHealth(
            component="overall",
            healthy=all_healthy,
            status=HealthStatus.UP.value if all_healthy else HealthStatus.DOWN.value
        )

        return results
