"""Async client for the relational store's PostgREST interface.

Both the vector index (nearest-neighbour RPC functions) and the structured
attribute lookups go through this client. Every failure surfaces as
``SearchBackendError``; the search layer decides how to degrade.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

import httpx

from .config import StoreConfig, get_store_config
from .errors import SearchBackendError

logger = logging.getLogger(__name__)

Filter = Tuple[str, str]


def quote_column(name: str) -> str:
    """PostgREST needs double quotes around identifiers containing spaces."""
    return f'"{name}"' if " " in name else name


class StoreClient:
    """Thin async PostgREST wrapper (RPC, select, exact count).

    Example:
        >>> async with StoreClient(base_url="https://x.supabase.co/rest/v1", api_key="...") as store:
        ...     rows = await store.rpc("match_journal_entries", {...})
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        config: Optional[StoreConfig] = None,
    ) -> None:
        cfg = config or get_store_config()
        self.base_url = (base_url or cfg.url).rstrip("/")
        self.api_key = api_key if api_key is not None else cfg.api_key
        self.timeout = timeout or cfg.timeout
        self.entries_table = cfg.entries_table
        self.content_column = cfg.content_column
        self._client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self) -> "StoreClient":
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

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        if extra:
            headers.update(extra)
        return headers

    async def rpc(self, function: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Call a stored function and return its rows."""
        client = self._ensure_client()
        url = f"{self.base_url}/rpc/{function}"
        try:
            response = await client.post(url, json=params, headers=self._headers())
        except httpx.HTTPError as e:
            raise SearchBackendError(function, f"RPC transport error: {e}") from e

        if response.status_code >= 400:
            raise SearchBackendError(
                function, "RPC failed", status_code=response.status_code, detail=response.text
            )
        try:
            data = response.json()
        except ValueError as e:
            raise SearchBackendError(function, f"Invalid JSON from RPC: {e}") from e
        if data is None:
            return []
        if not isinstance(data, list):
            # Scalar-returning functions
            return [data] if isinstance(data, dict) else []
        return data

    async def select(
        self,
        table: str,
        columns: Sequence[str],
        filters: Sequence[Filter] = (),
        order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        client = self._ensure_client()
        params: List[Tuple[str, str]] = [("select", ",".join(quote_column(c) for c in columns))]
        params.extend(filters)
        if order:
            params.append(("order", order))
        if limit is not None:
            params.append(("limit", str(limit)))

        try:
            response = await client.get(self._table_url(table), params=params, headers=self._headers())
        except httpx.HTTPError as e:
            raise SearchBackendError(table, f"Select transport error: {e}") from e

        if response.status_code >= 400:
            raise SearchBackendError(
                table, "Select failed", status_code=response.status_code, detail=response.text
            )
        try:
            return response.json() or []
        except ValueError as e:
            raise SearchBackendError(table, f"Invalid JSON from select: {e}") from e

    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        """Exact row count without fetching rows."""
        client = self._ensure_client()
        params: List[Tuple[str, str]] = [("select", "id")]
        params.extend(filters)
        headers = self._headers({"Prefer": "count=exact"})

        try:
            response = await client.head(self._table_url(table), params=params, headers=headers)
        except httpx.HTTPError as e:
            raise SearchBackendError(table, f"Count transport error: {e}") from e

        if response.status_code >= 400:
            raise SearchBackendError(table, "Count failed", status_code=response.status_code)

        content_range = response.headers.get("content-range", "")
        total = content_range.rsplit("/", 1)[-1] if "/" in content_range else ""
        if not total.isdigit():
            raise SearchBackendError(table, f"Missing count in Content-Range: {content_range!r}")
        return int(total)

    def _table_url(self, table: str) -> str:
        return f"{self.base_url}/{quote(table)}"
