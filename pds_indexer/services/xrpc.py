from __future__ import annotations

import asyncio
from dataclasses import dataclass
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

LIST_REPOS_METHOD = "com.atproto.sync.listRepos"
LIST_RECORDS_METHOD = "com.atproto.repo.listRecords"
USER_AGENT = "pds-indexer-scanner/1.0"


class XrpcError(Exception):
    """Raised for non-success or malformed XRPC responses."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True, slots=True)
class ListedRecord:
    uri: str
    cid: str
    value: dict[str, Any]


class HostPacer:
    """Keeps at least ``interval_seconds`` between requests to the same host."""

    def __init__(
        self,
        interval_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.interval_seconds = max(0.0, interval_seconds)
        self._clock = clock
        self._sleep = sleep
        self._last_request_at: dict[str, float] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._last_request_at)

    async def wait(self, host_url: str) -> None:
        self._prune(exclude=host_url)
        lock = self._locks.setdefault(host_url, asyncio.Lock())
        async with lock:
            last = self._last_request_at.get(host_url)
            if last is not None:
                remaining = self.interval_seconds - (self._clock() - last)
                if remaining > 0:
                    await self._sleep(remaining)
            self._last_request_at[host_url] = self._clock()

    def _prune(self, *, exclude: str) -> None:
        # A host whose last request is older than the interval needs no pacing state.
        cutoff = self._clock() - self.interval_seconds
        stale = [
            host
            for host, last in self._last_request_at.items()
            if host != exclude and last <= cutoff and not self._locks[host].locked()
        ]
        for host in stale:
            del self._last_request_at[host]
            del self._locks[host]


class XrpcClient:
    def __init__(
        self,
        *,
        timeout_seconds: float = 15.0,
        pacer: HostPacer | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.pacer = pacer or HostPacer(0.0)
        self._client = client
        self._owns_client = client is None

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def list_repos(
        self,
        host_url: str,
        *,
        cursor: str | None = None,
        limit: int = 1000,
    ) -> tuple[list[str], str | None]:
        params: dict[str, Any] = {"limit": limit}
        if cursor:
            params["cursor"] = cursor
        payload = await self._query(host_url, LIST_REPOS_METHOD, params)
        repos = payload.get("repos")
        if repos is None:
            repos = []
        if not isinstance(repos, list):
            raise XrpcError(f"{LIST_REPOS_METHOD} returned malformed repos")
        dids = [repo["did"] for repo in repos if isinstance(repo, dict) and isinstance(repo.get("did"), str)]
        return dids, _as_cursor(payload.get("cursor"))

    async def list_records(
        self,
        host_url: str,
        did: str,
        collection: str,
        *,
        cursor: str | None = None,
        limit: int = 100,
    ) -> tuple[list[ListedRecord], str | None]:
        params: dict[str, Any] = {"repo": did, "collection": collection, "limit": limit}
        if cursor:
            params["cursor"] = cursor
        payload = await self._query(host_url, LIST_RECORDS_METHOD, params)
        raw_records = payload.get("records")
        if raw_records is None:
            raw_records = []
        if not isinstance(raw_records, list):
            raise XrpcError(f"{LIST_RECORDS_METHOD} returned malformed records")

        records: list[ListedRecord] = []
        for item in raw_records:
            if not isinstance(item, dict):
                continue
            uri = item.get("uri")
            cid = item.get("cid")
            value = item.get("value")
            if isinstance(uri, str) and isinstance(cid, str):
                records.append(ListedRecord(uri=uri, cid=cid, value=value if isinstance(value, dict) else {}))
        return records, _as_cursor(payload.get("cursor"))

    async def _query(self, host_url: str, method: str, params: dict[str, Any]) -> dict[str, Any]:
        await self.pacer.wait(host_url)
        client = self._get_client()
        try:
            response = await client.get(
                f"{host_url.rstrip('/')}/xrpc/{method}",
                params=params,
                headers={"User-Agent": USER_AGENT},
            )
        except httpx.HTTPError as exc:
            raise XrpcError(f"{method} request failed: {exc.__class__.__name__}: {exc}") from exc
        if response.status_code >= 400:
            raise XrpcError(
                f"{method} returned HTTP {response.status_code}",
                status_code=int(response.status_code),
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise XrpcError(f"{method} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise XrpcError(f"{method} returned a non-object payload")
        return payload

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=True)
            self._owns_client = True
        return self._client


def _as_cursor(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None
