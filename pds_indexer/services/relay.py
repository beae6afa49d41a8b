from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from collections.abc import Callable, Iterable
from typing import Any

import httpx
from opentelemetry import trace

from pds_indexer.core.config import Settings
from pds_indexer.core.urls import hostname_of

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

LIST_HOSTS_PATH = "/xrpc/com.atproto.sync.listHosts"
MAX_LIST_HOSTS_PAGES = 1000
FAILED_REFRESH_COOLDOWN_SECONDS = 30.0


class RelayUnavailableError(Exception):
    """Raised when the upstream relay host listing cannot be fetched."""


@dataclass(frozen=True, slots=True)
class RelayHostSnapshot:
    hosts: frozenset[str]
    fetched_at: float
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


def is_relay_connected_by_pattern(host_url: str, suffixes: Iterable[str]) -> bool:
    """Approximate relay coverage from well-known relay-operated hostnames.

    Entries starting with a dot match any subdomain; other entries must
    match the hostname exactly.
    """
    hostname = hostname_of(host_url)
    if not hostname:
        return False
    for suffix in suffixes:
        candidate = suffix.strip().lower()
        if not candidate:
            continue
        if candidate.startswith("."):
            if hostname.endswith(candidate):
                return True
        elif hostname == candidate:
            return True
    return False


class RelayHostTracker:
    def __init__(
        self,
        settings: Settings,
        *,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.relay_url = settings.relay_url.rstrip("/")
        self.ttl_seconds = max(1, settings.relay_cache_ttl_seconds)
        self.page_size = max(1, min(1000, settings.relay_page_size))
        self.timeout_seconds = settings.relay_request_timeout_seconds
        self.fallback_suffixes = tuple(settings.relay_fallback_suffixes)
        self._client = client
        self._clock = clock
        self._snapshot: RelayHostSnapshot | None = None
        self._refresh_lock = asyncio.Lock()
        self._retry_not_before = 0.0

    @property
    def is_populated(self) -> bool:
        return self._snapshot is not None

    async def is_connected(self, host_url: str) -> bool:
        hostname = hostname_of(host_url)
        if not hostname:
            return False
        try:
            hosts = await self.list_hosts()
        except Exception as exc:
            matched = is_relay_connected_by_pattern(host_url, self.fallback_suffixes)
            logger.warning(
                "relay host list unavailable; using pattern fallback host=%s connected=%s error=%s",
                hostname,
                matched,
                exc,
            )
            return matched
        return hostname in hosts

    async def list_hosts(self, *, force_refresh: bool = False) -> set[str]:
        snapshot = self._snapshot
        if not force_refresh and snapshot is not None and snapshot.is_fresh(self._clock()):
            return set(snapshot.hosts)
        snapshot = await self._refresh_if_needed(force=force_refresh, seen=snapshot)
        return set(snapshot.hosts)

    async def refresh(self) -> RelayHostSnapshot:
        hosts = await self._fetch_active_hosts()
        now = self._clock()
        snapshot = RelayHostSnapshot(hosts=frozenset(hosts), fetched_at=now, expires_at=now + self.ttl_seconds)
        self._snapshot = snapshot
        logger.info("relay host cache refreshed hosts=%s ttl_seconds=%s", len(hosts), self.ttl_seconds)
        return snapshot

    async def _refresh_if_needed(self, *, force: bool, seen: RelayHostSnapshot | None) -> RelayHostSnapshot:
        async with self._refresh_lock:
            now = self._clock()
            current = self._snapshot
            # A snapshot installed while this caller waited for the lock satisfies a forced refresh too.
            if current is not None and current.is_fresh(now) and (not force or current is not seen):
                return current
            if now < self._retry_not_before:
                raise RelayUnavailableError("relay listHosts recently failed; waiting before retrying")
            try:
                return await self.refresh()
            except Exception:
                self._retry_not_before = self._clock() + FAILED_REFRESH_COOLDOWN_SECONDS
                raise

    async def _fetch_active_hosts(self) -> set[str]:
        with tracer.start_as_current_span("relay.refresh") as span:
            span.set_attribute("relay.url", self.relay_url)
            if self._client is not None:
                hosts = await self._paginate(self._client)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    hosts = await self._paginate(client)
            span.set_attribute("relay.active_hosts", len(hosts))
            return hosts

    async def _paginate(self, client: httpx.AsyncClient) -> set[str]:
        hosts: set[str] = set()
        cursor: str | None = None
        for _ in range(MAX_LIST_HOSTS_PAGES):
            params: dict[str, Any] = {"limit": self.page_size}
            if cursor:
                params["cursor"] = cursor
            try:
                response = await client.get(f"{self.relay_url}{LIST_HOSTS_PATH}", params=params)
                response.raise_for_status()
                payload = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                raise RelayUnavailableError(f"listHosts failed: {exc}") from exc
            if not isinstance(payload, dict):
                raise RelayUnavailableError("listHosts returned a non-object payload")

            page = payload.get("hosts")
            entries = page if isinstance(page, list) else []
            for entry in entries:
                if not isinstance(entry, dict) or entry.get("status") != "active":
                    continue
                hostname = entry.get("hostname")
                if isinstance(hostname, str) and hostname.strip():
                    hosts.add(hostname.strip().lower())

            next_cursor = payload.get("cursor")
            if not isinstance(next_cursor, str) or not next_cursor:
                return hosts
            cursor = next_cursor
        logger.warning("relay listHosts page limit reached pages=%s hosts=%s", MAX_LIST_HOSTS_PAGES, len(hosts))
        return hosts
