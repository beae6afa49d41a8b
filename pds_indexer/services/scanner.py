from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Protocol

from opentelemetry import trace

from pds_indexer.core.config import Settings
from pds_indexer.core.urls import truncate_text
from pds_indexer.schemas.pds import PDSEntry, ScanResult
from pds_indexer.schemas.records import (
    RECOGNIZED_COLLECTIONS,
    RecordDecodeError,
    RecordMetadata,
    decode_record,
)
from pds_indexer.services.indexing import IndexableRecord, IndexResult
from pds_indexer.services.xrpc import ListedRecord, XrpcClient, XrpcError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MAX_ERROR_LENGTH = 500
REPOS_UNSUPPORTED_STATUS_CODES = {400, 501}
COLLECTION_MISSING_STATUS_CODES = {400, 404}


class PDSScanError(Exception):
    """Host-level scan failure; already recorded against the host."""

    def __init__(self, host_url: str, message: str) -> None:
        super().__init__(message)
        self.host_url = host_url


class ScanRegistry(Protocol):
    async def mark_scan_started(self, host_url: str, *, lease_seconds: float) -> None: ...

    async def record_scan_success(self, host_url: str, result: ScanResult) -> PDSEntry: ...

    async def record_scan_failure(self, host_url: str, reason: str) -> PDSEntry: ...


class RecordIndexer(Protocol):
    async def index_record(self, record: IndexableRecord, metadata: RecordMetadata) -> IndexResult: ...


class _ScanCounters:
    __slots__ = ("attempted", "skipped", "repos")

    def __init__(self) -> None:
        self.attempted = 0
        self.skipped = 0
        self.repos = 0


class PDSScanner:
    """Pull-based crawler for hosts the relay does not cover.

    Repositories on a host are visited sequentially and their records are
    handed to the indexer one at a time, so indexing per host is ordered.
    The scanner counts records it attempted to index; whether indexing
    succeeded is the indexer's concern.
    """

    def __init__(
        self,
        registry: ScanRegistry,
        indexer: RecordIndexer,
        client: XrpcClient,
        settings: Settings,
    ) -> None:
        self.registry = registry
        self.indexer = indexer
        self.client = client
        self.scan_timeout_seconds = settings.scan_timeout_seconds
        self.max_records_per_pds = max(1, settings.max_records_per_pds)
        self.records_backoff_hours = settings.default_backoff_hours
        self.no_records_backoff_hours = settings.no_records_backoff_hours
        self.page_size = max(1, min(100, settings.pds_page_size))
        self.repo_page_size = max(1, min(1000, settings.repo_page_size))
        self._inflight_indexing: set[asyncio.Task[IndexResult]] = set()

    async def scan_host(self, host_url: str) -> ScanResult:
        with tracer.start_as_current_span("pds.scan") as span:
            span.set_attribute("pds.url", host_url)
            logger.info("pds scan started host=%s", host_url)
            counters = _ScanCounters()
            try:
                await self.registry.mark_scan_started(host_url, lease_seconds=self.scan_timeout_seconds)
                await asyncio.wait_for(self._scan_repos(host_url, counters), timeout=self.scan_timeout_seconds)
            except Exception as exc:
                message = _describe_failure(exc, self.scan_timeout_seconds)
                span.record_exception(exc)
                logger.error("pds scan failed host=%s error=%s", host_url, message)
                await self._record_failure(host_url, message)
                raise PDSScanError(host_url, message) from exc

            result = ScanResult(
                has_records=counters.attempted > 0,
                record_count=counters.attempted,
                next_scan_hours=self.records_backoff_hours if counters.attempted > 0 else self.no_records_backoff_hours,
                skipped_records=counters.skipped,
                repos_scanned=counters.repos,
            )
            try:
                await self.registry.record_scan_success(host_url, result)
            except Exception as exc:
                logger.exception("pds scan succeeded but could not be recorded host=%s", host_url)
                raise PDSScanError(host_url, f"scan result not recorded: {exc}") from exc

            span.set_attribute("pds.repos_count", counters.repos)
            span.set_attribute("pds.records_indexed", counters.attempted)
            logger.info(
                "pds scan completed host=%s repos=%s records=%s skipped=%s",
                host_url,
                counters.repos,
                counters.attempted,
                counters.skipped,
            )
            return result

    async def scan_identity(self, host_url: str, did: str) -> int:
        """Scan one repository, e.g. right after a user registers their PDS.

        A collection that cannot be listed is logged and skipped, and a
        timeout ends the scan early; the count of records handed to the
        indexer so far is returned either way.
        """
        with tracer.start_as_current_span("pds.scan_identity") as span:
            span.set_attribute("pds.url", host_url)
            span.set_attribute("pds.did", did)
            logger.info("scanning identity host=%s did=%s", host_url, did)
            counters = _ScanCounters()
            try:
                await asyncio.wait_for(
                    self._scan_identity_collections(host_url, did, counters),
                    timeout=self.scan_timeout_seconds,
                )
            except asyncio.TimeoutError as exc:
                span.record_exception(exc)
                logger.warning(
                    "identity scan timed out host=%s did=%s timeout_seconds=%.1f records=%s",
                    host_url,
                    did,
                    self.scan_timeout_seconds,
                    counters.attempted,
                )
            span.set_attribute("pds.records_indexed", counters.attempted)
            return counters.attempted

    async def scan_many(self, host_urls: list[str], concurrency: int = 1) -> dict[str, ScanResult | Exception]:
        results: dict[str, ScanResult | Exception] = {}
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def run_one(host_url: str) -> None:
            async with semaphore:
                try:
                    results[host_url] = await self.scan_host(host_url)
                except Exception as exc:
                    results[host_url] = exc

        await asyncio.gather(*(run_one(host_url) for host_url in dict.fromkeys(host_urls)))
        return results

    async def _scan_repos(self, host_url: str, counters: _ScanCounters) -> None:
        dids = await self._list_repos(host_url)
        logger.debug("listed repos host=%s repos=%s", host_url, len(dids))
        for did in dids:
            if counters.attempted >= self.max_records_per_pds:
                logger.info("pds record limit reached host=%s limit=%s", host_url, self.max_records_per_pds)
                break
            await self._scan_repo(host_url, did, counters)
            counters.repos += 1

    async def _list_repos(self, host_url: str) -> list[str]:
        dids: list[str] = []
        cursor: str | None = None
        while True:
            try:
                page, cursor = await self.client.list_repos(host_url, cursor=cursor, limit=self.repo_page_size)
            except XrpcError as exc:
                if exc.status_code in REPOS_UNSUPPORTED_STATUS_CODES:
                    logger.info("pds does not support repo listing host=%s status=%s", host_url, exc.status_code)
                    return dids
                raise
            dids.extend(page)
            if len(dids) >= self.max_records_per_pds:
                return dids[: self.max_records_per_pds]
            if not cursor or not page:
                return dids

    async def _scan_repo(self, host_url: str, did: str, counters: _ScanCounters) -> None:
        for collection in RECOGNIZED_COLLECTIONS:
            await self._scan_collection(host_url, did, collection, counters)

    async def _scan_identity_collections(self, host_url: str, did: str, counters: _ScanCounters) -> None:
        for collection in RECOGNIZED_COLLECTIONS:
            try:
                await self._scan_collection(host_url, did, collection, counters)
            except Exception as exc:
                logger.warning(
                    "identity collection scan failed host=%s did=%s collection=%s error=%s",
                    host_url,
                    did,
                    collection,
                    _describe_failure(exc, self.scan_timeout_seconds),
                )

    async def _scan_collection(self, host_url: str, did: str, collection: str, counters: _ScanCounters) -> None:
        cursor: str | None = None
        while counters.attempted < self.max_records_per_pds:
            try:
                records, cursor = await self.client.list_records(
                    host_url,
                    did,
                    collection,
                    cursor=cursor,
                    limit=self.page_size,
                )
            except XrpcError as exc:
                if exc.status_code in COLLECTION_MISSING_STATUS_CODES:
                    return
                raise
            for listed in records:
                if counters.attempted >= self.max_records_per_pds:
                    return
                await self._index_listed(host_url, collection, listed, counters)
            if not cursor or not records:
                return

    async def _index_listed(
        self,
        host_url: str,
        collection: str,
        listed: ListedRecord,
        counters: _ScanCounters,
    ) -> None:
        try:
            record = decode_record(collection, listed.uri, listed.cid, listed.value)
        except RecordDecodeError as exc:
            counters.skipped += 1
            logger.warning("skipping undecodable record host=%s uri=%s error=%s", host_url, listed.uri, exc)
            return

        metadata = RecordMetadata(
            uri=listed.uri,
            cid=listed.cid,
            pds_url=host_url,
            indexed_at=datetime.now(timezone.utc),
        )
        counters.attempted += 1
        # A scan timeout must not abandon a stage write, so indexing runs in its own task.
        task = asyncio.ensure_future(self.indexer.index_record(record, metadata))
        self._inflight_indexing.add(task)
        task.add_done_callback(self._inflight_indexing.discard)
        result = await asyncio.shield(task)
        if not result.ok:
            logger.warning(
                "record not indexed host=%s uri=%s stage=%s",
                host_url,
                listed.uri,
                result.error.stage,
            )

    async def _record_failure(self, host_url: str, message: str) -> None:
        try:
            await self.registry.record_scan_failure(host_url, message)
        except Exception:
            logger.exception("could not record pds scan failure host=%s", host_url)


def _describe_failure(exc: BaseException, timeout_seconds: float) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return f"scan timed out after {timeout_seconds:.1f}s"
    message = str(exc) or exc.__class__.__name__
    return truncate_text(f"{exc.__class__.__name__}: {message}", MAX_ERROR_LENGTH)
