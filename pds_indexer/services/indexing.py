"""Multi-store indexing saga.

One domain record is written to the relational store, the search index and
the graph store in that order. There is no shared transaction: each stage
that completes is appended to an in-memory ledger, and a failure at any
stage compensates the ledger in reverse order before the call returns.
Compensation is best-effort and always visits every recorded stage.

Writes are idempotent upserts keyed by record uri, so a crash that leaves a
partially indexed record is repaired by the next re-index of that uri.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
from typing import Any

from opentelemetry import trace

from pds_indexer.core.urls import rkey_or_passthrough
from pds_indexer.schemas.records import (
    EndorsementRecord,
    EprintRecord,
    FieldRef,
    RecordMetadata,
    ReviewRecord,
)
from pds_indexer.services.stores import GraphStore, RelationalStore, SearchDocument, SearchIndex, StoreError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

STAGE_RELATIONAL = "relational"
STAGE_SEARCH = "search"
STAGE_GRAPH = "graph"
STAGE_PREPARE = "prepare"
FIELD_NODE_KIND = "field"
MAX_LOGGED_KEYWORDS = 5

_STAGE_PLANS: dict[str, tuple[str, ...]] = {
    "eprint": (STAGE_RELATIONAL, STAGE_SEARCH, STAGE_GRAPH),
    "review": (STAGE_RELATIONAL, STAGE_SEARCH),
    "endorsement": (STAGE_RELATIONAL, STAGE_GRAPH),
}

IndexableRecord = EprintRecord | ReviewRecord | EndorsementRecord


class RecordIndexError(Exception):
    """Typed saga failure naming the stage that failed."""

    def __init__(self, stage: str, uri: str, cause: BaseException | None = None, message: str | None = None) -> None:
        detail = message or (str(cause) if cause is not None else "indexing failed")
        super().__init__(f"{stage} stage failed for {uri}: {detail}")
        self.stage = stage
        self.uri = uri
        self.cause = cause


@dataclass(frozen=True, slots=True)
class Ok:
    value: Any = None

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Err:
    error: RecordIndexError

    @property
    def ok(self) -> bool:
        return False


IndexResult = Ok | Err


class KeyedLock:
    """Per-key asyncio locks; a key's lock is dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
            self._holders[key] = 0
        self._holders[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]


class IndexingSaga:
    def __init__(
        self,
        relational: RelationalStore,
        search: SearchIndex,
        graph: GraphStore,
        *,
        serialize_same_uri: bool = True,
    ) -> None:
        self.relational = relational
        self.search = search
        self.graph = graph
        self._uri_locks = KeyedLock() if serialize_same_uri else None

    async def index_record(self, record: IndexableRecord, metadata: RecordMetadata) -> IndexResult:
        with tracer.start_as_current_span("indexing.index_record") as span:
            span.set_attribute("record.uri", metadata.uri)
            span.set_attribute("record.kind", record.kind)
            if self._uri_locks is None:
                result = await self._index(record, metadata)
            else:
                async with self._uri_locks.hold(metadata.uri):
                    result = await self._index(record, metadata)
            if isinstance(result, Err):
                span.set_attribute("indexing.stage", result.error.stage)
                span.record_exception(result.error)
            return result

    async def delete_record(self, uri: str) -> IndexResult:
        """Forward, best-effort delete from every store.

        Every store is attempted. A search or graph failure is logged and
        skipped; the relational store stays the source of truth, so a leftover
        search document or tag is repaired by later re-indexing. Only an
        unexpected relational error yields ``Err``.
        """
        with tracer.start_as_current_span("indexing.delete_record") as span:
            span.set_attribute("record.uri", uri)
            failed: list[str] = []
            error: RecordIndexError | None = None
            try:
                await self.relational.delete(uri)
            except StoreError as exc:
                failed.append(STAGE_RELATIONAL)
                logger.warning("record delete failed uri=%s stage=%s error=%s", uri, STAGE_RELATIONAL, exc)
            except Exception as exc:
                failed.append(STAGE_RELATIONAL)
                error = RecordIndexError(STAGE_RELATIONAL, uri, exc)
                logger.exception("record delete failed unexpectedly uri=%s stage=%s", uri, STAGE_RELATIONAL)

            try:
                await self.search.delete_document(uri)
            except Exception as exc:
                failed.append(STAGE_SEARCH)
                logger.warning(
                    "record delete failed; relational store remains authoritative uri=%s stage=%s error=%s",
                    uri,
                    STAGE_SEARCH,
                    exc,
                )

            try:
                removed = await self.graph.remove_all_tags_for_record(uri)
                if removed:
                    logger.debug("removed record tags uri=%s removed=%s", uri, removed)
            except Exception as exc:
                failed.append(STAGE_GRAPH)
                logger.warning(
                    "record delete failed; relational store remains authoritative uri=%s stage=%s error=%s",
                    uri,
                    STAGE_GRAPH,
                    exc,
                )

            logger.info("deleted record from indexes uri=%s failed_stages=%s", uri, failed)
            if error is not None:
                span.record_exception(error)
                return Err(error)
            return Ok()

    async def _index(self, record: IndexableRecord, metadata: RecordMetadata) -> IndexResult:
        ledger: list[str] = []
        stage = STAGE_PREPARE
        try:
            record = await self._resolve_field_labels(record)
            for stage in _STAGE_PLANS[record.kind]:
                if stage == STAGE_RELATIONAL:
                    await self.relational.upsert(record, metadata)
                    ledger.append(stage)
                elif stage == STAGE_SEARCH:
                    await self.search.index(self._build_search_document(record, metadata))
                    ledger.append(stage)
                else:
                    await self._write_tags(record, metadata, ledger)
        except Exception as exc:
            error = RecordIndexError(stage, metadata.uri, exc)
            logger.error(
                "indexing stage failed; rolling back uri=%s stage=%s error=%s",
                metadata.uri,
                stage,
                exc,
                exc_info=exc,
            )
            await self._rollback(metadata.uri, ledger)
            return Err(error)

        logger.info("indexed record uri=%s kind=%s stages=%s", metadata.uri, record.kind, ledger)
        return Ok()

    async def _write_tags(self, record: IndexableRecord, metadata: RecordMetadata, ledger: list[str]) -> None:
        if isinstance(record, EprintRecord):
            candidates: list[str] = list(record.keywords)
        elif isinstance(record, EndorsementRecord):
            candidates = list(record.contributions)
        else:
            candidates = []

        tags = [candidate.strip() for candidate in candidates if candidate.strip()]
        skipped = [candidate for candidate in candidates if not candidate.strip()]
        if skipped:
            logger.warning(
                "skipped blank tags uri=%s skipped=%s sample=%s",
                metadata.uri,
                len(skipped),
                skipped[:MAX_LOGGED_KEYWORDS],
            )
        if not tags:
            return

        # Entered before the first write so a partial tag set is compensated too.
        ledger.append(STAGE_GRAPH)
        for tag in tags:
            await self.graph.add_tag(metadata.uri, tag, record.author_did)
        logger.debug("indexed record tags uri=%s tags=%s", metadata.uri, len(tags))

    async def _rollback(self, uri: str, ledger: list[str]) -> None:
        stages = list(reversed(ledger))
        if not stages:
            logger.info("rollback complete uri=%s stages=[] failed=[]", uri)
            return

        failed: list[str] = []
        for stage in stages:
            try:
                if stage == STAGE_GRAPH:
                    removed = await self.graph.remove_all_tags_for_record(uri)
                    logger.debug("rolled back graph tags uri=%s removed=%s", uri, removed)
                elif stage == STAGE_SEARCH:
                    await self.search.delete_document(uri)
                    logger.debug("rolled back search document uri=%s", uri)
                else:
                    await self.relational.delete(uri)
                    logger.debug("rolled back relational record uri=%s", uri)
            except Exception as exc:
                failed.append(stage)
                logger.error("rollback failed uri=%s stage=%s error=%s", uri, stage, exc, exc_info=exc)

        logger.info("rollback complete uri=%s stages=%s failed=%s", uri, stages, failed)

    async def _resolve_field_labels(self, record: IndexableRecord) -> IndexableRecord:
        if not isinstance(record, EprintRecord) or not record.fields:
            return record

        normalized = [
            FieldRef(uri=field.uri, label=field.label, id=field.id or rkey_or_passthrough(field.uri))
            for field in record.fields
        ]
        try:
            labels = await self.graph.batch_resolve_labels([field.id or field.uri for field in normalized], FIELD_NODE_KIND)
        except Exception as exc:
            logger.warning(
                "field label lookup failed; keeping identifiers uri=%s fields=%s error=%s",
                record.uri,
                len(normalized),
                exc,
            )
            labels = {}

        resolved = [
            field.model_copy(update={"label": labels.get(field.id or "") or field.label or field.id or field.uri})
            for field in normalized
        ]
        return record.model_copy(update={"fields": resolved})

    @staticmethod
    def _build_search_document(record: IndexableRecord, metadata: RecordMetadata) -> SearchDocument:
        if isinstance(record, EprintRecord):
            return SearchDocument(
                uri=metadata.uri,
                kind=record.kind,
                author_did=record.author_did,
                author_name=record.primary_author().name,
                title=record.title,
                body=record.abstract,
                keywords=[keyword.strip() for keyword in record.keywords if keyword.strip()],
                field_labels=[field.label for field in record.fields if field.label],
                created_at=record.created_at,
                indexed_at=metadata.indexed_at,
            )
        if isinstance(record, ReviewRecord):
            return SearchDocument(
                uri=metadata.uri,
                kind=record.kind,
                author_did=record.author_did,
                title="",
                body=record.content,
                eprint_uri=record.eprint_uri,
                created_at=record.created_at,
                indexed_at=metadata.indexed_at,
            )
        raise TypeError(f"{record.kind} records are not search indexed")
