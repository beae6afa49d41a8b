from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from pds_indexer.core.config import Settings, get_settings
from pds_indexer.services.database import Database, get_database
from pds_indexer.services.indexing import IndexingSaga
from pds_indexer.services.registry import PDSRegistry
from pds_indexer.services.relay import RelayHostTracker
from pds_indexer.services.scanner import PDSScanner
from pds_indexer.services.stores import PostgresGraphStore, PostgresRecordStore, PostgresSearchIndex
from pds_indexer.services.xrpc import HostPacer, XrpcClient


@dataclass(slots=True)
class IndexerRuntime:
    database: Database
    relay: RelayHostTracker
    registry: PDSRegistry
    records: PostgresRecordStore
    saga: IndexingSaga
    xrpc: XrpcClient
    scanner: PDSScanner

    async def close(self) -> None:
        await self.xrpc.close()
        await self.database.close()


def build_runtime(settings: Settings, database: Database) -> IndexerRuntime:
    relay = RelayHostTracker(settings)
    registry = PDSRegistry(database, relay, settings)
    records = PostgresRecordStore(database)
    saga = IndexingSaga(records, PostgresSearchIndex(database), PostgresGraphStore(database))
    xrpc = XrpcClient(
        timeout_seconds=settings.pds_request_timeout_seconds,
        pacer=HostPacer(settings.min_request_interval_seconds),
    )
    scanner = PDSScanner(registry, saga, xrpc, settings)
    return IndexerRuntime(
        database=database,
        relay=relay,
        registry=registry,
        records=records,
        saga=saga,
        xrpc=xrpc,
        scanner=scanner,
    )


@lru_cache
def get_runtime() -> IndexerRuntime:
    return build_runtime(get_settings(), get_database())


def get_registry() -> PDSRegistry:
    return get_runtime().registry


def get_scanner() -> PDSScanner:
    return get_runtime().scanner


def get_saga() -> IndexingSaga:
    return get_runtime().saga


def get_record_store() -> PostgresRecordStore:
    return get_runtime().records
