from __future__ import annotations

import asyncio
import os
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import httpx
import pytest

from fakes import InMemoryGraphStore, InMemorySearchIndex, eprint_value
from pds_indexer.core.config import Settings
from pds_indexer.schemas.pds import ScanResult
from pds_indexer.schemas.records import EPRINT_COLLECTION
from pds_indexer.services.database import Database
from pds_indexer.services.indexing import IndexingSaga
from pds_indexer.services.registry import PDSRegistry
from pds_indexer.services.relay import RelayHostTracker
from pds_indexer.services.scanner import PDSScanError, PDSScanner
from pds_indexer.services.stores import PostgresRecordStore
from pds_indexer.services.xrpc import XrpcClient

MIGRATION = Path(__file__).resolve().parents[1] / "migrations" / "0001_pds_indexer.sql"
RELAY_HOSTS = ["relayed.example.com"]

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("PDSI_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require PDSI_DATABASE_URL or DATABASE_URL")
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    _run(_prepare_schema(database_url))


def _relay_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"hosts": [{"hostname": host, "status": "active"} for host in RELAY_HOSTS]})


async def _with_registry(database_url: str, body: Any, **settings_overrides: Any) -> Any:
    settings = Settings(database_url=database_url, **settings_overrides)
    database = Database(database_url, min_pool_size=1, max_pool_size=4)
    async with httpx.AsyncClient(transport=httpx.MockTransport(_relay_handler)) as relay_client:
        registry = PDSRegistry(database, RelayHostTracker(settings, client=relay_client), settings)
        try:
            return await body(registry, database, settings)
        finally:
            await database.close()


def test_register_is_idempotent_and_raises_priority(database_url: str) -> None:
    async def body(registry: PDSRegistry, database: Database, settings: Settings) -> None:
        first = await registry.register("https://PDS.one.example/", "did-mention")
        second = await registry.register("https://pds.one.example", "user-registration", priority=5)
        third = await registry.register("pds.one.example", "manual", priority=1)

        assert first.host_url == second.host_url == third.host_url == "https://pds.one.example"
        assert first.status == "pending"
        assert third.scan_priority == 5
        assert third.discovered_at == first.discovered_at
        stats = await registry.stats()
        assert stats.total == 1

    _run(_with_registry(database_url, body))


def test_due_for_scan_excludes_relayed_quarantined_and_future_hosts(database_url: str) -> None:
    async def body(registry: PDSRegistry, database: Database, settings: Settings) -> None:
        await registry.register("https://relayed.example.com", "relay-listing")
        await registry.register("https://low.example", "manual")
        await registry.register("https://high.example", "user-registration", priority=10)
        await registry.register("https://future.example", "manual")
        await registry.register("https://broken.example", "manual")

        await _execute(database_url, "update pds_registry set next_scan_at = now() + interval '1 day' where host_url = $1", "https://future.example")
        await _execute(database_url, "update pds_registry set consecutive_failures = 5 where host_url = $1", "https://broken.example")

        due = await registry.due_for_scan(10)
        assert [entry.host_url for entry in due] == ["https://high.example", "https://low.example"]
        assert all(not entry.is_relay_connected for entry in due)

        claimed = await registry.claim_due_for_scan(1, lease_seconds=60)
        assert [entry.host_url for entry in claimed] == ["https://high.example"]
        assert claimed[0].claimed_until is not None
        again = await registry.claim_due_for_scan(10, lease_seconds=60)
        assert [entry.host_url for entry in again] == ["https://low.example"]
        assert await registry.due_for_scan(10) == []

    _run(_with_registry(database_url, body))


def test_failures_quarantine_then_success_recovers(database_url: str) -> None:
    async def body(registry: PDSRegistry, database: Database, settings: Settings) -> None:
        host = "https://flaky.example"
        await registry.register(host, "manual")

        for attempt in range(1, 6):
            entry = await registry.record_scan_failure(host, f"attempt {attempt} failed " + "x" * 600)
            assert entry.consecutive_failures == attempt
            assert entry.last_error is not None and len(entry.last_error) <= 500
            assert entry.next_scan_at is not None
        assert entry.status == "unreachable"
        await _execute(database_url, "update pds_registry set next_scan_at = now() where host_url = $1", host)
        assert await registry.due_for_scan(10) == []
        assert (await registry.stats()).quarantined == 1

        recovered = await registry.record_scan_success(host, ScanResult(has_records=True, record_count=3, next_scan_hours=24))
        assert recovered.status == "active"
        assert recovered.consecutive_failures == 0
        assert recovered.last_error is None
        assert recovered.record_count == 3

        reset_host = "https://reset.example"
        await registry.register(reset_host, "manual")
        for _ in range(5):
            await registry.record_scan_failure(reset_host, "down")
        reset = await registry.reset_failures(reset_host)
        assert reset.status == "pending"
        assert [entry.host_url for entry in await registry.due_for_scan(10)] == [reset_host]

    _run(_with_registry(database_url, body))


def test_refresh_connectivity_updates_only_changed_hosts(database_url: str) -> None:
    async def body(registry: PDSRegistry, database: Database, settings: Settings) -> None:
        await registry.register("https://relayed.example.com", "manual")
        await registry.register("https://solo.example", "manual")
        await _execute(
            database_url,
            "update pds_registry set is_relay_connected = true where host_url = $1",
            "https://solo.example",
        )

        assert await registry.refresh_connectivity() == 1
        solo = await registry.get("https://solo.example")
        assert solo is not None and solo.is_relay_connected is False
        assert await registry.refresh_connectivity() == 0

    _run(_with_registry(database_url, body))


def test_end_to_end_scan_updates_registry_and_records(database_url: str) -> None:
    def pds_handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("listRepos"):
            return httpx.Response(200, json={"repos": [{"did": "did:plc:a"}]})
        if request.url.params["collection"] != EPRINT_COLLECTION:
            return httpx.Response(400)
        return httpx.Response(
            200,
            json={
                "records": [
                    {"uri": f"at://did:plc:a/{EPRINT_COLLECTION}/ok", "cid": "bafyok", "value": eprint_value()},
                    {
                        "uri": f"at://did:plc:a/{EPRINT_COLLECTION}/tagfail",
                        "cid": "bafyfail",
                        "value": eprint_value(keywords=["boom"]),
                    },
                ]
            },
        )

    async def body(registry: PDSRegistry, database: Database, settings: Settings) -> None:
        host = "https://scan.example"
        await registry.register(host, "user-registration")
        records = PostgresRecordStore(database)
        search = InMemorySearchIndex()
        saga = IndexingSaga(records, search, InMemoryGraphStore(fail_on_tag="boom"))
        async with httpx.AsyncClient(transport=httpx.MockTransport(pds_handler)) as pds_client:
            scanner = PDSScanner(registry, saga, XrpcClient(client=pds_client), settings)
            result = await scanner.scan_host(host)

        assert result.record_count == 2
        entry = await registry.get(host)
        assert entry is not None
        assert entry.status == "active"
        assert entry.has_records is True
        assert entry.claimed_until is None
        assert entry.scan_started_at is not None
        assert await records.get(f"at://did:plc:a/{EPRINT_COLLECTION}/ok") is not None
        assert await records.get(f"at://did:plc:a/{EPRINT_COLLECTION}/tagfail") is None
        assert f"at://did:plc:a/{EPRINT_COLLECTION}/ok" in search.documents
        assert f"at://did:plc:a/{EPRINT_COLLECTION}/tagfail" not in search.documents
        assert host not in [due.host_url for due in await registry.due_for_scan(10)]

        await registry.register("https://down.example", "manual")

        def down_handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        async with httpx.AsyncClient(transport=httpx.MockTransport(down_handler)) as down_client:
            scanner = PDSScanner(registry, saga, XrpcClient(client=down_client), settings)
            with pytest.raises(PDSScanError):
                await scanner.scan_host("https://down.example")
        down = await registry.get("https://down.example")
        assert down is not None
        assert down.consecutive_failures == 1
        assert down.status == "pending"
        assert down.last_error is not None and "HTTP 503" in down.last_error

    _run(_with_registry(database_url, body))


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


async def _execute(database_url: str, query: str, *args: Any) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(query, *args)
    finally:
        await conn.close()


async def _prepare_schema(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(MIGRATION.read_text(encoding="utf-8"))
        await conn.execute(
            """
            truncate table
              pds_registry,
              indexed_records,
              search_documents,
              graph_nodes,
              record_tags
            """
        )
    finally:
        await conn.close()
