from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from fakes import (
    FakeRegistry,
    InMemoryGraphStore,
    InMemoryRecordStore,
    InMemorySearchIndex,
    eprint_value,
    review_value,
)
from pds_indexer.core.config import Settings
from pds_indexer.schemas.pds import ScanResult
from pds_indexer.schemas.records import EPRINT_COLLECTION, REVIEW_COLLECTION
from pds_indexer.services.indexing import IndexingSaga
from pds_indexer.services.scanner import PDSScanError, PDSScanner
from pds_indexer.services.xrpc import XrpcClient

HOST = "https://pds.example.com"
Handler = Callable[[httpx.Request], httpx.Response]


def _records_response(did: str, collection: str, values: list[dict[str, Any]]) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "records": [
                {"uri": f"at://{did}/{collection}/r{index}", "cid": f"bafy{did[-1]}{index}", "value": value}
                for index, value in enumerate(values)
            ]
        },
    )


def _pds_handler(repos: dict[str, dict[str, list[dict[str, Any]]]]) -> Handler:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("com.atproto.sync.listRepos"):
            return httpx.Response(200, json={"repos": [{"did": did} for did in repos]})
        did = request.url.params["repo"]
        collection = request.url.params["collection"]
        values = repos.get(did, {}).get(collection)
        if values is None:
            return httpx.Response(400, json={"error": "InvalidRequest"})
        return _records_response(did, collection, values)

    return handler


def _scan(
    handler: Handler,
    host_urls: list[str],
    *,
    graph: InMemoryGraphStore | None = None,
    settings: Settings | None = None,
    registry: FakeRegistry | None = None,
) -> tuple[dict[str, ScanResult | Exception], FakeRegistry, InMemoryRecordStore, InMemoryGraphStore]:
    registry = registry or FakeRegistry()
    relational = InMemoryRecordStore()
    graph = graph or InMemoryGraphStore()
    saga = IndexingSaga(relational, InMemorySearchIndex(), graph)

    async def run() -> dict[str, ScanResult | Exception]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            scanner = PDSScanner(registry, saga, XrpcClient(client=http_client), settings or Settings())
            return await scanner.scan_many(host_urls, concurrency=2)

    return asyncio.run(run()), registry, relational, graph


def test_scan_host_indexes_records_and_records_success() -> None:
    handler = _pds_handler(
        {
            "did:plc:a": {EPRINT_COLLECTION: [eprint_value()], REVIEW_COLLECTION: [review_value()]},
            "did:plc:b": {},
        }
    )

    outcomes, registry, relational, _ = _scan(handler, [HOST])

    result = outcomes[HOST]
    assert isinstance(result, ScanResult)
    assert result.has_records is True
    assert result.record_count == 2
    assert result.repos_scanned == 2
    assert result.next_scan_hours == 24.0
    assert registry.started == [HOST]
    assert registry.successes[HOST] == result
    assert len(relational.rows) == 2


def test_scan_host_without_records_uses_long_backoff() -> None:
    outcomes, registry, _, _ = _scan(_pds_handler({"did:plc:a": {}}), [HOST])

    result = outcomes[HOST]
    assert isinstance(result, ScanResult)
    assert result.has_records is False
    assert result.record_count == 0
    assert result.next_scan_hours == 168.0
    assert registry.successes[HOST].has_records is False


def test_repo_listing_unsupported_counts_as_empty_host() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(501, json={"error": "MethodNotImplemented"})

    outcomes, registry, _, _ = _scan(handler, [HOST])

    assert isinstance(outcomes[HOST], ScanResult)
    assert registry.successes[HOST].record_count == 0
    assert HOST not in registry.failures


def test_undecodable_records_are_skipped_and_counted() -> None:
    handler = _pds_handler(
        {"did:plc:a": {EPRINT_COLLECTION: [eprint_value(title=""), eprint_value(), {"nonsense": True}]}}
    )

    outcomes, _, relational, _ = _scan(handler, [HOST])

    result = outcomes[HOST]
    assert isinstance(result, ScanResult)
    assert result.record_count == 1
    assert result.skipped_records == 2
    assert len(relational.rows) == 1


def test_scan_failure_is_recorded_and_raised() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    outcomes, registry, _, _ = _scan(handler, [HOST])

    assert isinstance(outcomes[HOST], PDSScanError)
    assert HOST not in registry.successes
    assert len(registry.failures[HOST]) == 1
    assert "HTTP 500" in registry.failures[HOST][0]


def test_record_cap_stops_the_scan() -> None:
    handler = _pds_handler({"did:plc:a": {EPRINT_COLLECTION: [eprint_value() for _ in range(5)]}})

    outcomes, _, relational, _ = _scan(handler, [HOST], settings=Settings(max_records_per_pds=3))

    result = outcomes[HOST]
    assert isinstance(result, ScanResult)
    assert result.record_count == 3
    assert len(relational.rows) == 3


def test_scan_timeout_is_recorded_as_failure() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json={"repos": []})

    outcomes, registry, _, _ = _scan(handler, [HOST], settings=Settings(scan_timeout_ms=50))

    assert isinstance(outcomes[HOST], PDSScanError)
    assert "timed out" in registry.failures[HOST][0]


def test_scan_many_isolates_host_failures() -> None:
    good_handler = _pds_handler({"did:plc:a": {EPRINT_COLLECTION: [eprint_value()]}})

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "broken.example.com":
            return httpx.Response(502)
        return good_handler(request)

    outcomes, registry, _, _ = _scan(handler, [HOST, "https://broken.example.com"])

    assert isinstance(outcomes[HOST], ScanResult)
    assert isinstance(outcomes["https://broken.example.com"], PDSScanError)
    assert HOST in registry.successes
    assert "https://broken.example.com" in registry.failures


def test_failed_graph_stage_rolls_back_but_scan_still_succeeds() -> None:
    handler = _pds_handler({"did:plc:a": {EPRINT_COLLECTION: [eprint_value(keywords=["k1", "k2"])]}})
    graph = InMemoryGraphStore(fail_on_tag="k2")

    outcomes, registry, relational, graph = _scan(handler, [HOST], graph=graph)

    result = outcomes[HOST]
    assert isinstance(result, ScanResult)
    assert result.has_records is True
    assert result.record_count == 1
    assert registry.successes[HOST].record_count == 1
    assert relational.rows == {}
    assert graph.tags == set()


def test_scan_identity_scans_one_repository() -> None:
    handler = _pds_handler(
        {
            "did:plc:a": {EPRINT_COLLECTION: [eprint_value()]},
            "did:plc:b": {EPRINT_COLLECTION: [eprint_value(), eprint_value()]},
        }
    )
    relational = InMemoryRecordStore()
    saga = IndexingSaga(relational, InMemorySearchIndex(), InMemoryGraphStore())

    async def run() -> int:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            scanner = PDSScanner(FakeRegistry(), saga, XrpcClient(client=http_client), Settings())
            return await scanner.scan_identity(HOST, "did:plc:b")

    assert asyncio.run(run()) == 2
    assert all(uri.startswith("at://did:plc:b/") for uri in relational.rows)


def test_scan_identity_skips_failing_collections() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        collection = request.url.params["collection"]
        if collection == EPRINT_COLLECTION:
            return httpx.Response(500, text="boom")
        if collection == REVIEW_COLLECTION:
            return _records_response("did:plc:b", collection, [review_value()])
        raise httpx.ConnectError("connection refused", request=request)

    relational = InMemoryRecordStore()
    saga = IndexingSaga(relational, InMemorySearchIndex(), InMemoryGraphStore())

    async def run() -> int:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            scanner = PDSScanner(FakeRegistry(), saga, XrpcClient(client=http_client), Settings())
            return await scanner.scan_identity(HOST, "did:plc:b")

    assert asyncio.run(run()) == 1
    assert list(relational.rows) == [f"at://did:plc:b/{REVIEW_COLLECTION}/r0"]


def test_scan_identity_timeout_returns_partial_count() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json={"records": []})

    async def run() -> int:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            saga = IndexingSaga(InMemoryRecordStore(), InMemorySearchIndex(), InMemoryGraphStore())
            scanner = PDSScanner(FakeRegistry(), saga, XrpcClient(client=http_client), Settings(scan_timeout_ms=50))
            return await scanner.scan_identity(HOST, "did:plc:b")

    assert asyncio.run(run()) == 0


def test_failure_counter_reaches_threshold_after_repeated_failures() -> None:
    registry = FakeRegistry(failure_threshold=5)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    for _ in range(5):
        outcomes, _, _, _ = _scan(handler, [HOST], registry=registry)
        assert isinstance(outcomes[HOST], PDSScanError)

    assert len(registry.failures[HOST]) == 5

    outcomes, _, _, _ = _scan(_pds_handler({"did:plc:a": {}}), [HOST], registry=registry)
    assert isinstance(outcomes[HOST], ScanResult)
    assert HOST not in registry.failures


@pytest.mark.parametrize("status_code", [400, 404])
def test_missing_collection_is_treated_as_empty(status_code: int) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("listRepos"):
            return httpx.Response(200, json={"repos": [{"did": "did:plc:a"}]})
        return httpx.Response(status_code)

    outcomes, registry, _, _ = _scan(handler, [HOST])

    assert isinstance(outcomes[HOST], ScanResult)
    assert HOST not in registry.failures
