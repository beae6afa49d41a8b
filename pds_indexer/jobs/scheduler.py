from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Protocol

from opentelemetry import trace

from pds_indexer.core.config import Settings, get_settings
from pds_indexer.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from pds_indexer.schemas.pds import PDSEntry, ScanResult
from pds_indexer.services.database import get_database
from pds_indexer.services.runtime import build_runtime

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class ClaimingRegistry(Protocol):
    async def claim_due_for_scan(self, limit: int, *, lease_seconds: float) -> list[PDSEntry]: ...

    async def refresh_connectivity(self) -> int: ...


class BatchScanner(Protocol):
    async def scan_many(self, host_urls: list[str], concurrency: int = 1) -> dict[str, ScanResult | Exception]: ...


def batch_lease_seconds(settings: Settings) -> float:
    # Hosts queued behind the concurrency limit must stay leased until their turn.
    concurrency = max(1, settings.scan_concurrency)
    waves = -(-max(1, settings.scan_batch_size) // concurrency)
    return settings.scan_timeout_seconds * waves


async def run_scheduler_cycle(
    registry: ClaimingRegistry,
    scanner: BatchScanner,
    settings: Settings,
) -> dict[str, ScanResult | Exception]:
    """Claim one batch of due hosts and scan it; returns per-host outcomes."""
    with tracer.start_as_current_span("scheduler.cycle") as span:
        entries = await registry.claim_due_for_scan(
            settings.scan_batch_size,
            lease_seconds=batch_lease_seconds(settings),
        )
        span.set_attribute("scheduler.claimed", len(entries))
        if not entries:
            return {}

        outcomes = await scanner.scan_many([entry.host_url for entry in entries], settings.scan_concurrency)
        failed = sum(1 for outcome in outcomes.values() if isinstance(outcome, Exception))
        span.set_attribute("scheduler.failed", failed)
        logger.info("scan batch finished hosts=%s failed=%s", len(outcomes), failed)
        return outcomes


async def run_scheduler() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    telemetry_runtime = setup_telemetry(settings, component="scheduler")
    runtime = build_runtime(settings, get_database())

    backoff = settings.scheduler_interval_seconds
    last_connectivity_refresh_at = 0.0

    try:
        while True:
            try:
                now = time.monotonic()
                if now - last_connectivity_refresh_at >= settings.connectivity_refresh_interval_seconds:
                    updated = await runtime.registry.refresh_connectivity()
                    if updated:
                        logger.info("relay connectivity changed for hosts: %s", updated)
                    last_connectivity_refresh_at = now

                outcomes = await run_scheduler_cycle(runtime.registry, runtime.scanner, settings)
                backoff = settings.scheduler_interval_seconds
                if not outcomes:
                    await asyncio.sleep(settings.scheduler_interval_seconds)
            except Exception as exc:  # pragma: no cover - loop robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("scheduler iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await runtime.close()
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_scheduler())


if __name__ == "__main__":
    main()
