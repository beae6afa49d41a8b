from __future__ import annotations

import logging
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from pds_indexer.core.config import Settings
from pds_indexer.core.urls import hostname_of, normalize_host_url, truncate_text
from pds_indexer.schemas.pds import DiscoverySource, PDSEntry, RegistryStats, ScanResult
from pds_indexer.services.database import Database
from pds_indexer.services.relay import RelayHostTracker, RelayUnavailableError

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500
MAX_FAILURE_BACKOFF_EXPONENT = 4
_ENTRY_COLUMNS = """
  host_url,
  discovered_at,
  discovery_source,
  status,
  last_scan_at,
  next_scan_at,
  scan_started_at,
  claimed_until,
  has_records,
  record_count,
  consecutive_failures,
  scan_priority,
  last_error,
  is_relay_connected,
  updated_at
"""


class RegistryError(Exception):
    """Base registry error."""


class RegistryNotFoundError(RegistryError):
    """Raised when a host is not present in the registry."""


class RegistryValidationError(RegistryError):
    """Raised when a host url cannot be normalized."""


class PDSRegistry:
    """Durable catalog of known PDS hosts and their scan state.

    State machine::

        pending --success, records--> active
        pending --success, none-----> no-records
        {pending, active, no-records} --failure x threshold--> unreachable
        unreachable --success--> active | no-records

    Quarantine is soft: hosts at or above the failure threshold are skipped
    by scheduling but recover once a successful scan (or a manual reset)
    clears the counter.
    """

    def __init__(self, database: Database, relay: RelayHostTracker, settings: Settings) -> None:
        self.database = database
        self.relay = relay
        self.failure_threshold = max(1, settings.consecutive_failure_threshold)
        self.default_backoff_hours = max(0.0, settings.default_backoff_hours)

    async def register(
        self,
        host_url: str,
        source: DiscoverySource,
        *,
        priority: int | None = None,
    ) -> PDSEntry:
        normalized = self._normalize(host_url)
        relay_connected = await self.relay.is_connected(normalized)

        pool = await self.database.get_pool()
        row = await pool.fetchrow(
            f"""
            insert into pds_registry (host_url, discovery_source, status, is_relay_connected, scan_priority)
            values ($1, $2, 'pending', $3, $4)
            on conflict (host_url) do update
            set
              discovery_source = excluded.discovery_source,
              is_relay_connected = excluded.is_relay_connected,
              scan_priority = greatest(pds_registry.scan_priority, excluded.scan_priority),
              updated_at = now()
            returning {_ENTRY_COLUMNS}
            """,
            normalized,
            source,
            relay_connected,
            priority or 0,
        )
        logger.info(
            "registered pds host=%s source=%s relay_connected=%s",
            normalized,
            source,
            relay_connected,
        )
        return self._row_to_entry(row)

    async def due_for_scan(self, limit: int) -> list[PDSEntry]:
        pool = await self.database.get_pool()
        rows = await pool.fetch(
            f"""
            select {_ENTRY_COLUMNS}
            from pds_registry
            where is_relay_connected = false
              and consecutive_failures < $2
              and (next_scan_at is null or next_scan_at <= now())
              and (claimed_until is null or claimed_until <= now())
            order by scan_priority desc, next_scan_at asc nulls first
            limit $1
            """,
            self._bounded_limit(limit),
            self.failure_threshold,
        )
        return [self._row_to_entry(row) for row in rows]

    async def claim_due_for_scan(self, limit: int, *, lease_seconds: float) -> list[PDSEntry]:
        """Select due hosts and lease them in one statement.

        Concurrent controllers skip rows another controller has locked or
        leased, so a host is scanned by at most one controller per lease.
        """
        pool = await self.database.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    with due as (
                      select host_url
                      from pds_registry
                      where is_relay_connected = false
                        and consecutive_failures < $2
                        and (next_scan_at is null or next_scan_at <= now())
                        and (claimed_until is null or claimed_until <= now())
                      order by scan_priority desc, next_scan_at asc nulls first
                      limit $1
                      for update skip locked
                    )
                    update pds_registry r
                    set
                      claimed_until = now() + ($3::double precision * interval '1 second'),
                      updated_at = now()
                    from due
                    where r.host_url = due.host_url
                    returning {_prefixed_columns("r")}
                    """,
                    self._bounded_limit(limit),
                    self.failure_threshold,
                    max(1.0, float(lease_seconds)),
                )
        entries = [self._row_to_entry(row) for row in rows]
        entries.sort(key=_schedule_sort_key)
        return entries

    async def mark_scan_started(self, host_url: str, *, lease_seconds: float) -> None:
        pool = await self.database.get_pool()
        status = await pool.execute(
            """
            update pds_registry
            set
              scan_started_at = now(),
              claimed_until = now() + ($2::double precision * interval '1 second'),
              updated_at = now()
            where host_url = $1
            """,
            host_url,
            max(1.0, float(lease_seconds)),
        )
        self._require_updated(status, host_url)

    async def record_scan_success(self, host_url: str, result: ScanResult) -> PDSEntry:
        next_scan_hours = result.next_scan_hours if result.next_scan_hours is not None else self.default_backoff_hours
        pool = await self.database.get_pool()
        row = await pool.fetchrow(
            f"""
            update pds_registry
            set
              status = case when $2 then 'active' else 'no-records' end,
              last_scan_at = now(),
              next_scan_at = now() + ($4::double precision * interval '1 hour'),
              has_records = $2,
              record_count = $3,
              consecutive_failures = 0,
              last_error = null,
              claimed_until = null,
              updated_at = now()
            where host_url = $1
            returning {_ENTRY_COLUMNS}
            """,
            host_url,
            result.has_records,
            max(0, result.record_count),
            max(0.0, float(next_scan_hours)),
        )
        if row is None:
            raise RegistryNotFoundError(f"pds not registered: {host_url}")
        logger.info(
            "pds scan recorded host=%s has_records=%s record_count=%s next_scan_hours=%s",
            host_url,
            result.has_records,
            result.record_count,
            next_scan_hours,
        )
        return self._row_to_entry(row)

    async def record_scan_failure(self, host_url: str, reason: str) -> PDSEntry:
        pool = await self.database.get_pool()
        row = await pool.fetchrow(
            f"""
            update pds_registry
            set
              consecutive_failures = consecutive_failures + 1,
              last_error = $2,
              status = case
                when consecutive_failures + 1 >= $3 then 'unreachable'
                else status
              end,
              next_scan_at = now() + (power(2, least(consecutive_failures, $4)) * interval '1 hour'),
              claimed_until = null,
              updated_at = now()
            where host_url = $1
            returning {_ENTRY_COLUMNS}
            """,
            host_url,
            truncate_text(reason, MAX_ERROR_LENGTH),
            self.failure_threshold,
            MAX_FAILURE_BACKOFF_EXPONENT,
        )
        if row is None:
            raise RegistryNotFoundError(f"pds not registered: {host_url}")
        entry = self._row_to_entry(row)
        logger.warning(
            "pds scan failure recorded host=%s failures=%s status=%s error=%s",
            host_url,
            entry.consecutive_failures,
            entry.status,
            entry.last_error,
        )
        return entry

    async def refresh_connectivity(self) -> int:
        try:
            relay_hosts = await self.relay.list_hosts(force_refresh=True)
        except RelayUnavailableError as exc:
            logger.warning("relay connectivity refresh skipped error=%s", exc)
            return 0

        pool = await self.database.get_pool()
        rows = await pool.fetch("select host_url, is_relay_connected from pds_registry")
        changed_urls: list[str] = []
        changed_flags: list[bool] = []
        for row in rows:
            hostname = hostname_of(row["host_url"])
            if not hostname:
                continue
            connected = hostname in relay_hosts
            if connected != row["is_relay_connected"]:
                changed_urls.append(row["host_url"])
                changed_flags.append(connected)

        if changed_urls:
            await pool.execute(
                """
                update pds_registry r
                set is_relay_connected = c.connected, updated_at = now()
                from unnest($1::text[], $2::boolean[]) as c(host_url, connected)
                where r.host_url = c.host_url
                """,
                changed_urls,
                changed_flags,
            )
        logger.info(
            "relay connectivity refreshed relay_hosts=%s registry_hosts=%s updated=%s",
            len(relay_hosts),
            len(rows),
            len(changed_urls),
        )
        return len(changed_urls)

    async def reset_failures(self, host_url: str) -> PDSEntry:
        normalized = self._normalize(host_url)
        pool = await self.database.get_pool()
        row = await pool.fetchrow(
            f"""
            update pds_registry
            set
              consecutive_failures = 0,
              status = case when status = 'unreachable' then 'pending' else status end,
              last_error = null,
              next_scan_at = now(),
              claimed_until = null,
              updated_at = now()
            where host_url = $1
            returning {_ENTRY_COLUMNS}
            """,
            normalized,
        )
        if row is None:
            raise RegistryNotFoundError(f"pds not registered: {normalized}")
        logger.info("pds failures reset host=%s", normalized)
        return self._row_to_entry(row)

    async def get(self, host_url: str) -> PDSEntry | None:
        normalized = self._normalize(host_url)
        pool = await self.database.get_pool()
        row = await pool.fetchrow(
            f"select {_ENTRY_COLUMNS} from pds_registry where host_url = $1",
            normalized,
        )
        if row is None:
            return None
        return self._row_to_entry(row)

    async def stats(self) -> RegistryStats:
        pool = await self.database.get_pool()
        row = await pool.fetchrow(
            """
            select
              count(*) as total,
              count(*) filter (where status = 'active') as active,
              count(*) filter (where has_records = true) as with_records,
              count(*) filter (where status = 'unreachable') as unreachable,
              count(*) filter (where is_relay_connected = true) as relay_connected,
              count(*) filter (where consecutive_failures >= $1) as quarantined
            from pds_registry
            """,
            self.failure_threshold,
        )
        if row is None:
            return RegistryStats()
        return RegistryStats(**{key: int(row[key] or 0) for key in RegistryStats.model_fields})

    @staticmethod
    def _normalize(host_url: str) -> str:
        try:
            return normalize_host_url(host_url)
        except ValueError as exc:
            raise RegistryValidationError(str(exc)) from exc

    @staticmethod
    def _bounded_limit(limit: int) -> int:
        return max(1, min(int(limit), 1000))

    @staticmethod
    def _require_updated(status: str, host_url: str) -> None:
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        if status.rsplit(" ", maxsplit=1)[-1] == "0":
            raise RegistryNotFoundError(f"pds not registered: {host_url}")

    @staticmethod
    def _row_to_entry(row: asyncpg.Record | dict[str, Any]) -> PDSEntry:
        return PDSEntry.model_validate(dict(row))


def _prefixed_columns(alias: str) -> str:
    columns = [column.strip() for column in _ENTRY_COLUMNS.split(",") if column.strip()]
    return ", ".join(f"{alias}.{column}" for column in columns)


def _schedule_sort_key(entry: PDSEntry) -> tuple[int, int, float]:
    if entry.next_scan_at is None:
        return (-entry.scan_priority, 0, 0.0)
    return (-entry.scan_priority, 1, entry.next_scan_at.timestamp())
