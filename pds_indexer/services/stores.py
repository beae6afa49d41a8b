from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
import json
import re
from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]

from pds_indexer.schemas.records import EndorsementRecord, EprintRecord, RecordMetadata, ReviewRecord
from pds_indexer.services.database import Database, DatabaseUnavailableError

_TAG_WHITESPACE_RE = re.compile(r"\s+")
_RECORD_COLUMNS = "uri, cid, kind, author_did, eprint_uri, pds_url, body, external_ids, created_at, indexed_at"


@dataclass(slots=True)
class SearchDocument:
    uri: str
    kind: str
    author_did: str
    title: str
    body: str
    created_at: datetime
    indexed_at: datetime
    author_name: str | None = None
    keywords: list[str] = field(default_factory=list)
    field_labels: list[str] = field(default_factory=list)
    eprint_uri: str | None = None


class RelationalStore(Protocol):
    async def upsert(self, record: EprintRecord | ReviewRecord | EndorsementRecord, metadata: RecordMetadata) -> None: ...

    async def delete(self, uri: str) -> bool: ...

    async def get(self, uri: str) -> dict[str, Any] | None: ...

    async def query_by_author(self, author_did: str, *, limit: int = 50) -> list[dict[str, Any]]: ...

    async def query_by_external_id(self, scheme: str, value: str) -> dict[str, Any] | None: ...


class SearchIndex(Protocol):
    async def index(self, document: SearchDocument) -> None: ...

    async def delete_document(self, uri: str) -> None: ...


class GraphStore(Protocol):
    async def batch_resolve_labels(self, ids: list[str], kind: str) -> dict[str, str]: ...

    async def add_tag(self, uri: str, tag: str, actor: str) -> None: ...

    async def remove_all_tags_for_record(self, uri: str) -> int: ...


class StoreError(Exception):
    """A store rejected or could not complete a read or write."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except StoreError:
        raise
    except (asyncpg.PostgresError, asyncpg.InterfaceError, DatabaseUnavailableError, OSError) as exc:
        raise StoreError(operation, str(exc) or exc.__class__.__name__) from exc


def normalize_tag(tag: str) -> str:
    return _TAG_WHITESPACE_RE.sub(" ", tag.strip()).lower()


class PostgresRecordStore:
    def __init__(self, database: Database) -> None:
        self.database = database

    async def upsert(self, record: EprintRecord | ReviewRecord | EndorsementRecord, metadata: RecordMetadata) -> None:
        body = record.model_dump(mode="json", exclude={"uri", "cid", "kind", "author_did"})
        external_ids = record.external_ids if isinstance(record, EprintRecord) else {}
        eprint_uri = None if isinstance(record, EprintRecord) else record.eprint_uri
        with store_errors("relational.upsert"):
            pool = await self.database.get_pool()
            # An older observation of the same uri never overwrites a newer one.
            await pool.execute(
                """
                insert into indexed_records (
                  uri, cid, kind, author_did, eprint_uri, pds_url, body, external_ids, created_at, indexed_at
                )
                values ($1, $2, $3, $4, $5, $6, $7::jsonb, $8::jsonb, $9, $10)
                on conflict (uri) do update
                set
                  cid = excluded.cid,
                  kind = excluded.kind,
                  author_did = excluded.author_did,
                  eprint_uri = excluded.eprint_uri,
                  pds_url = excluded.pds_url,
                  body = excluded.body,
                  external_ids = excluded.external_ids,
                  created_at = excluded.created_at,
                  indexed_at = excluded.indexed_at
                where indexed_records.indexed_at <= excluded.indexed_at
                """,
                metadata.uri,
                metadata.cid,
                record.kind,
                record.author_did,
                eprint_uri,
                metadata.pds_url,
                json.dumps(body),
                json.dumps(external_ids),
                record.created_at,
                metadata.indexed_at,
            )

    async def delete(self, uri: str) -> bool:
        with store_errors("relational.delete"):
            pool = await self.database.get_pool()
            status = await pool.execute("delete from indexed_records where uri = $1", uri)
        return _affected_rows(status) > 0

    async def get(self, uri: str) -> dict[str, Any] | None:
        with store_errors("relational.get"):
            pool = await self.database.get_pool()
            row = await pool.fetchrow(f"select {_RECORD_COLUMNS} from indexed_records where uri = $1", uri)
        return self._row_to_dict(row) if row else None

    async def query_by_author(self, author_did: str, *, limit: int = 50) -> list[dict[str, Any]]:
        with store_errors("relational.query_by_author"):
            pool = await self.database.get_pool()
            rows = await pool.fetch(
                f"""
                select {_RECORD_COLUMNS}
                from indexed_records
                where author_did = $1
                order by created_at desc
                limit $2
                """,
                author_did,
                max(1, min(limit, 500)),
            )
        return [self._row_to_dict(row) for row in rows]

    async def query_by_external_id(self, scheme: str, value: str) -> dict[str, Any] | None:
        with store_errors("relational.query_by_external_id"):
            pool = await self.database.get_pool()
            row = await pool.fetchrow(
                f"""
                select {_RECORD_COLUMNS}
                from indexed_records
                where external_ids ->> $1 = $2
                order by indexed_at desc
                limit 1
                """,
                scheme,
                value,
            )
        return self._row_to_dict(row) if row else None

    @staticmethod
    def _row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        payload = dict(row)
        for key in ("body", "external_ids"):
            if isinstance(payload.get(key), str):
                payload[key] = json.loads(payload[key])
        return payload


class PostgresSearchIndex:
    """Full-text index kept in its own table, ranked by a generated tsvector column."""

    def __init__(self, database: Database) -> None:
        self.database = database

    async def index(self, document: SearchDocument) -> None:
        with store_errors("search.index"):
            pool = await self.database.get_pool()
            await pool.execute(
                """
                insert into search_documents (
                  uri, kind, author_did, author_name, title, body, keywords, field_labels,
                  eprint_uri, created_at, indexed_at
                )
                values ($1, $2, $3, $4, $5, $6, $7::text[], $8::text[], $9, $10, $11)
                on conflict (uri) do update
                set
                  kind = excluded.kind,
                  author_did = excluded.author_did,
                  author_name = excluded.author_name,
                  title = excluded.title,
                  body = excluded.body,
                  keywords = excluded.keywords,
                  field_labels = excluded.field_labels,
                  eprint_uri = excluded.eprint_uri,
                  created_at = excluded.created_at,
                  indexed_at = excluded.indexed_at
                where search_documents.indexed_at <= excluded.indexed_at
                """,
                document.uri,
                document.kind,
                document.author_did,
                document.author_name,
                document.title,
                document.body,
                document.keywords,
                document.field_labels,
                document.eprint_uri,
                document.created_at,
                document.indexed_at,
            )

    async def delete_document(self, uri: str) -> None:
        with store_errors("search.delete_document"):
            pool = await self.database.get_pool()
            await pool.execute("delete from search_documents where uri = $1", uri)


class PostgresGraphStore:
    def __init__(self, database: Database) -> None:
        self.database = database

    async def batch_resolve_labels(self, ids: list[str], kind: str) -> dict[str, str]:
        if not ids:
            return {}
        with store_errors("graph.batch_resolve_labels"):
            pool = await self.database.get_pool()
            rows = await pool.fetch(
                "select id, label from graph_nodes where kind = $1 and id = any($2::text[])",
                kind,
                list(dict.fromkeys(ids)),
            )
        return {row["id"]: row["label"] for row in rows}

    async def add_tag(self, uri: str, tag: str, actor: str) -> None:
        normalized = normalize_tag(tag)
        if not normalized:
            raise StoreError("graph.add_tag", "tag must contain non-whitespace characters")
        with store_errors("graph.add_tag"):
            pool = await self.database.get_pool()
            await pool.execute(
                """
                insert into record_tags (record_uri, tag, display_tag, actor_did)
                values ($1, $2, $3, $4)
                on conflict (record_uri, tag, actor_did) do update
                set display_tag = excluded.display_tag
                """,
                uri,
                normalized,
                tag.strip(),
                actor,
            )

    async def remove_all_tags_for_record(self, uri: str) -> int:
        with store_errors("graph.remove_all_tags_for_record"):
            pool = await self.database.get_pool()
            status = await pool.execute("delete from record_tags where record_uri = $1", uri)
        return _affected_rows(status)


def _affected_rows(status: str) -> int:
    # asyncpg returns the command tag, e.g. "DELETE 3"
    try:
        return int(status.rsplit(" ", maxsplit=1)[-1])
    except (AttributeError, ValueError):
        return 0
