from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from pds_indexer.core.urls import did_from_at_uri

EPRINT_COLLECTION = "pub.chive.eprint.submission"
REVIEW_COLLECTION = "pub.chive.review.comment"
ENDORSEMENT_COLLECTION = "pub.chive.review.endorsement"
RECOGNIZED_COLLECTIONS = (EPRINT_COLLECTION, REVIEW_COLLECTION, ENDORSEMENT_COLLECTION)


class RecordDecodeError(Exception):
    """Raised when a PDS record cannot be decoded into a domain record."""

    def __init__(self, uri: str, message: str) -> None:
        super().__init__(f"{uri}: {message}")
        self.uri = uri


class _PDSModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Author(_PDSModel):
    name: str
    did: str | None = None
    order: int | None = None


class FieldRef(_PDSModel):
    uri: str
    label: str = ""
    id: str | None = None


class _DomainRecordBase(_PDSModel):
    uri: str
    cid: str
    author_did: str
    created_at: datetime


class EprintRecord(_DomainRecordBase):
    kind: Literal["eprint"] = "eprint"
    title: str = Field(min_length=1)
    abstract: str = ""
    authors: list[Author] = Field(min_length=1)
    document: dict[str, Any]
    keywords: list[str] = Field(default_factory=list)
    fields: list[FieldRef] = Field(default_factory=list)
    license: str = "CC-BY-4.0"
    external_ids: dict[str, str] = Field(default_factory=dict)
    version: int = 1

    @field_validator("abstract", mode="before")
    @classmethod
    def _flatten_rich_text(cls, value: Any) -> Any:
        if isinstance(value, list):
            return " ".join(
                item["text"].strip()
                for item in value
                if isinstance(item, dict) and isinstance(item.get("text"), str) and item["text"].strip()
            )
        if value is None:
            return ""
        return value

    def primary_author(self) -> Author:
        ordered = [author for author in self.authors if author.order == 1]
        return ordered[0] if ordered else self.authors[0]


class ReviewRecord(_DomainRecordBase):
    kind: Literal["review"] = "review"
    eprint_uri: str
    content: str = Field(min_length=1)
    parent_review_uri: str | None = None


class EndorsementRecord(_DomainRecordBase):
    kind: Literal["endorsement"] = "endorsement"
    eprint_uri: str
    contributions: list[str] = Field(default_factory=list)
    comment: str | None = None


_DECODERS: dict[str, type[EprintRecord] | type[ReviewRecord] | type[EndorsementRecord]] = {
    EPRINT_COLLECTION: EprintRecord,
    REVIEW_COLLECTION: ReviewRecord,
    ENDORSEMENT_COLLECTION: EndorsementRecord,
}


class RecordMetadata(BaseModel):
    uri: str
    cid: str
    pds_url: str
    indexed_at: datetime


class IndexedRecordOut(BaseModel):
    uri: str
    cid: str
    kind: Literal["eprint", "review", "endorsement"]
    author_did: str
    eprint_uri: str | None = None
    pds_url: str
    body: dict[str, Any] = Field(default_factory=dict)
    external_ids: dict[str, str] = Field(default_factory=dict)
    created_at: datetime
    indexed_at: datetime


class DeleteRecordOut(BaseModel):
    uri: str
    deleted: bool
    failed_stage: str | None = None


def decode_record(collection: str, uri: str, cid: str, value: Any) -> EprintRecord | ReviewRecord | EndorsementRecord:
    model = _DECODERS.get(collection)
    if model is None:
        raise RecordDecodeError(uri, f"unrecognized collection {collection}")
    if not isinstance(value, dict):
        raise RecordDecodeError(uri, "record value is not an object")

    payload = {key: item for key, item in value.items() if key != "$type"}
    payload["uri"] = uri
    payload["cid"] = cid
    payload["authorDid"] = _resolve_author_did(collection, uri, value)
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
        raise RecordDecodeError(uri, f"invalid fields: {', '.join(fields)}") from exc


def _resolve_author_did(collection: str, uri: str, value: dict[str, Any]) -> str | None:
    if collection == EPRINT_COLLECTION:
        submitted_by = value.get("submittedBy")
        if isinstance(submitted_by, str) and submitted_by:
            return submitted_by
        authors = value.get("authors")
        if isinstance(authors, list):
            for author in authors:
                if isinstance(author, dict) and isinstance(author.get("did"), str) and author["did"]:
                    return author["did"]
    return did_from_at_uri(uri)
