from fastapi import APIRouter, Depends, HTTPException, Query, status

from pds_indexer.core.security import require_operator_key
from pds_indexer.schemas.records import DeleteRecordOut, IndexedRecordOut
from pds_indexer.services.indexing import Err, IndexingSaga
from pds_indexer.services.runtime import get_record_store, get_saga
from pds_indexer.services.stores import RelationalStore, StoreError

router = APIRouter()


@router.get("", response_model=IndexedRecordOut)
async def get_record(
    uri: str = Query(min_length=1),
    records: RelationalStore = Depends(get_record_store),
) -> IndexedRecordOut:
    try:
        row = await records.get(uri)
    except StoreError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="record not indexed")
    return IndexedRecordOut(**row)


@router.get("/by-author/{author_did}", response_model=list[IndexedRecordOut])
async def list_records_by_author(
    author_did: str,
    limit: int = Query(default=50, ge=1, le=500),
    records: RelationalStore = Depends(get_record_store),
) -> list[IndexedRecordOut]:
    try:
        rows = await records.query_by_author(author_did, limit=limit)
    except StoreError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [IndexedRecordOut(**row) for row in rows]


@router.get("/by-external-id", response_model=IndexedRecordOut)
async def get_record_by_external_id(
    scheme: str = Query(min_length=1),
    value: str = Query(min_length=1),
    records: RelationalStore = Depends(get_record_store),
) -> IndexedRecordOut:
    try:
        row = await records.query_by_external_id(scheme, value)
    except StoreError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="record not indexed")
    return IndexedRecordOut(**row)


@router.delete("", response_model=DeleteRecordOut, dependencies=[Depends(require_operator_key)])
async def delete_record(
    uri: str = Query(min_length=1),
    saga: IndexingSaga = Depends(get_saga),
) -> DeleteRecordOut:
    result = await saga.delete_record(uri)
    if isinstance(result, Err):
        return DeleteRecordOut(uri=uri, deleted=False, failed_stage=result.error.stage)
    return DeleteRecordOut(uri=uri, deleted=True)
