from fastapi import APIRouter, Depends, HTTPException, Query, status

from pds_indexer.core.security import require_operator_key
from pds_indexer.schemas.pds import (
    ConnectivityRefreshOut,
    HostRequest,
    PDSEntry,
    RegisterPDSRequest,
    RegistryStats,
    ScanHostOut,
)
from pds_indexer.services.database import DatabaseUnavailableError
from pds_indexer.services.registry import PDSRegistry, RegistryNotFoundError, RegistryValidationError
from pds_indexer.services.runtime import get_registry, get_scanner
from pds_indexer.services.scanner import PDSScanError, PDSScanner

router = APIRouter(dependencies=[Depends(require_operator_key)])


@router.post("", response_model=PDSEntry, status_code=status.HTTP_201_CREATED)
async def register_pds(payload: RegisterPDSRequest, registry: PDSRegistry = Depends(get_registry)) -> PDSEntry:
    try:
        return await registry.register(payload.host_url, payload.source, priority=payload.priority)
    except RegistryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except DatabaseUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.get("/stats", response_model=RegistryStats)
async def registry_stats(registry: PDSRegistry = Depends(get_registry)) -> RegistryStats:
    try:
        return await registry.stats()
    except DatabaseUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.get("/due", response_model=list[PDSEntry])
async def due_for_scan(
    limit: int = Query(default=10, ge=1, le=1000),
    registry: PDSRegistry = Depends(get_registry),
) -> list[PDSEntry]:
    try:
        return await registry.due_for_scan(limit)
    except DatabaseUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.post("/refresh-connectivity", response_model=ConnectivityRefreshOut)
async def refresh_connectivity(registry: PDSRegistry = Depends(get_registry)) -> ConnectivityRefreshOut:
    try:
        updated = await registry.refresh_connectivity()
    except DatabaseUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ConnectivityRefreshOut(updated=updated)


@router.post("/reset", response_model=PDSEntry)
async def reset_failures(payload: HostRequest, registry: PDSRegistry = Depends(get_registry)) -> PDSEntry:
    try:
        return await registry.reset_failures(payload.host_url)
    except RegistryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RegistryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except DatabaseUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.post("/scan", response_model=ScanHostOut)
async def scan_pds(
    payload: HostRequest,
    registry: PDSRegistry = Depends(get_registry),
    scanner: PDSScanner = Depends(get_scanner),
) -> ScanHostOut:
    try:
        entry = await registry.get(payload.host_url)
    except RegistryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except DatabaseUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="pds not registered")

    try:
        result = await scanner.scan_host(entry.host_url)
    except PDSScanError as exc:
        return ScanHostOut(host_url=entry.host_url, error=str(exc))
    return ScanHostOut(host_url=entry.host_url, result=result)


@router.get("/{host_url:path}", response_model=PDSEntry)
async def get_pds(host_url: str, registry: PDSRegistry = Depends(get_registry)) -> PDSEntry:
    try:
        entry = await registry.get(host_url)
    except RegistryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except DatabaseUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="pds not registered")
    return entry
