from fastapi import APIRouter

from pds_indexer.api.routes import health, pds, records

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(pds.router, prefix="/pds", tags=["registry"])
api_router.include_router(records.router, prefix="/records", tags=["records"])
