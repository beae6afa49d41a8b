import hmac

from fastapi import Depends, HTTPException, Request, status

from pds_indexer.core.config import Settings, get_settings


async def require_operator_key(request: Request, settings: Settings = Depends(get_settings)) -> None:
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="operator API key is not configured",
        )

    provided = request.headers.get(settings.api_key_header)
    if not provided:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"operator auth requires {settings.api_key_header}",
        )

    if not hmac.compare_digest(provided.encode("utf-8"), settings.admin_api_key.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid operator key")
