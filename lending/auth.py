from fastapi.security import APIKeyHeader
from fastapi import HTTPException, Security, status

from lending.config import AUTH_KEY


api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: str = Security(api_key_header)):
    """
    Dependency guarding every route that changes library data.

    Usage in endpoints:
    @app.post("/loans", dependencies=[Depends(verify_api_key)])

    Raises:
        HTTPException: 401 if key is missing, 403 if key is invalid

    Returns:
        True if authentication succeeds
    """
    if api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API Key is missing. Include it in the 'X-API-Key' header.",
        )

    if api_key != AUTH_KEY:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API Key.",
        )

    return True
