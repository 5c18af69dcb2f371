from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer, APIKeyHeader
from .jwt_handler import verify_access_token
from .api_key import verify_api_key

# Bearer tokens issued by the auth provider
bearer_scheme = HTTPBearer(auto_error=False)

# Defines the expected internal service header
api_key_header = APIKeyHeader(name="X-Internal-API-Key", auto_error=False)


async def get_current_claims(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> dict:
    """Dependency to validate the JWT and return its claims."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        raise credentials_exception

    payload = verify_access_token(credentials.credentials)
    if payload is None or payload.get("sub") is None:
        raise credentials_exception

    # Store in request state for downstream use (like rate limiting)
    request.state.user_id = payload["sub"]
    return payload


async def get_current_user(claims: dict = Depends(get_current_claims)) -> str:
    """Dependency returning the authenticated user ID (sub)."""
    return claims["sub"]


async def verify_internal_api_key(api_key: str = Depends(api_key_header)) -> bool:
    """Dependency to validate service-to-service and cron requests."""
    if not verify_api_key(api_key):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid or missing X-Internal-API-Key header"
        )
    return True
