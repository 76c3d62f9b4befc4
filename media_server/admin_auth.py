"""
Bearer JWT validation for admin API routes.
Tokens are verified locally with the key manager (signature by kid, exp, iss, aud).
"""
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from media_server.config import SCOPE_ADMIN
from media_server.dependencies import get_token_issuer
from media_server.errors import InvalidTokenError
from media_server.tokens import TokenIssuer

security = HTTPBearer(auto_error=False)


def get_bearer_token(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> str:
    """Extract Bearer token from Authorization header. Raises 401 if missing or not Bearer."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "invalid_request", "error_description": "Authorization header missing"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    if credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "invalid_request", "error_description": "Bearer scheme required"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return credentials.credentials


def get_claims(
    token: Annotated[str, Depends(get_bearer_token)],
    issuer: Annotated[TokenIssuer, Depends(get_token_issuer)],
) -> dict:
    """Dependency: valid Bearer token -> decoded claims."""
    try:
        return issuer.verify(token)
    except InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.to_detail(),
            headers={"WWW-Authenticate": 'Bearer error="invalid_token"'},
        )


def _parse_scope(scope_value: str | list | None) -> set[str]:
    """Normalize scope claim to a set of scope strings."""
    if scope_value is None:
        return set()
    if isinstance(scope_value, list):
        return set(str(s) for s in scope_value)
    return set(scope_value.split())


def require_scope(required: str):
    """Dependency factory: require the given scope in the access token."""

    def _check(claims: Annotated[dict, Depends(get_claims)]) -> dict:
        scopes = _parse_scope(claims.get("scope"))
        if required not in scopes:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": "insufficient_scope",
                    "error_description": f"Scope '{required}' required",
                },
            )
        return claims

    return Depends(_check)


RequireAdmin = require_scope(SCOPE_ADMIN)
