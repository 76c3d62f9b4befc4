"""
Public OAuth discovery endpoints: JWKS and authorization server metadata (RFC 8414).
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from media_server.config import ISSUER, JWKS_MAX_AGE_SECONDS
from media_server.dependencies import get_cache, get_key_manager
from media_server.keys import KeyManager
from media_server.lru_cache import LRUCache

router = APIRouter()

_ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def _method_not_allowed() -> JSONResponse:
    return JSONResponse(
        {"error": "Method not allowed"},
        status_code=405,
        headers={"Allow": "GET"},
    )


def jwks_cache_key(kids: list[str]) -> str:
    return "oauth:jwks:" + ",".join(kids)


@router.api_route("/oauth/jwks", methods=_ALL_METHODS)
def jwks(
    request: Request,
    key_manager: KeyManager = Depends(get_key_manager),
    cache: LRUCache = Depends(get_cache),
):
    """JSON Web Key Set for access token verification. Cacheable for an hour."""
    if request.method != "GET":
        return _method_not_allowed()
    # Keyed by the published kids, so rotation or retirement yields a fresh entry
    cache_key = jwks_cache_key(key_manager.known_kids())
    document = cache.get(cache_key)
    if document is None:
        document = key_manager.get_jwks()
        cache.set(cache_key, document)
    return JSONResponse(
        document,
        headers={"Cache-Control": f"public, max-age={JWKS_MAX_AGE_SECONDS}"},
    )


@router.api_route("/.well-known/oauth-authorization-server", methods=_ALL_METHODS)
def authorization_server_metadata(request: Request):
    """Authorization server metadata for admin API clients."""
    if request.method != "GET":
        return _method_not_allowed()
    return JSONResponse(
        {
            "issuer": ISSUER,
            "token_endpoint": f"{ISSUER}/oauth/token",
            "jwks_uri": f"{ISSUER}/oauth/jwks",
            "grant_types_supported": ["client_credentials"],
            "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
        },
        headers={"Cache-Control": f"public, max-age={JWKS_MAX_AGE_SECONDS}"},
    )
