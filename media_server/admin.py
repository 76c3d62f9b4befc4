"""
Admin API: feed token management, key rotation and cache inspection.
All routes require a Bearer access token with scope admin.
"""
import logging

from fastapi import APIRouter, Body, Depends, HTTPException
from fastapi.responses import JSONResponse

from media_server.admin_auth import RequireAdmin
from media_server.dependencies import get_cache, get_feed_token_store, get_key_manager
from media_server.errors import NotFoundError, TokenCollisionError
from media_server.feed_tokens import FeedTokenStore, token_prefix
from media_server.keys import KeyManager
from media_server.lru_cache import LRUCache

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin")


@router.delete("/api/tokens/{token}")
def revoke_token(
    token: str,
    claims: dict = RequireAdmin,
    store: FeedTokenStore = Depends(get_feed_token_store),
):
    """Revoke a feed token: directory namespace first, then curated."""
    namespace = store.revoke_token(token)
    if namespace is None:
        return JSONResponse({"error": "Token not found"}, status_code=404)
    logger.info("Revoked %s feed token %s (by %s)", namespace.value, token_prefix(token), claims.get("sub"))
    return {"success": True}


@router.api_route("/api/tokens/{token}", methods=["GET", "POST", "PUT", "PATCH"], include_in_schema=False)
def token_method_not_allowed(token: str):
    return JSONResponse({"error": "Method not allowed"}, status_code=405, headers={"Allow": "DELETE"})


@router.post("/api/feeds/{feed_id}/tokens", status_code=201)
def create_feed_token(
    feed_id: str,
    label: str = Body("", embed=True),
    claims: dict = RequireAdmin,
    store: FeedTokenStore = Depends(get_feed_token_store),
):
    """Issue a new access token for a directory or curated feed."""
    try:
        record = store.create_token(feed_id, label=label)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.to_detail())
    except TokenCollisionError as e:
        raise HTTPException(status_code=409, detail=e.to_detail())
    return record.to_dict()


@router.get("/api/feeds/{feed_id}/tokens")
def list_feed_tokens(
    feed_id: str,
    claims: dict = RequireAdmin,
    store: FeedTokenStore = Depends(get_feed_token_store),
):
    try:
        records = store.list_tokens(feed_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.to_detail())
    return {"feed_id": feed_id, "tokens": [r.to_dict() for r in records]}


@router.post("/api/keys/rotate")
def rotate_signing_key(
    claims: dict = RequireAdmin,
    key_manager: KeyManager = Depends(get_key_manager),
):
    """Switch to a new signing key. Tokens signed with the old key keep verifying until they expire."""
    kid = key_manager.rotate()
    logger.info("Signing key rotated by %s", claims.get("sub"))
    return {"kid": kid, "keys": key_manager.known_kids()}


@router.get("/cache/lru/{cache_key:path}")
def inspect_cache_entry(
    cache_key: str,
    claims: dict = RequireAdmin,
    cache: LRUCache = Depends(get_cache),
):
    """Debug: cached value for a key (null if absent). Does not change eviction order."""
    return {"cache_key": cache_key, "value": cache.peek(cache_key)}


@router.get("/cache/lru")
def cache_stats(
    claims: dict = RequireAdmin,
    cache: LRUCache = Depends(get_cache),
):
    return {"stats": cache.stats(), "keys": cache.keys()}
