"""
Token-protected feed consumption routes. The token in the path is the only credential.
RSS fetches record usage (touch); media and artwork fetches are read-only lookups.
Every failure is the same generic 404.
"""
from fastapi import APIRouter, Depends, HTTPException

from media_server.dependencies import get_cache, get_feed_token_store
from media_server.errors import NotFoundError
from media_server.feed_lookup import FeedLookupResult, get_feed_by_token, get_feed_by_token_and_touch
from media_server.feed_tokens import FeedNamespace, FeedTokenStore
from media_server.lru_cache import LRUCache

router = APIRouter()


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail=NotFoundError().to_detail())


def feed_summary_cache_key(result: FeedLookupResult) -> str:
    feed = result.feed
    updated = feed.updated_at.isoformat() if feed.updated_at else ""
    return f"feed-summary:{result.namespace.value}:{feed.id}:{updated}"


def build_feed_summary(result: FeedLookupResult) -> dict:
    feed = result.feed
    summary = {
        "id": feed.id,
        "type": result.namespace.value,
        "name": feed.name,
        "description": feed.description,
    }
    if result.namespace is FeedNamespace.DIRECTORY:
        summary["directory_paths"] = feed.get_directory_paths()
    return summary


@router.get("/feed/{token}")
def get_feed(
    token: str,
    store: FeedTokenStore = Depends(get_feed_token_store),
    cache: LRUCache = Depends(get_cache),
):
    """Feed document for a token. Records last use of the token."""
    result = get_feed_by_token_and_touch(store, token)
    if result is None:
        raise _not_found()
    # Keyed on updated_at so edits to the feed produce a fresh entry
    cache_key = feed_summary_cache_key(result)
    summary = cache.get(cache_key)
    if summary is None:
        summary = build_feed_summary(result)
        cache.set(cache_key, summary)
    return summary


@router.get("/media/{token}/{path:path}")
def get_media(
    token: str,
    path: str,
    store: FeedTokenStore = Depends(get_feed_token_store),
):
    result = get_feed_by_token(store, token)
    if result is None:
        raise _not_found()
    return {"feed_id": result.feed.id, "type": result.namespace.value, "path": path}


@router.get("/art/{token}")
def get_artwork(
    token: str,
    store: FeedTokenStore = Depends(get_feed_token_store),
):
    result = get_feed_by_token(store, token)
    if result is None:
        raise _not_found()
    return {"feed_id": result.feed.id, "type": result.namespace.value}
