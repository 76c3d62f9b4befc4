"""
Feed token resolution across the directory and curated namespaces.

One resolver with an explicit access mode:
- AccessMode.READ: lookup only. Media and artwork requests (frequent byte-range
  fetches) use this so they don't generate a write per request.
- AccessMode.TOUCH: lookup, then record last_used_at on the matching token. RSS feed
  fetches use this for usage analytics. Touching is best-effort and never fails
  the lookup.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from media_server.feed_tokens import FeedNamespace, token_prefix

logger = logging.getLogger(__name__)


class AccessMode(enum.Enum):
    READ = "read"
    TOUCH = "touch"


# Resolution policy: directory tokens are checked before curated tokens and the first
# match wins. Token values are unique across namespaces at issuance, so this order
# only matters for data that violates that constraint.
RESOLUTION_ORDER = (FeedNamespace.DIRECTORY, FeedNamespace.CURATED)


class TokenStore(Protocol):
    def lookup_directory_token(self, token: str) -> Any | None: ...
    def touch_directory_token(self, token: str) -> None: ...
    def lookup_curated_token(self, token: str) -> Any | None: ...
    def touch_curated_token(self, token: str) -> None: ...


@dataclass(frozen=True)
class FeedLookupResult:
    feed: Any
    namespace: FeedNamespace


def _operations(store: TokenStore, namespace: FeedNamespace):
    if namespace is FeedNamespace.DIRECTORY:
        return store.lookup_directory_token, store.touch_directory_token
    return store.lookup_curated_token, store.touch_curated_token


def resolve_feed_token(
    store: TokenStore,
    token: str,
    mode: AccessMode = AccessMode.READ,
) -> FeedLookupResult | None:
    """
    Resolve token to its feed. Returns None for unknown or revoked tokens, without
    mutating the store. In TOUCH mode the matching token's last_used_at is updated
    after the match is confirmed; a failure to do so is logged and ignored.
    """
    if not token:
        return None
    for namespace in RESOLUTION_ORDER:
        lookup, touch = _operations(store, namespace)
        feed = lookup(token)
        if feed is None:
            continue
        if mode is AccessMode.TOUCH:
            try:
                touch(token)
            except Exception as e:
                logger.warning(
                    "Failed to record usage for %s feed token %s: %s",
                    namespace.value,
                    token_prefix(token),
                    e,
                )
        return FeedLookupResult(feed=feed, namespace=namespace)
    return None


def get_feed_by_token(store: TokenStore, token: str) -> FeedLookupResult | None:
    """Read-only lookup (media/artwork)."""
    return resolve_feed_token(store, token, AccessMode.READ)


def get_feed_by_token_and_touch(store: TokenStore, token: str) -> FeedLookupResult | None:
    """Lookup and record usage (RSS feed fetches)."""
    return resolve_feed_token(store, token, AccessMode.TOUCH)
