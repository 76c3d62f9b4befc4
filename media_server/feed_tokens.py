"""
Feed token store: per-namespace lookup, touch and revoke for directory and curated
feed tokens, plus token issuance with cross-namespace uniqueness.
Each operation uses its own session and commits on its own; writes are single-row
UPDATEs keyed by token so concurrent requests cannot clobber other tokens.
"""
import enum
import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from media_server.errors import NotFoundError, TokenCollisionError
from media_server.models import CuratedFeed, CuratedFeedToken, DirectoryFeed, DirectoryFeedToken

logger = logging.getLogger(__name__)

_TOKEN_BYTES = 32
_CREATE_ATTEMPTS = 5


class FeedNamespace(str, enum.Enum):
    DIRECTORY = "directory"
    CURATED = "curated"


@dataclass(frozen=True)
class FeedTokenRecord:
    token: str
    feed_id: str
    namespace: FeedNamespace
    label: str
    created_at: datetime | None
    last_used_at: datetime | None
    revoked_at: datetime | None

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "feed_id": self.feed_id,
            "namespace": self.namespace.value,
            "label": self.label,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
        }


_TOKEN_MODELS = {
    FeedNamespace.DIRECTORY: DirectoryFeedToken,
    FeedNamespace.CURATED: CuratedFeedToken,
}
_FEED_MODELS = {
    FeedNamespace.DIRECTORY: DirectoryFeed,
    FeedNamespace.CURATED: CuratedFeed,
}


def generate_token() -> str:
    """URL-safe random token for feed access links (32 random bytes)."""
    return secrets.token_urlsafe(_TOKEN_BYTES)


def token_prefix(token: str) -> str:
    """Short prefix for logs; full token values are never logged."""
    return f"{token[:6]}..." if len(token) > 6 else "***"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_record(row, namespace: FeedNamespace) -> FeedTokenRecord:
    return FeedTokenRecord(
        token=row.token,
        feed_id=row.feed_id,
        namespace=namespace,
        label=row.label or "",
        created_at=row.created_at,
        last_used_at=row.last_used_at,
        revoked_at=row.revoked_at,
    )


class FeedTokenStore:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory
        # Serializes the uniqueness check + insert in create_token
        self._create_lock = threading.Lock()

    # --- per-namespace primitives ---

    def _lookup(self, namespace: FeedNamespace, token: str):
        token_model = _TOKEN_MODELS[namespace]
        feed_model = _FEED_MODELS[namespace]
        db = self._session_factory()
        try:
            stmt = (
                select(feed_model)
                .join(token_model, token_model.feed_id == feed_model.id)
                .where(token_model.token == token, token_model.revoked_at.is_(None))
            )
            return db.execute(stmt).scalar_one_or_none()
        finally:
            db.close()

    def _touch(self, namespace: FeedNamespace, token: str) -> None:
        token_model = _TOKEN_MODELS[namespace]
        now = _utc_now()
        db = self._session_factory()
        try:
            # Never move last_used_at backwards
            db.execute(
                update(token_model)
                .where(
                    token_model.token == token,
                    or_(token_model.last_used_at.is_(None), token_model.last_used_at <= now),
                )
                .values(last_used_at=now)
            )
            db.commit()
        finally:
            db.close()

    def _revoke(self, namespace: FeedNamespace, token: str) -> bool:
        token_model = _TOKEN_MODELS[namespace]
        db = self._session_factory()
        try:
            result = db.execute(
                update(token_model)
                .where(token_model.token == token, token_model.revoked_at.is_(None))
                .values(revoked_at=_utc_now())
            )
            db.commit()
            return result.rowcount > 0
        finally:
            db.close()

    def lookup_directory_token(self, token: str) -> DirectoryFeed | None:
        """Directory feed for an active (non-revoked) token, or None."""
        return self._lookup(FeedNamespace.DIRECTORY, token)

    def touch_directory_token(self, token: str) -> None:
        self._touch(FeedNamespace.DIRECTORY, token)

    def revoke_directory_token(self, token: str) -> bool:
        """Soft delete. True if an active record existed and was revoked."""
        return self._revoke(FeedNamespace.DIRECTORY, token)

    def lookup_curated_token(self, token: str) -> CuratedFeed | None:
        return self._lookup(FeedNamespace.CURATED, token)

    def touch_curated_token(self, token: str) -> None:
        self._touch(FeedNamespace.CURATED, token)

    def revoke_curated_token(self, token: str) -> bool:
        return self._revoke(FeedNamespace.CURATED, token)

    # --- admin operations ---

    def revoke_token(self, token: str) -> FeedNamespace | None:
        """Revoke in the directory namespace, falling back to curated. Returns the namespace hit."""
        if self.revoke_directory_token(token):
            return FeedNamespace.DIRECTORY
        if self.revoke_curated_token(token):
            return FeedNamespace.CURATED
        return None

    def get_feed(self, feed_id: str) -> tuple[DirectoryFeed | CuratedFeed, FeedNamespace] | None:
        db = self._session_factory()
        try:
            return self._get_feed(db, feed_id)
        finally:
            db.close()

    def _get_feed(self, db: Session, feed_id: str):
        directory_feed = db.get(DirectoryFeed, feed_id)
        if directory_feed is not None:
            return directory_feed, FeedNamespace.DIRECTORY
        curated_feed = db.get(CuratedFeed, feed_id)
        if curated_feed is not None:
            return curated_feed, FeedNamespace.CURATED
        return None

    def _token_exists(self, db: Session, token: str) -> bool:
        for token_model in _TOKEN_MODELS.values():
            if db.get(token_model, token) is not None:
                return True
        return False

    def create_token(self, feed_id: str, label: str = "", token: str | None = None) -> FeedTokenRecord:
        """
        Issue a token for a feed. The value is unique across both namespaces (revoked
        tokens included), so directory-first resolution never shadows a curated token.
        Raises NotFoundError for an unknown feed, TokenCollisionError if an explicit
        token value is already taken.
        """
        with self._create_lock:
            db = self._session_factory()
            try:
                found = self._get_feed(db, feed_id)
                if found is None:
                    raise NotFoundError("Feed not found")
                _, namespace = found

                if token is not None:
                    if self._token_exists(db, token):
                        raise TokenCollisionError()
                    value = token
                else:
                    for _ in range(_CREATE_ATTEMPTS):
                        value = generate_token()
                        if not self._token_exists(db, value):
                            break
                    else:
                        raise TokenCollisionError("Could not generate a unique token")

                row = _TOKEN_MODELS[namespace](token=value, feed_id=feed_id, label=label or "")
                db.add(row)
                db.commit()
                db.refresh(row)
                logger.info("Issued %s feed token %s for feed %s", namespace.value, token_prefix(value), feed_id)
                return _to_record(row, namespace)
            finally:
                db.close()

    def get_token(self, token: str) -> FeedTokenRecord | None:
        """Token record in either namespace, revoked or not (admin/diagnostics)."""
        db = self._session_factory()
        try:
            for namespace, token_model in _TOKEN_MODELS.items():
                row = db.get(token_model, token)
                if row is not None:
                    return _to_record(row, namespace)
            return None
        finally:
            db.close()

    def list_tokens(self, feed_id: str) -> list[FeedTokenRecord]:
        """All tokens of a feed, newest first. Raises NotFoundError for an unknown feed."""
        db = self._session_factory()
        try:
            found = self._get_feed(db, feed_id)
            if found is None:
                raise NotFoundError("Feed not found")
            _, namespace = found
            token_model = _TOKEN_MODELS[namespace]
            rows = db.execute(
                select(token_model)
                .where(token_model.feed_id == feed_id)
                .order_by(token_model.created_at.desc())
            ).scalars().all()
            return [_to_record(row, namespace) for row in rows]
        finally:
            db.close()
