"""
SQLAlchemy models: feeds, per-namespace feed tokens, and OAuth machine clients.
Feed tokens live in two disjoint namespaces (directory, curated); revocation is a soft delete.
"""
import json
from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class DirectoryFeed(Base):
    __tablename__ = "directory_feeds"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    # JSON array of "mediaRoot:relative/path" entries
    directory_paths: Mapped[str] = mapped_column(Text, default="[]", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    def get_directory_paths(self) -> list[str]:
        return json.loads(self.directory_paths or "[]")


class CuratedFeed(Base):
    __tablename__ = "curated_feeds"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)


class DirectoryFeedToken(Base):
    __tablename__ = "directory_feed_tokens"

    token: Mapped[str] = mapped_column(String(255), primary_key=True)
    feed_id: Mapped[str] = mapped_column(ForeignKey("directory_feeds.id"), nullable=False, index=True)
    label: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    feed: Mapped["DirectoryFeed"] = relationship("DirectoryFeed", backref="tokens")

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None


class CuratedFeedToken(Base):
    __tablename__ = "curated_feed_tokens"

    token: Mapped[str] = mapped_column(String(255), primary_key=True)
    feed_id: Mapped[str] = mapped_column(ForeignKey("curated_feeds.id"), nullable=False, index=True)
    label: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    feed: Mapped["CuratedFeed"] = relationship("CuratedFeed", backref="tokens")

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None


class OAuthClient(Base):
    """Machine client allowed to use the client_credentials grant for the admin API."""
    __tablename__ = "oauth_clients"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    client_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    # bcrypt hash of client_secret; every client here is confidential
    client_secret_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    scope: Mapped[str] = mapped_column(Text, default="admin", nullable=False)  # space-separated
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
