"""
Seed the admin OAuth client from environment. No hardcoded credentials.
Optional: set MEDIA_ADMIN_CLIENT_ID + MEDIA_ADMIN_CLIENT_SECRET.
"""
import logging

import bcrypt
from sqlalchemy.orm import Session

from media_server.config import ADMIN_CLIENT_ID, ADMIN_CLIENT_SECRET, SCOPE_ADMIN
from media_server.models import OAuthClient

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    # Bcrypt has a 72-byte limit
    raw = password.encode("utf-8")
    if len(raw) > 72:
        raw = raw[:72]
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    raw = plain.encode("utf-8")
    if len(raw) > 72:
        raw = raw[:72]
    try:
        return bcrypt.checkpw(raw, hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


def create_client(db: Session, client_id: str, client_secret: str, name: str = "", scope: str = SCOPE_ADMIN) -> OAuthClient:
    client = OAuthClient(
        client_id=client_id,
        client_secret_hash=hash_password(client_secret),
        name=name,
        scope=scope,
    )
    db.add(client)
    db.commit()
    return client


def seed_from_env(db: Session) -> None:
    """Create the admin client from env if set and not present."""
    if not ADMIN_CLIENT_ID or not ADMIN_CLIENT_SECRET:
        logger.debug("No admin client configured in env")
        return
    if db.query(OAuthClient).filter(OAuthClient.client_id == ADMIN_CLIENT_ID).first() is None:
        create_client(db, ADMIN_CLIENT_ID, ADMIN_CLIENT_SECRET, name="Admin client")
        logger.info("Seeded admin client: %s", ADMIN_CLIENT_ID)
    else:
        logger.debug("Admin client already exists: %s", ADMIN_CLIENT_ID)
