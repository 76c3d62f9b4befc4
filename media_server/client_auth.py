"""
Client authentication for the client_credentials grant. RFC 6749 §2.3.1.
Credentials via Authorization: Basic base64(client_id:client_secret) or client_id + client_secret in form.
Every failure looks the same to the caller: unknown client and wrong secret are indistinguishable.
"""
import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Callable
from urllib.parse import unquote

from fastapi import Request
from sqlalchemy.orm import Session

from media_server.models import OAuthClient
from media_server.seed import hash_password, verify_password

logger = logging.getLogger(__name__)

# Compared against when the client id is unknown so both failure paths cost one bcrypt check
_DUMMY_SECRET_HASH = hash_password("media-server-unknown-client")


@dataclass(frozen=True)
class ClientCredentials:
    client_id: str
    client_secret: str | None


@dataclass(frozen=True)
class AuthenticatedClient:
    client_id: str
    scope: str


def _parse_basic(header_value: str) -> tuple[str, str] | None:
    """Parse 'Basic <base64(client_id:client_secret)>'. Returns (client_id, client_secret) or None."""
    if not header_value or not header_value.strip().lower().startswith("basic "):
        return None
    try:
        encoded = header_value.strip()[6:].strip()
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    client_id, _, client_secret = decoded.partition(":")
    # RFC 6749 §2.3.1: both parts are form-urlencoded before base64
    return unquote(client_id.strip()), unquote(client_secret)


def get_client_credentials_from_request(
    request: Request,
    client_id_form: str | None,
    client_secret_form: str | None,
) -> ClientCredentials | None:
    """
    Get credentials from form (if both id and secret present) or Authorization Basic.
    Form takes precedence if both present.
    """
    if client_id_form and client_secret_form is not None:
        return ClientCredentials(client_id_form.strip(), client_secret_form)
    auth_header = request.headers.get("Authorization")
    basic = _parse_basic(auth_header) if auth_header else None
    if basic:
        return ClientCredentials(*basic)
    if client_id_form:
        return ClientCredentials(client_id_form.strip(), client_secret_form)
    return None


class ClientRegistry:
    """Registered machine clients, backed by the oauth_clients table."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def authenticate(self, credentials: ClientCredentials | None) -> AuthenticatedClient | None:
        """Return the client if id and secret match, else None."""
        if credentials is None or not credentials.client_id:
            return None
        db = self._session_factory()
        try:
            client = db.query(OAuthClient).filter(OAuthClient.client_id == credentials.client_id).first()
            if client is None:
                verify_password(credentials.client_secret or "", _DUMMY_SECRET_HASH)
                logger.debug("Unknown client_id=%s", credentials.client_id)
                return None
            # An empty secret still goes through bcrypt
            if not verify_password(credentials.client_secret or "", client.client_secret_hash) or not credentials.client_secret:
                logger.debug("Bad secret for client_id=%s", credentials.client_id)
                return None
            return AuthenticatedClient(client_id=client.client_id, scope=client.scope or "")
        finally:
            db.close()
