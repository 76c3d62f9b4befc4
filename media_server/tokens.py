"""
Access token issuance for the client_credentials grant.
Tokens are short-lived RS256 JWTs signed with the key manager's current key; they are
not stored and are verified statelessly against the published keys.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable

import jwt

from media_server.client_auth import ClientCredentials, ClientRegistry
from media_server.config import ACCESS_TOKEN_EXPIRES
from media_server.errors import InvalidClientError, RateLimitedError, UnsupportedGrantTypeError
from media_server.keys import ALGORITHM, KeyManager
from media_server.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

GRANT_CLIENT_CREDENTIALS = "client_credentials"


@dataclass(frozen=True)
class AccessToken:
    token: str
    kid: str
    expires_in: int
    scope: str
    token_type: str = "Bearer"

    def to_response(self) -> dict:
        response = {
            "access_token": self.token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }
        if self.scope:
            response["scope"] = self.scope
        return response


class TokenIssuer:
    def __init__(
        self,
        key_manager: KeyManager,
        clients: ClientRegistry,
        limiter: RateLimiter,
        issuer: str,
        audience: str,
        expires_in: int = ACCESS_TOKEN_EXPIRES,
        now: Callable[[], float] | None = None,
    ):
        self.key_manager = key_manager
        self.clients = clients
        self.limiter = limiter
        self.issuer = issuer
        self.audience = audience
        self.expires_in = expires_in
        self._now = now or time.time

    def issue(
        self,
        credentials: ClientCredentials | None,
        caller: str,
        grant_type: str | None = GRANT_CLIENT_CREDENTIALS,
    ) -> AccessToken:
        """
        Authenticate the client and sign an access token.
        Every request from `caller` (client IP) counts against the token limiter,
        whatever its outcome. Raises RateLimitedError when over the limit,
        UnsupportedGrantTypeError for any grant but client_credentials and
        InvalidClientError for any credential failure; failures are penalized.
        """
        identity = f"{caller}:{self.limiter.name}"
        decision = self.limiter.check(identity)
        if not decision.allowed:
            logger.warning("Token issuance rate limited for %s", caller)
            raise RateLimitedError(decision.retry_after)

        if grant_type != GRANT_CLIENT_CREDENTIALS:
            self.limiter.penalize(identity)
            logger.info("Unsupported grant_type=%s from %s", grant_type, caller)
            raise UnsupportedGrantTypeError()

        client = self.clients.authenticate(credentials)
        if client is None:
            self.limiter.penalize(identity)
            logger.info(
                "Token issuance denied for client_id=%s from %s",
                credentials.client_id if credentials else None,
                caller,
            )
            raise InvalidClientError()

        return self.sign(client.client_id, client.scope)

    def sign(self, subject: str, scope: str) -> AccessToken:
        private_key, kid = self.key_manager.get_signing_key()
        now = int(self._now())
        payload = {
            "iss": self.issuer,
            "sub": subject,
            "aud": self.audience,
            "iat": now,
            "exp": now + self.expires_in,
            "scope": scope,
        }
        token = jwt.encode(
            payload,
            private_key,
            algorithm=ALGORITHM,
            headers={"kid": kid, "typ": "JWT"},
        )
        if isinstance(token, bytes):
            token = token.decode("utf-8")
        logger.info("Issued access token for sub=%s (kid=%s, expires_in=%ds)", subject, kid, self.expires_in)
        return AccessToken(token=token, kid=kid, expires_in=self.expires_in, scope=scope)

    def verify(self, token: str) -> dict:
        """Verify a token issued here (signature, expiry, iss, aud). Returns claims."""
        return self.key_manager.verify(token, issuer=self.issuer, audience=self.audience)
