"""
Access-control error taxonomy. Messages carried here are safe to show clients;
identity-revealing detail goes to logs only.
"""
import math


class AccessControlError(Exception):
    """Base class for access-control failures."""

    status_code = 400
    error = "invalid_request"
    description = "Request could not be processed"

    def __init__(self, description: str | None = None):
        super().__init__(description or self.description)
        if description:
            self.description = description

    def to_detail(self) -> dict:
        return {"error": self.error, "error_description": self.description}


class NotFoundError(AccessControlError):
    """Unknown or revoked token, or unknown feed. Never says which."""

    status_code = 404
    error = "not_found"
    description = "Not found"


class RateLimitedError(AccessControlError):
    status_code = 429
    error = "rate_limited"
    description = "Too many requests"

    def __init__(self, retry_after: float, description: str | None = None):
        super().__init__(description)
        self.retry_after = retry_after

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.retry_after))


class InvalidClientError(AccessControlError):
    status_code = 401
    error = "invalid_client"
    description = "Client authentication failed"


class UnsupportedGrantTypeError(AccessControlError):
    status_code = 400
    error = "unsupported_grant_type"
    description = "Only client_credentials is supported"


class InvalidTokenError(AccessControlError):
    status_code = 401
    error = "invalid_token"
    description = "Token verification failed"


class TokenExpiredError(InvalidTokenError):
    description = "Token expired"


class TokenCollisionError(AccessControlError):
    status_code = 409
    error = "token_conflict"
    description = "Token value already in use"


class KeyInitializationError(RuntimeError):
    """Signing key could not be loaded or generated. Fatal: no unsigned fallback."""
