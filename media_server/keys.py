"""
RSA signing keys for admin API access tokens.
Load from file or generate and persist (owner-only permissions); no key material in code.
New tokens use the current key; JWKS exposes the current key plus retired keys that may
still have unexpired tokens outstanding, so rotation never breaks verification.
"""
import base64
import hashlib
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import jwt
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey, generate_private_key

from media_server.config import ACCESS_TOKEN_EXPIRES
from media_server.errors import InvalidTokenError, KeyInitializationError, TokenExpiredError

logger = logging.getLogger(__name__)

_KEY_BITS = 2048
ALGORITHM = "RS256"


def _generate_key() -> RSAPrivateKey:
    return generate_private_key(65537, _KEY_BITS, default_backend())


def _serialize_private(key: RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _deserialize_private(pem: bytes) -> RSAPrivateKey:
    key = serialization.load_pem_private_key(pem, password=None, backend=default_backend())
    if not isinstance(key, RSAPrivateKey):
        raise ValueError("signing key is not an RSA private key")
    return key


def _b64url_uint(value: int) -> str:
    return base64.urlsafe_b64encode(value.to_bytes((value.bit_length() + 7) // 8, "big")).rstrip(b"=").decode("ascii")


def public_key_to_jwk(public_key: RSAPublicKey, kid: str) -> dict:
    """Export cryptography RSA public key to JWK with given kid."""
    numbers = public_key.public_numbers()
    return {
        "kty": "RSA",
        "kid": kid,
        "alg": ALGORITHM,
        "use": "sig",
        "n": _b64url_uint(numbers.n),
        "e": _b64url_uint(numbers.e),
    }


def jwk_thumbprint(public_key: RSAPublicKey) -> str:
    """RFC 7638 thumbprint; stable kid for a given key across restarts."""
    numbers = public_key.public_numbers()
    canonical = json.dumps(
        {"e": _b64url_uint(numbers.e), "kty": "RSA", "n": _b64url_uint(numbers.n)},
        separators=(",", ":"),
        sort_keys=True,
    )
    digest = hashlib.sha256(canonical.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def _write_private_key(path: Path, key: RSAPrivateKey) -> None:
    """Write PEM with 0600 permissions via a temp file + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(_serialize_private(key))
    os.replace(tmp, path)


@dataclass(frozen=True)
class SigningKey:
    private_key: RSAPrivateKey
    kid: str


@dataclass(frozen=True)
class _RetiredKey:
    public_key: RSAPublicKey
    retired_at: float


class KeyManager:
    """
    Owns the signing key pair. Keys are loaded lazily on first use; concurrent first
    callers wait behind a single load/generation. rotate() swaps in a new key and
    keeps the old public key for max_token_lifetime seconds so its tokens still verify.
    """

    def __init__(
        self,
        key_path: str,
        previous_key_path: str | None = None,
        max_token_lifetime: int = ACCESS_TOKEN_EXPIRES,
        now: Callable[[], float] | None = None,
    ):
        self._key_path = Path(key_path)
        self._previous_key_path = Path(previous_key_path) if previous_key_path else None
        self.max_token_lifetime = max_token_lifetime
        self._now = now or time.time
        self._lock = threading.Lock()
        self._current: SigningKey | None = None
        self._retired: dict[str, _RetiredKey] = {}

    # --- loading ---

    def _ensure_loaded(self) -> SigningKey:
        current = self._current
        if current is not None:
            return current
        with self._lock:
            if self._current is None:
                self._load_locked()
            return self._current

    def _load_locked(self) -> None:
        private_key = self._load_or_create(self._key_path)
        current = SigningKey(private_key=private_key, kid=jwk_thumbprint(private_key.public_key()))

        if self._previous_key_path is not None:
            previous = self._load_previous(self._previous_key_path)
            if previous is not None:
                kid_prev = jwk_thumbprint(previous.public_key())
                if kid_prev != current.kid:
                    self._retired[kid_prev] = _RetiredKey(previous.public_key(), retired_at=self._now())
                    logger.info("Loaded previous signing key (kid=%s) for rotation", kid_prev)

        self._current = current
        logger.info("Signing key ready (kid=%s)", current.kid)

    def _load_or_create(self, path: Path) -> RSAPrivateKey:
        if path.exists():
            try:
                return _deserialize_private(path.read_bytes())
            except (OSError, ValueError, TypeError) as e:
                # An existing key file is never overwritten
                raise KeyInitializationError(f"Failed to load signing key from {path}: {e}") from e
        try:
            key = _generate_key()
        except Exception as e:
            raise KeyInitializationError(f"Failed to generate signing key: {e}") from e
        self._persist(path, key)
        return key

    def _load_previous(self, path: Path) -> RSAPrivateKey | None:
        """Previous key is verification-only; a missing or bad file is not fatal."""
        if not path.exists():
            return None
        try:
            return _deserialize_private(path.read_bytes())
        except (OSError, ValueError, TypeError) as e:
            logger.warning("Failed to load previous signing key from %s: %s", path, e)
            return None

    def _persist(self, path: Path, key: RSAPrivateKey) -> None:
        try:
            _write_private_key(path, key)
            logger.info("Saved signing key to %s", path)
        except OSError as e:
            logger.warning("Could not save signing key to %s: %s", path, e)

    # --- rotation ---

    def _prune_locked(self, now: float) -> None:
        expired = [
            kid for kid, retired in self._retired.items()
            if now - retired.retired_at > self.max_token_lifetime
        ]
        for kid in expired:
            del self._retired[kid]
            logger.info("Dropped retired signing key kid=%s", kid)

    def rotate(self) -> str:
        """Generate a new current key; the old one stays verifiable until its tokens expire. Returns new kid."""
        with self._lock:
            if self._current is None:
                self._load_locked()
            try:
                new_key = _generate_key()
            except Exception as e:
                raise KeyInitializationError(f"Failed to generate signing key: {e}") from e
            old = self._current
            now = self._now()
            self._retired[old.kid] = _RetiredKey(old.private_key.public_key(), retired_at=now)
            self._current = SigningKey(private_key=new_key, kid=jwk_thumbprint(new_key.public_key()))
            self._persist(self._key_path, new_key)
            if self._previous_key_path is not None:
                self._persist(self._previous_key_path, old.private_key)
            self._prune_locked(now)
            logger.info("Rotated signing key: kid=%s (retired kid=%s)", self._current.kid, old.kid)
            return self._current.kid

    # --- accessors ---

    def get_signing_key(self) -> tuple[RSAPrivateKey, str]:
        """Return the current (private) key and kid for signing new tokens."""
        current = self._ensure_loaded()
        return current.private_key, current.kid

    def _verification_keys(self) -> dict[str, RSAPublicKey]:
        self._ensure_loaded()
        with self._lock:
            if self._current is None:
                self._load_locked()
            self._prune_locked(self._now())
            keys = {self._current.kid: self._current.private_key.public_key()}
            for kid, retired in self._retired.items():
                keys.setdefault(kid, retired.public_key)
            return keys

    def known_kids(self) -> list[str]:
        return list(self._verification_keys())

    def get_public_key_jwk(self) -> dict:
        current = self._ensure_loaded()
        return public_key_to_jwk(current.private_key.public_key(), current.kid)

    def get_jwks(self) -> dict:
        """JWKS with the current key first, then retained retired keys."""
        return {"keys": [public_key_to_jwk(pub, kid) for kid, pub in self._verification_keys().items()]}

    def verify(self, token: str, *, issuer: str | None = None, audience: str | None = None) -> dict:
        """
        Verify signature (key chosen by the token's kid) and expiry; optionally iss/aud.
        Returns claims. Raises TokenExpiredError or InvalidTokenError.
        """
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as e:
            logger.debug("Malformed token header: %s", e)
            raise InvalidTokenError() from e
        kid = header.get("kid")
        public_key = self._verification_keys().get(kid) if kid else None
        if public_key is None:
            logger.debug("Token signed with unknown kid=%s", kid)
            raise InvalidTokenError()

        options = {"require": ["exp", "iat", "sub"], "verify_aud": audience is not None}
        try:
            return jwt.decode(
                token,
                public_key,
                algorithms=[ALGORITHM],
                issuer=issuer,
                audience=audience,
                options=options,
            )
        except jwt.ExpiredSignatureError as e:
            logger.debug("Token expired (kid=%s)", kid)
            raise TokenExpiredError() from e
        except jwt.InvalidTokenError as e:
            logger.debug("Token verification failed (kid=%s): %s", kid, e)
            raise InvalidTokenError() from e

    def clear(self) -> None:
        """Forget loaded keys; next access reloads from disk (tests)."""
        with self._lock:
            self._current = None
            self._retired.clear()
