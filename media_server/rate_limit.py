"""
Rate limiting. In-memory sliding window per identity (client IP + limiter name).
Failed requests are penalized: a failure consumes extra slots in the window, and
repeated lockouts caused by failures grow (doubling, capped) to blunt token guessing
and credential stuffing.
"""
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from fastapi import Request
from fastapi.responses import JSONResponse

from media_server.config import (
    RATE_LIMIT_ADMIN_READ_PER_MINUTE,
    RATE_LIMIT_ADMIN_WRITE_PER_MINUTE,
    RATE_LIMIT_DEFAULT_PER_MINUTE,
    RATE_LIMIT_FAILURE_PENALTY,
    RATE_LIMIT_MAX_LOCKOUT_SECONDS,
    RATE_LIMIT_MEDIA_PER_MINUTE,
    RATE_LIMIT_TOKEN_PER_MINUTE,
    RATE_LIMIT_WINDOW_SECONDS,
)

logger = logging.getLogger(__name__)

_WINDOW_SECONDS = 60.0


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    # Seconds until a request from this identity can succeed; 0 when allowed
    retry_after: float = 0.0

    @property
    def retry_after_seconds(self) -> int:
        """Retry-After header value (>= 1 on denial)."""
        if self.allowed:
            return 0
        return max(1, math.ceil(self.retry_after))


@dataclass
class _RateLimitState:
    timestamps: list[float] = field(default_factory=list)
    lockouts: int = 0
    blocked_until: float = 0.0


class RateLimiter:
    """
    Sliding-window limiter. check() records the request when allowed; denied
    requests are not recorded. All state changes happen under one lock so two
    concurrent requests cannot both pass a just-crossed threshold.
    """

    def __init__(
        self,
        name: str,
        max_requests: int,
        window_seconds: float = _WINDOW_SECONDS,
        failure_penalty: int = RATE_LIMIT_FAILURE_PENALTY,
        max_lockout_seconds: float = RATE_LIMIT_MAX_LOCKOUT_SECONDS,
        now: Callable[[], float] | None = None,
    ):
        self.name = name
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.failure_penalty = failure_penalty
        self.max_lockout_seconds = max(max_lockout_seconds, 2 * window_seconds)
        self._now = now or time.monotonic
        self._states: dict[str, _RateLimitState] = {}
        self._lock = threading.Lock()
        self._last_purge = self._now()

    def _prune(self, state: _RateLimitState, now: float) -> None:
        cutoff = now - self.window_seconds
        state.timestamps[:] = [t for t in state.timestamps if t > cutoff]

    def check(self, identity: str) -> RateLimitDecision:
        """Check whether identity is under its limit; if so, record this request."""
        if self.max_requests <= 0:
            return RateLimitDecision(allowed=True, remaining=0)
        now = self._now()
        with self._lock:
            self._maybe_purge(now)
            state = self._states.setdefault(identity, _RateLimitState())
            self._prune(state, now)
            if state.blocked_until > now:
                return RateLimitDecision(allowed=False, remaining=0, retry_after=state.blocked_until - now)
            if len(state.timestamps) >= self.max_requests:
                # Oldest slot that must expire before the count drops below the limit
                oldest = state.timestamps[len(state.timestamps) - self.max_requests]
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    retry_after=max(0.0, oldest + self.window_seconds - now),
                )
            state.timestamps.append(now)
            return RateLimitDecision(allowed=True, remaining=self.max_requests - len(state.timestamps))

    def is_allowed(self, identity: str) -> bool:
        return self.check(identity).allowed

    def penalize(self, identity: str, penalty: int | None = None) -> int:
        """
        Record a failed attempt: consume `penalty` extra slots at the current time.
        If this pushes the identity to the limit, impose a lockout of twice the window,
        doubling with each successive lockout (capped at max_lockout_seconds).
        Returns the penalty applied (0 if non-positive).
        """
        if penalty is None:
            penalty = self.failure_penalty
        if penalty <= 0:
            return 0
        now = self._now()
        with self._lock:
            state = self._states.setdefault(identity, _RateLimitState())
            self._prune(state, now)
            state.timestamps.extend([now] * penalty)
            if self.max_requests > 0 and len(state.timestamps) >= self.max_requests:
                state.lockouts += 1
                lockout = min(
                    self.window_seconds * (2 ** state.lockouts),
                    self.max_lockout_seconds,
                )
                state.blocked_until = max(state.blocked_until, now + lockout)
                logger.info(
                    "rate limiter %s: lockout #%d for %s (%.0fs)",
                    self.name,
                    state.lockouts,
                    identity,
                    lockout,
                )
        return penalty

    def _maybe_purge(self, now: float) -> None:
        if now - self._last_purge >= self.window_seconds:
            self._purge_locked(now)

    def _purge_locked(self, now: float) -> int:
        self._last_purge = now
        # Lockout history is kept while a lockout could still be escalated
        stale_after = self.max_lockout_seconds
        stale = []
        for identity, state in self._states.items():
            self._prune(state, now)
            if state.timestamps or state.blocked_until > now:
                continue
            if state.lockouts and now - state.blocked_until < stale_after:
                continue
            stale.append(identity)
        for identity in stale:
            del self._states[identity]
        return len(stale)

    def purge_stale(self) -> int:
        """Drop identities with no recent activity. Returns number removed."""
        now = self._now()
        with self._lock:
            return self._purge_locked(now)

    def reset(self) -> None:
        """Clear all identities' state (test isolation)."""
        with self._lock:
            self._states.clear()
            self._last_purge = self._now()

    def tracked_identities(self) -> int:
        with self._lock:
            return len(self._states)


# Named limiters, created lazily so env can be configured before first use
LIMITER_ADMIN_READ = "admin-read"
LIMITER_ADMIN_WRITE = "admin-write"
LIMITER_MEDIA = "media"
LIMITER_DEFAULT = "default"
LIMITER_TOKEN = "oauth-token"

_LIMITS = {
    LIMITER_ADMIN_READ: RATE_LIMIT_ADMIN_READ_PER_MINUTE,
    LIMITER_ADMIN_WRITE: RATE_LIMIT_ADMIN_WRITE_PER_MINUTE,
    LIMITER_MEDIA: RATE_LIMIT_MEDIA_PER_MINUTE,
    LIMITER_DEFAULT: RATE_LIMIT_DEFAULT_PER_MINUTE,
    LIMITER_TOKEN: RATE_LIMIT_TOKEN_PER_MINUTE,
}

_limiters: dict[str, RateLimiter] = {}
_registry_lock = threading.Lock()


def get_limiter(name: str) -> RateLimiter:
    with _registry_lock:
        limiter = _limiters.get(name)
        if limiter is None:
            limiter = RateLimiter(
                name=name,
                max_requests=_LIMITS[name],
                window_seconds=RATE_LIMIT_WINDOW_SECONDS,
            )
            _limiters[name] = limiter
        return limiter


def reset_rate_limiters() -> None:
    """
    Clear every named limiter's state and restore its configured limit (tests).
    Instances stay registered: components holding a limiter see the reset too.
    """
    with _registry_lock:
        for name, limiter in _limiters.items():
            limiter.reset()
            limiter.max_requests = _LIMITS[name]


# --- HTTP middleware ---

_READ_METHODS = {"GET", "HEAD", "OPTIONS"}
# /oauth/token is limited by the token issuer itself
_SKIP_PATHS = {"/health", "/oauth/token"}
# Routes whose path carries a feed token: a 404 there means a guessed token
_TOKEN_ROUTE_PREFIXES = ("/feed/", "/media/", "/art/")


def get_client_ip(request: Request) -> str:
    """Client IP: first X-Forwarded-For entry, then X-Real-IP, then the socket peer."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


def limiter_for(path: str, method: str) -> RateLimiter:
    if path.startswith("/admin"):
        if method in _READ_METHODS:
            return get_limiter(LIMITER_ADMIN_READ)
        return get_limiter(LIMITER_ADMIN_WRITE)
    if path.startswith("/media/") or path.startswith("/art/"):
        return get_limiter(LIMITER_MEDIA)
    return get_limiter(LIMITER_DEFAULT)


def is_failed_response(status_code: int, path: str) -> bool:
    """4xx responses that suggest probing. 405/429 never; 404 only on token routes; 5xx never."""
    if status_code < 400 or status_code >= 500:
        return False
    if status_code in (405, 429):
        return False
    if status_code == 404:
        return path.startswith(_TOKEN_ROUTE_PREFIXES)
    return True


def too_many_requests(limit: int, retry_after: int, error_description: str = "Too many requests") -> JSONResponse:
    return JSONResponse(
        {"error": "rate_limited", "error_description": error_description},
        status_code=429,
        headers={
            "Retry-After": str(retry_after),
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(math.ceil(time.time() + retry_after)),
        },
    )


async def rate_limit_middleware(request: Request, call_next):
    path = request.url.path
    if path in _SKIP_PATHS:
        return await call_next(request)

    limiter = limiter_for(path, request.method)
    client_ip = get_client_ip(request)
    identity = f"{client_ip}:{limiter.name}"

    decision = limiter.check(identity)
    if not decision.allowed:
        logger.warning(
            "rate limit: %s %s blocked for %s (%s: %d req/%.0fs)",
            request.method,
            path,
            client_ip,
            limiter.name,
            limiter.max_requests,
            limiter.window_seconds,
        )
        return too_many_requests(limiter.max_requests, decision.retry_after_seconds)

    response = await call_next(request)

    remaining = decision.remaining
    if is_failed_response(response.status_code, path):
        applied = limiter.penalize(identity)
        remaining = max(0, remaining - applied)

    response.headers["X-RateLimit-Limit"] = str(limiter.max_requests)
    response.headers["X-RateLimit-Remaining"] = str(remaining)
    return response
