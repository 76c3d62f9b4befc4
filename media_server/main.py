"""
Media server access control.
Token-protected feed/media routes, client_credentials token endpoint, JWKS and admin API.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from media_server.admin import router as admin_router
from media_server.client_auth import ClientRegistry
from media_server.config import API_AUDIENCE, ISSUER, SIGNING_KEY_PATH, SIGNING_KEY_PREVIOUS_PATH
from media_server.database import SessionLocal, init_db
from media_server.errors import AccessControlError, RateLimitedError
from media_server.feed_tokens import FeedTokenStore
from media_server.feeds import router as feeds_router
from media_server.keys import KeyManager
from media_server.lru_cache import lru_cache
from media_server.rate_limit import LIMITER_TOKEN, get_limiter, rate_limit_middleware
from media_server.seed import seed_from_env
from media_server.token_endpoint import router as token_router
from media_server.tokens import TokenIssuer
from media_server.well_known import router as well_known_router

key_manager = KeyManager(SIGNING_KEY_PATH, SIGNING_KEY_PREVIOUS_PATH)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, load signing key (fatal on failure), seed admin client from env."""
    init_db()
    app.state.key_manager.get_signing_key()
    db = SessionLocal()
    try:
        seed_from_env(db)
    finally:
        db.close()
    yield


app = FastAPI(title="Media Server Access Control", version="0.1.0", lifespan=lifespan)
app.state.key_manager = key_manager
app.state.feed_token_store = FeedTokenStore(SessionLocal)
app.state.token_issuer = TokenIssuer(
    key_manager,
    ClientRegistry(SessionLocal),
    get_limiter(LIMITER_TOKEN),
    issuer=ISSUER,
    audience=API_AUDIENCE,
)
app.state.cache = lru_cache

app.middleware("http")(rate_limit_middleware)

app.include_router(feeds_router, tags=["feeds"])
app.include_router(token_router, tags=["token"])
app.include_router(well_known_router, tags=["well-known"])
app.include_router(admin_router, tags=["admin"])


@app.exception_handler(AccessControlError)
async def access_control_error_handler(request: Request, exc: AccessControlError):
    headers = {}
    if isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    return JSONResponse(exc.to_detail(), status_code=exc.status_code, headers=headers)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "media_server"}


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(
        "media_server.main:app",
        host="127.0.0.1",
        port=8080,
        reload=True,
    )
