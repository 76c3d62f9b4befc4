"""
FastAPI dependencies exposing the access-control components owned by the app (app.state).
"""
from fastapi import Request

from media_server.feed_tokens import FeedTokenStore
from media_server.keys import KeyManager
from media_server.lru_cache import LRUCache
from media_server.tokens import TokenIssuer


def get_key_manager(request: Request) -> KeyManager:
    return request.app.state.key_manager


def get_token_issuer(request: Request) -> TokenIssuer:
    return request.app.state.token_issuer


def get_feed_token_store(request: Request) -> FeedTokenStore:
    return request.app.state.feed_token_store


def get_cache(request: Request) -> LRUCache:
    return request.app.state.cache
