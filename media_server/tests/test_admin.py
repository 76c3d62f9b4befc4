"""
Tests for the admin API: bearer auth, token revocation, feed token issuance, cache inspection.
"""
import time
import uuid

import jwt
import pytest
from fastapi.testclient import TestClient

from media_server.config import API_AUDIENCE, ISSUER
from media_server.database import SessionLocal, init_db
from media_server.main import app
from media_server.models import CuratedFeed, CuratedFeedToken, DirectoryFeed, DirectoryFeedToken, OAuthClient
from media_server.seed import create_client

ADMIN_ID, ADMIN_SECRET = "admin-tests", "admin-secret"
READER_ID, READER_SECRET = "reader-tests", "reader-secret"


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def seeded(client):
    init_db()
    db = SessionLocal()
    try:
        if db.query(OAuthClient).filter(OAuthClient.client_id == ADMIN_ID).first() is None:
            create_client(db, ADMIN_ID, ADMIN_SECRET, scope="admin")
        if db.query(OAuthClient).filter(OAuthClient.client_id == READER_ID).first() is None:
            create_client(db, READER_ID, READER_SECRET, scope="feeds.read")
        yield db
    finally:
        db.close()


@pytest.fixture
def feeds(seeded):
    suffix = uuid.uuid4().hex[:8]
    ids = {
        "directory_id": f"dir-{suffix}",
        "curated_id": f"cur-{suffix}",
        "directory_token": f"dtok-{suffix}",
        "curated_token": f"ctok-{suffix}",
    }
    seeded.add(DirectoryFeed(id=ids["directory_id"], name="Lectures"))
    seeded.add(CuratedFeed(id=ids["curated_id"], name="Best of"))
    seeded.flush()
    seeded.add(DirectoryFeedToken(token=ids["directory_token"], feed_id=ids["directory_id"]))
    seeded.add(CuratedFeedToken(token=ids["curated_token"], feed_id=ids["curated_id"]))
    seeded.commit()
    return ids


def _access_token(client, client_id, secret):
    r = client.post(
        "/oauth/token",
        data={"grant_type": "client_credentials", "client_id": client_id, "client_secret": secret},
    )
    assert r.status_code == 200
    return r.json()["access_token"]


@pytest.fixture
def admin_headers(client, seeded):
    return {"Authorization": f"Bearer {_access_token(client, ADMIN_ID, ADMIN_SECRET)}"}


# --- auth ---


def test_missing_bearer_401(client, seeded):
    r = client.delete("/admin/api/tokens/anything")
    assert r.status_code == 401
    assert "Bearer" in r.headers["WWW-Authenticate"]


def test_garbage_bearer_401(client, seeded):
    r = client.delete("/admin/api/tokens/anything", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401
    assert r.json()["detail"]["error"] == "invalid_token"


def test_expired_bearer_401(client, seeded):
    private_key, kid = app.state.key_manager.get_signing_key()
    now = int(time.time()) - 3600
    token = jwt.encode(
        {"iss": ISSUER, "aud": API_AUDIENCE, "sub": ADMIN_ID, "scope": "admin", "iat": now, "exp": now + 60},
        private_key,
        algorithm="RS256",
        headers={"kid": kid},
    )
    r = client.get("/admin/cache/lru", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401
    assert r.json()["detail"]["error_description"] == "Token expired"


def test_wrong_audience_401(client, seeded):
    private_key, kid = app.state.key_manager.get_signing_key()
    now = int(time.time())
    token = jwt.encode(
        {"iss": ISSUER, "aud": "other-api", "sub": ADMIN_ID, "scope": "admin", "iat": now, "exp": now + 60},
        private_key,
        algorithm="RS256",
        headers={"kid": kid},
    )
    r = client.get("/admin/cache/lru", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401


def test_insufficient_scope_403(client, seeded):
    token = _access_token(client, READER_ID, READER_SECRET)
    r = client.get("/admin/cache/lru", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 403
    assert r.json()["detail"]["error"] == "insufficient_scope"


# --- revocation ---


def test_revoke_directory_token(client, feeds, admin_headers):
    assert client.get(f"/feed/{feeds['directory_token']}").status_code == 200
    r = client.delete(f"/admin/api/tokens/{feeds['directory_token']}", headers=admin_headers)
    assert r.status_code == 200
    assert r.json() == {"success": True}
    assert client.get(f"/feed/{feeds['directory_token']}").status_code == 404


def test_revoke_falls_back_to_curated(client, feeds, admin_headers):
    r = client.delete(f"/admin/api/tokens/{feeds['curated_token']}", headers=admin_headers)
    assert r.status_code == 200
    assert client.get(f"/art/{feeds['curated_token']}").status_code == 404
    # Directory token is unaffected
    assert client.get(f"/art/{feeds['directory_token']}").status_code == 200


def test_revoke_unknown_404(client, feeds, admin_headers):
    r = client.delete("/admin/api/tokens/not-a-real-token", headers=admin_headers)
    assert r.status_code == 404
    assert r.json() == {"error": "Token not found"}


def test_revoke_twice_404(client, feeds, admin_headers):
    assert client.delete(f"/admin/api/tokens/{feeds['curated_token']}", headers=admin_headers).status_code == 200
    assert client.delete(f"/admin/api/tokens/{feeds['curated_token']}", headers=admin_headers).status_code == 404


@pytest.mark.parametrize("method", ["get", "post", "put", "patch"])
def test_revoke_route_other_methods_405(client, feeds, admin_headers, method):
    r = getattr(client, method)(f"/admin/api/tokens/{feeds['directory_token']}", headers=admin_headers)
    assert r.status_code == 405
    assert r.json() == {"error": "Method not allowed"}


# --- feed token issuance ---


def test_create_and_list_feed_tokens(client, feeds, admin_headers):
    r = client.post(
        f"/admin/api/feeds/{feeds['curated_id']}/tokens",
        json={"label": "phone"},
        headers=admin_headers,
    )
    assert r.status_code == 201
    data = r.json()
    assert data["namespace"] == "curated"
    assert data["label"] == "phone"
    assert data["revoked_at"] is None
    assert client.get(f"/feed/{data['token']}").status_code == 200

    r = client.get(f"/admin/api/feeds/{feeds['curated_id']}/tokens", headers=admin_headers)
    assert r.status_code == 200
    tokens = {t["token"] for t in r.json()["tokens"]}
    assert {data["token"], feeds["curated_token"]} <= tokens


def test_create_token_without_body(client, feeds, admin_headers):
    r = client.post(f"/admin/api/feeds/{feeds['directory_id']}/tokens", headers=admin_headers)
    assert r.status_code == 201
    assert r.json()["label"] == ""


def test_create_token_unknown_feed_404(client, seeded, admin_headers):
    r = client.post("/admin/api/feeds/no-such-feed/tokens", json={}, headers=admin_headers)
    assert r.status_code == 404
    assert client.get("/admin/api/feeds/no-such-feed/tokens", headers=admin_headers).status_code == 404


# --- keys ---


@pytest.fixture
def restore_keys():
    yield
    # Drop the retired key so other tests see a single published key
    app.state.key_manager.clear()


def test_rotate_keeps_outstanding_tokens_valid(client, seeded, admin_headers, restore_keys):
    old_kid = app.state.key_manager.get_signing_key()[1]
    r = client.post("/admin/api/keys/rotate", headers=admin_headers)
    assert r.status_code == 200
    body = r.json()
    assert body["kid"] != old_kid
    assert old_kid in body["keys"]

    jwks_kids = [k["kid"] for k in client.get("/oauth/jwks").json()["keys"]]
    assert jwks_kids == [body["kid"], old_kid]
    # Token signed with the retired key still works
    assert client.get("/admin/cache/lru", headers=admin_headers).status_code == 200


# --- cache inspection ---


def test_inspect_cache_entry(client, seeded, admin_headers):
    app.state.cache.set("some:key", {"answer": 42})
    app.state.cache.set("other", 1)
    r = client.get("/admin/cache/lru/some:key", headers=admin_headers)
    assert r.status_code == 200
    assert r.json() == {"cache_key": "some:key", "value": {"answer": 42}}
    # Inspection does not refresh recency
    assert app.state.cache.keys()[0] == "some:key"


def test_inspect_missing_cache_entry(client, seeded, admin_headers):
    r = client.get("/admin/cache/lru/absent", headers=admin_headers)
    assert r.status_code == 200
    assert r.json() == {"cache_key": "absent", "value": None}


def test_feed_summary_is_cached(client, feeds, admin_headers):
    r = client.get(f"/feed/{feeds['directory_token']}")
    assert r.status_code == 200
    summary = r.json()
    assert summary["id"] == feeds["directory_id"]
    assert summary["type"] == "directory"
    cached = [key for key in app.state.cache.keys() if key.startswith(f"feed-summary:directory:{feeds['directory_id']}:")]
    assert len(cached) == 1
    r = client.get(f"/admin/cache/lru/{cached[0]}", headers=admin_headers)
    assert r.json()["value"] == summary
