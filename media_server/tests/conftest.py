"""
Pytest configuration for media_server. In-memory SQLite and a throwaway signing key
so tests don't touch the working directory.
"""
import os
import tempfile

import pytest

# In-memory SQLite; database.py uses StaticPool so all connections share the same DB
os.environ["MEDIA_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["MEDIA_SIGNING_KEY_PATH"] = os.path.join(tempfile.mkdtemp(prefix="media-keys-"), "signing_key.pem")
os.environ.pop("MEDIA_SIGNING_KEY_PREVIOUS_PATH", None)
# No seeded admin client; tests create their own
os.environ.pop("MEDIA_ADMIN_CLIENT_ID", None)
os.environ.pop("MEDIA_ADMIN_CLIENT_SECRET", None)


@pytest.fixture(autouse=True)
def _reset_shared_state():
    """Rate limiter windows and the shared LRU cache are process-wide; isolate tests."""
    from media_server.lru_cache import lru_cache
    from media_server.rate_limit import reset_rate_limiters

    reset_rate_limiters()
    lru_cache.clear()
    yield
    reset_rate_limiters()
    lru_cache.clear()
