"""
Media server access-control configuration.
No secrets in this file; credentials come from env or DB.
"""
import os

# Issuer URL (public identifier) placed in the iss claim of access tokens
ISSUER = os.environ.get("MEDIA_ISSUER", "http://127.0.0.1:8080").rstrip("/")

# Audience for admin API access tokens
API_AUDIENCE = os.environ.get("MEDIA_API_AUDIENCE", "media-admin-api")

# Scope required by admin API routes
SCOPE_ADMIN = "admin"

# SQLite DB for feeds, feed tokens and OAuth clients
DATABASE_URL = os.environ.get("MEDIA_DATABASE_URL", "sqlite:///./media_server.db")

# Access token lifetime (seconds). Machine-to-machine grant: minutes, not days.
ACCESS_TOKEN_EXPIRES = int(os.environ.get("MEDIA_ACCESS_TOKEN_EXPIRES", "600"))

# Path to RSA private key PEM file for signing tokens. Generated and saved here if missing.
SIGNING_KEY_PATH = os.environ.get("MEDIA_SIGNING_KEY_PATH", ".media_signing_key.pem")
# Optional previous key for rotation: published in JWKS so outstanding tokens still verify.
SIGNING_KEY_PREVIOUS_PATH = os.environ.get("MEDIA_SIGNING_KEY_PREVIOUS_PATH", "").strip() or None

# JWKS responses are cacheable by clients for this long
JWKS_MAX_AGE_SECONDS = 3600

# In-process LRU cache capacity
LRU_CACHE_SIZE = int(os.environ.get("MEDIA_LRU_CACHE_SIZE", "5000"))

# Rate limiting: per-IP requests per window
RATE_LIMIT_WINDOW_SECONDS = float(os.environ.get("MEDIA_RATE_LIMIT_WINDOW_SECONDS", "60"))
RATE_LIMIT_ADMIN_READ_PER_MINUTE = int(os.environ.get("MEDIA_RATE_LIMIT_ADMIN_READ", "5000"))
RATE_LIMIT_ADMIN_WRITE_PER_MINUTE = int(os.environ.get("MEDIA_RATE_LIMIT_ADMIN_WRITE", "300"))
RATE_LIMIT_MEDIA_PER_MINUTE = int(os.environ.get("MEDIA_RATE_LIMIT_MEDIA", "300"))
RATE_LIMIT_DEFAULT_PER_MINUTE = int(os.environ.get("MEDIA_RATE_LIMIT_DEFAULT", "1000"))
RATE_LIMIT_TOKEN_PER_MINUTE = int(os.environ.get("MEDIA_RATE_LIMIT_TOKEN", "60"))
# Extra slots consumed by a failed request (9 => a failure costs 10 requests)
RATE_LIMIT_FAILURE_PENALTY = int(os.environ.get("MEDIA_RATE_LIMIT_FAILURE_PENALTY", "9"))
# Upper bound for escalated lockouts
RATE_LIMIT_MAX_LOCKOUT_SECONDS = float(os.environ.get("MEDIA_RATE_LIMIT_MAX_LOCKOUT_SECONDS", "900"))

# Optional admin client seeded at startup (confidential; secret stored as bcrypt hash)
ADMIN_CLIENT_ID = os.environ.get("MEDIA_ADMIN_CLIENT_ID", "").strip() or None
ADMIN_CLIENT_SECRET = os.environ.get("MEDIA_ADMIN_CLIENT_SECRET") or None
