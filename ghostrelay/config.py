import os
import secrets
import logging
from dotenv import load_dotenv

load_dotenv()

# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------
DATABASE_URL = os.getenv("GHOST_DATABASE_URL", "sqlite+aiosqlite:///./ghost_relay.db")

# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------
# Tokens signed with a random per-process secret stop validating on restart
SECRET_KEY = os.getenv("GHOST_JWT_SECRET") or secrets.token_urlsafe(32)
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("GHOST_TOKEN_EXPIRE_MINUTES", str(60 * 24)))

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------
RELAY_HOST = os.getenv("GHOST_RELAY_HOST", "127.0.0.1")
RELAY_PORT = int(os.getenv("GHOST_RELAY_PORT", "8000"))
CLEANUP_INTERVAL_SECONDS = int(os.getenv("GHOST_CLEANUP_INTERVAL_SECONDS", "300"))

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s  %(name)-28s  %(levelname)-7s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
