from __future__ import annotations

import logging
import os

APP_NAME = "Inkwell"
APP_VERSION = "0.4.0"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
MYSQL_HOST = os.getenv("MYSQL_HOST", "localhost")
MYSQL_PORT = int(os.getenv("MYSQL_PORT", "3306"))
MYSQL_USER = os.getenv("MYSQL_USER", "inkwell")
MYSQL_PASSWORD = os.getenv("MYSQL_PASSWORD", "inkwell_password")
MYSQL_DATABASE = os.getenv("MYSQL_DATABASE", "inkwell")
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"mysql+pymysql://{MYSQL_USER}:{MYSQL_PASSWORD}@{MYSQL_HOST}:{MYSQL_PORT}/{MYSQL_DATABASE}",
)
AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-secret-change-me")
AUTH_SESSION_TTL_MINUTES = int(os.getenv("AUTH_SESSION_TTL_MINUTES", "120"))
AUTH_STATE_TTL_SECONDS = int(os.getenv("AUTH_STATE_TTL_SECONDS", "600"))
ENCRYPTION_MASTER_KEY = os.getenv("ENCRYPTION_MASTER_KEY", AUTH_SECRET)
FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
OAUTH_REDIRECT_URI = os.getenv(
    "OAUTH_REDIRECT_URI", "http://localhost:8000/auth/oauth/callback"
)
FRONTEND_OAUTH_REDIRECT = os.getenv(
    "FRONTEND_OAUTH_REDIRECT", f"{FRONTEND_ORIGIN}/auth/callback"
)
APP_TITLE = os.getenv("APP_TITLE", APP_NAME)
FILE_STORAGE_ROOT = os.getenv(
    "FILE_STORAGE_ROOT", os.path.join(os.path.dirname(__file__), "storage")
)
FILE_MAX_BYTES = int(os.getenv("FILE_MAX_BYTES", str(20 * 1024 * 1024)))
PLUGINS_DIR = os.getenv(
    "PLUGINS_DIR", os.path.join(os.path.dirname(__file__), "plugins.d")
)
PLUGINS_DISABLED = {
    name.strip()
    for name in os.getenv("PLUGINS_DISABLED", "").split(",")
    if name.strip()
}
LLM_REQUEST_TIMEOUT_SECONDS = float(os.getenv("LLM_REQUEST_TIMEOUT_SECONDS", "60"))
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
LOGGER = logging.getLogger("inkwell")
