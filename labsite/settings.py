"""Runtime configuration for the laboratory directory portal.

Every value comes from an environment variable with a development default.
Modules read these as ``settings.NAME`` at call time.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Tuple

APP_NAME = "Laboratoarele ICMPP"
APP_TAGLINE = 'Institutul de Chimie Macromoleculară "Petru Poni" - Centru de excelență în cercetarea polimerilor'
BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.environ.get("LABS_DATA_DIR", str(BASE_DIR / "data")))
STATIC_DIR = Path(__file__).resolve().parent / "static"
DB_PATH = Path(os.environ.get("LABS_DB_PATH", str(DATA_DIR / "labs.db")))
DATABASE_URL = os.environ.get("LABS_DATABASE_URL", os.environ.get("DATABASE_URL", "")).strip()
DB_BACKEND = "postgres" if DATABASE_URL.startswith(("postgres://", "postgresql://")) else "sqlite"
DB_BUSY_TIMEOUT_MS = max(1000, int(os.environ.get("LABS_DB_BUSY_TIMEOUT_MS", "6000")))
SECRET_KEY = os.environ.get("LABS_SECRET_KEY", "change-this-secret-in-production")
COOKIE_SECURE = os.environ.get("LABS_COOKIE_SECURE", "0") == "1"
SESSION_DAYS = int(os.environ.get("LABS_SESSION_DAYS", "14"))
# Generic container vars are honoured; LABS_* take precedence where set.
HOST = os.environ.get("LABS_HOST", os.environ.get("HOST", "127.0.0.1"))
PORT = int(os.environ.get("LABS_PORT", os.environ.get("PORT", "8080")))
WSGI_THREADED = os.environ.get("LABS_WSGI_THREADED", "1") == "1"
LOG_LEVEL = os.environ.get("LABS_LOG_LEVEL", "INFO").strip().upper()

ALLOWED_EMAIL_DOMAIN = os.environ.get("LABS_ALLOWED_EMAIL_DOMAIN", "icmpp.ro").strip().lower().lstrip("@")
MIN_PASSWORD_LENGTH = 8
LOGIN_MAX_ATTEMPTS = int(os.environ.get("LABS_LOGIN_MAX_ATTEMPTS", "8"))
LOGIN_WINDOW_MINUTES = int(os.environ.get("LABS_LOGIN_WINDOW_MINUTES", "10"))
BOOTSTRAP_ADMIN_EMAIL = os.environ.get("LABS_BOOTSTRAP_ADMIN_EMAIL", f"admin@{ALLOWED_EMAIL_DOMAIN}").strip().lower()
BOOTSTRAP_ADMIN_PASSWORD = os.environ.get("LABS_BOOTSTRAP_ADMIN_PASSWORD", "")

UPLOAD_DIR = Path(os.environ.get("LABS_UPLOAD_DIR", str(DATA_DIR / "uploads")))
IMAGE_MAX_MB = 5
DOCUMENT_MAX_MB = 10
PUBLIC_BASE_URL = os.environ.get("LABS_PUBLIC_BASE_URL", f"http://{HOST}:{PORT}").strip().rstrip("/")


def _csv_env(name: str, default: str = "") -> Tuple[str, ...]:
    raw = os.environ.get(name, default)
    return tuple(part.strip().rstrip("/") for part in raw.split(",") if part.strip())


# Frame height sync. The iframe id must match the markup pasted in the host page.
EMBED_IFRAME_ID = os.environ.get("LABS_EMBED_IFRAME_ID", "icmpp-labs").strip()
EMBED_MIN_HEIGHT = max(1, int(os.environ.get("LABS_EMBED_MIN_HEIGHT", "600")))
EMBED_VIEWPORT_FRACTION = float(os.environ.get("LABS_EMBED_VIEWPORT_FRACTION", "0.8"))
EMBED_DEBOUNCE_MS = max(0, int(os.environ.get("LABS_EMBED_DEBOUNCE_MS", "100")))
# Senders the host page trusts: where this directory is deployed.
EMBED_ALLOWED_ORIGINS = _csv_env("LABS_EMBED_ALLOWED_ORIGINS", PUBLIC_BASE_URL)
# Pages allowed to frame the public directory.
EMBED_FRAME_ANCESTORS = _csv_env("LABS_EMBED_FRAME_ANCESTORS", "https://www.icmpp.ro,https://icmpp.ro")
EMBED_ORIGIN_MATCH = os.environ.get("LABS_EMBED_ORIGIN_MATCH", "strict").strip().lower()
