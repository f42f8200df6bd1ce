"""Database connections, schema bootstrap and first-run seeding.

SQLite is the default store. When ``settings.DATABASE_URL`` points at
PostgreSQL the same sqlite-style calls go through ``PostgresCompatConnection``.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import threading
from typing import Any, List, Tuple

from labsite import auth, settings

try:
    import psycopg
    from psycopg.rows import dict_row
except ImportError:  # pragma: no cover - postgres is an optional extra
    psycopg = None
    dict_row = None

logger = logging.getLogger(__name__)

BOOTSTRAPPED = False
BOOTSTRAP_LOCK = threading.Lock()
BOOTSTRAP_ERROR = ""

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    password_salt TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS laboratories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    short_name TEXT,
    head_name TEXT NOT NULL,
    head_email TEXT,
    logo_url TEXT,
    banner_url TEXT,
    description TEXT,
    contact_email TEXT,
    contact_phone TEXT,
    address TEXT,
    explore_url TEXT,
    display_order INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_roles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL UNIQUE REFERENCES users(id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    lab_id INTEGER REFERENCES laboratories(id) ON DELETE SET NULL,
    must_change_password INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    token_hash TEXT NOT NULL UNIQUE,
    csrf_token TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    last_seen_at TEXT NOT NULL,
    ip_address TEXT,
    user_agent TEXT
);

CREATE TABLE IF NOT EXISTS research_groups (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    lab_id INTEGER NOT NULL REFERENCES laboratories(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    description TEXT,
    leader_name TEXT,
    leader_email TEXT,
    members TEXT,
    topics TEXT,
    display_order INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS group_members (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id INTEGER NOT NULL REFERENCES research_groups(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    position TEXT,
    email TEXT,
    description TEXT,
    photo_url TEXT,
    cv_url TEXT,
    display_order INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS group_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id INTEGER NOT NULL REFERENCES research_groups(id) ON DELETE CASCADE,
    title TEXT,
    content TEXT,
    image_url TEXT,
    display_order INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS publication_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    lab_id INTEGER NOT NULL REFERENCES laboratories(id) ON DELETE CASCADE,
    year INTEGER NOT NULL,
    content TEXT NOT NULL,
    display_order INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    lab_id INTEGER NOT NULL REFERENCES laboratories(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT,
    funding_source TEXT,
    budget TEXT,
    start_date TEXT,
    end_date TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    project_code TEXT,
    director_name TEXT,
    url TEXT,
    display_order INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS infrastructure (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    lab_id INTEGER NOT NULL REFERENCES laboratories(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    description TEXT,
    image_url TEXT,
    specifications TEXT,
    responsible_name TEXT,
    responsible_email TEXT,
    external_link TEXT,
    document_url TEXT,
    display_order INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS media (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    lab_id INTEGER REFERENCES laboratories(id) ON DELETE SET NULL,
    file_name TEXT NOT NULL,
    file_path TEXT NOT NULL,
    file_type TEXT,
    file_size INTEGER,
    uploaded_by INTEGER REFERENCES users(id) ON DELETE SET NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_labs_order ON laboratories(display_order);
CREATE INDEX IF NOT EXISTS idx_groups_lab ON research_groups(lab_id, display_order);
CREATE INDEX IF NOT EXISTS idx_members_group ON group_members(group_id, display_order);
CREATE INDEX IF NOT EXISTS idx_results_group ON group_results(group_id, display_order);
CREATE INDEX IF NOT EXISTS idx_publications_lab ON publication_entries(lab_id, year, display_order);
CREATE INDEX IF NOT EXISTS idx_projects_lab ON projects(lab_id, display_order);
CREATE INDEX IF NOT EXISTS idx_infrastructure_lab ON infrastructure(lab_id, display_order);
"""


def split_sql_script(script: str) -> List[str]:
    return [stmt.strip() for stmt in script.split(";") if stmt.strip()]


def adapt_sql_for_postgres(sql: str) -> str:
    text = re.sub(r"INTEGER\s+PRIMARY\s+KEY\s+AUTOINCREMENT", "BIGSERIAL PRIMARY KEY", sql.strip(), flags=re.IGNORECASE)
    out: List[str] = []
    in_single = False
    for ch in text:
        if ch == "'":
            in_single = not in_single
        out.append("%s" if ch == "?" and not in_single else ch)
    return "".join(out)


class PostgresCompatConnection:
    """Accepts the sqlite-style calls used across the app and runs them on PostgreSQL."""

    def __init__(self, conn: Any):
        self._conn = conn

    def execute(self, sql: str, params: Tuple[Any, ...] = ()):
        cur = self._conn.cursor()
        try:
            cur.execute(adapt_sql_for_postgres(sql), params)
        except Exception as exc:
            # Integrity violations are handled as sqlite3.IntegrityError by route handlers.
            if str(getattr(exc, "sqlstate", "") or "").startswith("23"):
                self._conn.rollback()
                raise sqlite3.IntegrityError(str(exc)) from exc
            raise
        return cur

    def executescript(self, script: str) -> None:
        for stmt in split_sql_script(script):
            self.execute(stmt)

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()


def db_connect():
    if settings.DB_BACKEND == "postgres":
        if psycopg is None:
            raise RuntimeError("PostgreSQL backend requested but psycopg is not installed.")
        raw = psycopg.connect(settings.DATABASE_URL, row_factory=dict_row, autocommit=False)
        return PostgresCompatConnection(raw)

    settings.DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(settings.DB_PATH), timeout=settings.DB_BUSY_TIMEOUT_MS / 1000.0)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {settings.DB_BUSY_TIMEOUT_MS}")
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def ensure_bootstrap() -> None:
    """Initialize the database once per process; concurrent first requests wait on the lock."""
    global BOOTSTRAPPED, BOOTSTRAP_ERROR
    if BOOTSTRAPPED:
        return
    with BOOTSTRAP_LOCK:
        if BOOTSTRAPPED:
            return
        try:
            init_db()
            BOOTSTRAPPED = True
            BOOTSTRAP_ERROR = ""
        except Exception as exc:
            BOOTSTRAP_ERROR = str(exc)
            logger.exception("Database bootstrap failed")
            raise


def reset_bootstrap() -> None:
    global BOOTSTRAPPED, BOOTSTRAP_ERROR
    with BOOTSTRAP_LOCK:
        BOOTSTRAPPED = False
        BOOTSTRAP_ERROR = ""


def init_db() -> None:
    """Create the schema and the first super-admin. Safe to call repeatedly."""
    conn = db_connect()
    try:
        conn.executescript(SCHEMA)
        seed_super_admin(conn)
        conn.commit()
    finally:
        conn.close()


def seed_super_admin(conn) -> None:
    existing = conn.execute("SELECT id FROM user_roles WHERE role = ?", (auth.SUPER_ADMIN,)).fetchone()
    if existing:
        return
    email = settings.BOOTSTRAP_ADMIN_EMAIL
    password = settings.BOOTSTRAP_ADMIN_PASSWORD
    if conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone():
        logger.warning("Bootstrap admin %s exists without a super_admin role; leaving it untouched", email)
        return
    user_id, initial = auth.create_user(
        conn,
        email,
        auth.SUPER_ADMIN,
        None,
        password=password or None,
        must_change_password=not password,
    )
    if password:
        logger.info("Bootstrap super-admin %s created (id=%s)", email, user_id)
    else:
        logger.warning("Bootstrap super-admin %s created with temporary password %s; change it at first sign-in", email, initial)


def count_rows(conn, table: str) -> int:
    row = conn.execute(f"SELECT COUNT(*) AS c FROM {table}").fetchone()
    return int(row["c"]) if row else 0

