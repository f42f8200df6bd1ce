#!/usr/bin/env python3
"""Create the laboratory directory schema and print a quick table summary."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from labsite import settings
from labsite.db import count_rows, db_connect, ensure_bootstrap


def main() -> int:
    ensure_bootstrap()
    conn = db_connect()
    try:
        probes = {}
        for table in ("laboratories", "users", "user_roles", "research_groups", "publication_entries", "projects", "infrastructure"):
            probes[table] = count_rows(conn, table)
    finally:
        conn.close()

    print("BOOTSTRAP_OK")
    print("backend:", settings.DB_BACKEND)
    if settings.DB_BACKEND == "postgres":
        print("database_url_set:", bool(settings.DATABASE_URL))
    else:
        print("db_path:", settings.DB_PATH)
    print("counts:", probes)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
