from __future__ import annotations

import datetime as dt
import html
from typing import Optional


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def iso(ts: Optional[dt.datetime] = None) -> str:
    value = ts or utcnow()
    return value.replace(microsecond=0).isoformat()


def h(value: object) -> str:
    if value is None:
        return ""
    return html.escape(str(value), quote=True)


def to_int(value: Optional[object], default: Optional[int] = None) -> Optional[int]:
    if value is None or value == "":
        return default
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def parse_date(value: str) -> Optional[str]:
    """Accept ISO dates and day-first dates, return ISO or None."""
    if not value:
        return None
    text = value.strip()
    for fmt in ("%Y-%m-%d", "%d.%m.%Y", "%d/%m/%Y"):
        try:
            return dt.datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def is_checked(value: Optional[str]) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "on", "yes"}
