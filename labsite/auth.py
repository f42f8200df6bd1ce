"""Accounts, sessions and the two admin roles."""

from __future__ import annotations

import base64
import datetime as dt
import hashlib
import hmac
import secrets
import string
import threading
from typing import Dict, List, Optional, Tuple

from labsite import settings
from labsite.helpers import iso, utcnow

SUPER_ADMIN = "super_admin"
LAB_ADMIN = "lab_admin"
ROLE_LABELS = {SUPER_ADMIN: "Super Admin", LAB_ADMIN: "Admin Laborator"}

RATE_LIMIT: Dict[str, List[dt.datetime]] = {}
RATE_LIMIT_LOCK = threading.Lock()

ANONYMOUS = {"user": None, "role": None, "lab_id": None, "must_change_password": False, "csrf": ""}
PASSWORD_ITERATIONS = 310_000


class AccountError(ValueError):
    """Raised when an account operation is rejected; the message is user-facing."""


def hash_password(password: str, salt_b64: Optional[str] = None) -> Tuple[str, str]:
    salt = base64.b64decode(salt_b64) if salt_b64 else secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PASSWORD_ITERATIONS)
    return base64.b64encode(digest).decode("utf-8"), base64.b64encode(salt).decode("utf-8")


def verify_password(password: str, expected_hash: str, salt_b64: str) -> bool:
    computed, _ = hash_password(password, salt_b64)
    return hmac.compare_digest(computed, expected_hash)


def token_hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_temp_password(length: int = 12) -> str:
    """Random password that always mixes cases, a digit and a symbol."""
    alphabet = string.ascii_letters + string.digits + "!@#$%"
    body = "".join(secrets.choice(alphabet) for _ in range(max(4, length - 4)))
    return body + secrets.choice(string.ascii_uppercase) + secrets.choice(string.ascii_lowercase) + secrets.choice(string.digits) + secrets.choice("!@#$%")


def normalize_email(raw: Optional[str]) -> str:
    return str(raw or "").strip().lower()


def email_domain_allowed(email: str) -> bool:
    domain = settings.ALLOWED_EMAIL_DOMAIN
    if not domain:
        return "@" in email
    return email.endswith(f"@{domain}") and len(email) > len(domain) + 1


def validate_new_password(password: str, confirm: str) -> None:
    if len(password) < settings.MIN_PASSWORD_LENGTH:
        raise AccountError(f"Parola trebuie să aibă cel puțin {settings.MIN_PASSWORD_LENGTH} caractere.")
    if password != confirm:
        raise AccountError("Parolele nu coincid.")


def enforce_rate_limit(ip: str, max_attempts: Optional[int] = None, window_minutes: Optional[int] = None) -> bool:
    max_attempts = max_attempts or settings.LOGIN_MAX_ATTEMPTS
    window_minutes = window_minutes or settings.LOGIN_WINDOW_MINUTES
    now = utcnow()
    cutoff = now - dt.timedelta(minutes=window_minutes)
    with RATE_LIMIT_LOCK:
        history = [event for event in RATE_LIMIT.get(ip, []) if event >= cutoff]
        if len(history) >= max_attempts:
            RATE_LIMIT[ip] = history
            return False
        history.append(now)
        RATE_LIMIT[ip] = history
    return True


def create_session(conn, user_id: int, ip: str, user_agent: str) -> Tuple[str, str]:
    raw_token = secrets.token_urlsafe(32)
    csrf = secrets.token_urlsafe(24)
    expires = utcnow() + dt.timedelta(days=settings.SESSION_DAYS)
    conn.execute(
        "INSERT INTO sessions (user_id, token_hash, csrf_token, expires_at, created_at, last_seen_at, ip_address, user_agent) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (user_id, token_hash(raw_token), csrf, expires.isoformat(), iso(), iso(), ip, user_agent[:200]),
    )
    return raw_token, csrf


def revoke_session(conn, token: Optional[str]) -> None:
    if token:
        conn.execute("DELETE FROM sessions WHERE token_hash = ?", (token_hash(token),))


def authenticate(conn, email: str, password: str) -> Optional[Dict[str, object]]:
    user = conn.execute("SELECT * FROM users WHERE email = ? AND is_active = 1", (email,)).fetchone()
    if not user:
        return None
    try:
        valid = verify_password(password, str(user["password_hash"] or ""), str(user["password_salt"] or ""))
    except (ValueError, TypeError):
        valid = False
    return dict(user) if valid else None


def get_auth_context(conn, token: Optional[str]) -> Dict[str, object]:
    """Resolve the signed-in user and their role from a session cookie.

    The role row is read on every request, so role or lab changes made by a
    super-admin apply to open sessions immediately.
    """
    if not token:
        return dict(ANONYMOUS)

    session = conn.execute(
        """
        SELECT s.id AS session_id, s.expires_at, s.csrf_token, u.id AS user_id, u.email, u.is_active,
               r.role, r.lab_id, r.must_change_password
        FROM sessions s
        JOIN users u ON u.id = s.user_id
        LEFT JOIN user_roles r ON r.user_id = u.id
        WHERE s.token_hash = ?
        """,
        (token_hash(token),),
    ).fetchone()
    if not session:
        return dict(ANONYMOUS)

    try:
        expires_at = dt.datetime.fromisoformat(str(session["expires_at"]))
    except ValueError:
        expires_at = utcnow() - dt.timedelta(days=1)

    if expires_at < utcnow() or not session["is_active"] or session["role"] not in ROLE_LABELS:
        conn.execute("DELETE FROM sessions WHERE id = ?", (session["session_id"],))
        conn.commit()
        return dict(ANONYMOUS)

    conn.execute("UPDATE sessions SET last_seen_at = ? WHERE id = ?", (iso(), session["session_id"]))
    conn.commit()
    return {
        "user": {"id": int(session["user_id"]), "email": session["email"]},
        "role": session["role"],
        "lab_id": int(session["lab_id"]) if session["lab_id"] is not None else None,
        "must_change_password": bool(session["must_change_password"]),
        "csrf": session["csrf_token"],
    }


def is_super_admin(ctx: Dict[str, object]) -> bool:
    return ctx.get("role") == SUPER_ADMIN


def can_edit_lab(ctx: Dict[str, object], lab_id: Optional[int]) -> bool:
    if lab_id is None or not ctx.get("user"):
        return False
    if is_super_admin(ctx):
        return True
    return ctx.get("role") == LAB_ADMIN and ctx.get("lab_id") == int(lab_id)


def create_user(
    conn,
    email: str,
    role: str,
    lab_id: Optional[int],
    password: Optional[str] = None,
    must_change_password: bool = True,
) -> Tuple[int, str]:
    """Create an account with its role; returns (user id, initial password)."""
    email = normalize_email(email)
    if not email_domain_allowed(email):
        raise AccountError(f"Email-ul trebuie să fie de forma @{settings.ALLOWED_EMAIL_DOMAIN}")
    if role not in ROLE_LABELS:
        raise AccountError("Rol necunoscut.")
    if role == LAB_ADMIN:
        if lab_id is None:
            raise AccountError("Selectează laboratorul pentru admin")
        if not conn.execute("SELECT id FROM laboratories WHERE id = ?", (lab_id,)).fetchone():
            raise AccountError("Laboratorul selectat nu există.")
    else:
        lab_id = None
    if conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone():
        raise AccountError("Există deja un cont cu acest email.")

    initial_password = password or generate_temp_password()
    pw_hash, pw_salt = hash_password(initial_password)
    now = iso()
    user_id = conn.execute(
        "INSERT INTO users (email, password_hash, password_salt, is_active, created_at) VALUES (?, ?, ?, 1, ?) RETURNING id",
        (email, pw_hash, pw_salt, now),
    ).fetchone()["id"]
    conn.execute(
        "INSERT INTO user_roles (user_id, role, lab_id, must_change_password, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
        (user_id, role, lab_id, 1 if must_change_password else 0, now, now),
    )
    return int(user_id), initial_password


def set_password(
    conn, user_id: Optional[int], password: str, must_change_password: bool = False, keep_token: Optional[str] = None
) -> None:
    """Store a new password and sign out every session except ``keep_token``."""
    pw_hash, pw_salt = hash_password(password)
    conn.execute(
        "UPDATE users SET password_hash = ?, password_salt = ? WHERE id = ?",
        (pw_hash, pw_salt, user_id),
    )
    conn.execute(
        "UPDATE user_roles SET must_change_password = ?, updated_at = ? WHERE user_id = ?",
        (1 if must_change_password else 0, iso(), user_id),
    )
    if keep_token:
        conn.execute("DELETE FROM sessions WHERE user_id = ? AND token_hash != ?", (user_id, token_hash(keep_token)))
    else:
        conn.execute("DELETE FROM sessions WHERE user_id = ?", (user_id,))


def reset_password(conn, user_id: Optional[int]) -> str:
    """Issue a temporary password and sign the user out everywhere."""
    if not conn.execute("SELECT id FROM users WHERE id = ?", (user_id,)).fetchone():
        raise AccountError("Utilizatorul nu a fost găsit.")
    temp_password = generate_temp_password()
    set_password(conn, user_id, temp_password, must_change_password=True)
    return temp_password


def delete_user(conn, user_id: Optional[int], acting_user_id: int) -> None:
    if user_id is None:
        raise AccountError("Utilizatorul nu a fost găsit.")
    if int(user_id) == int(acting_user_id):
        raise AccountError("Nu îți poți șterge propriul cont.")
    if not conn.execute("SELECT id FROM users WHERE id = ?", (user_id,)).fetchone():
        raise AccountError("Utilizatorul nu a fost găsit.")
    conn.execute("DELETE FROM users WHERE id = ?", (user_id,))


def list_users(conn, search: str = ""):
    rows = conn.execute(
        """
        SELECT u.id, u.email, u.created_at, r.role, r.lab_id, r.must_change_password, l.name AS lab_name
        FROM users u
        LEFT JOIN user_roles r ON r.user_id = u.id
        LEFT JOIN laboratories l ON l.id = r.lab_id
        ORDER BY u.created_at DESC, u.id DESC
        """
    ).fetchall()
    needle = search.strip().lower()
    if not needle:
        return rows
    return [
        row for row in rows
        if needle in str(row["email"] or "").lower() or needle in str(row["lab_name"] or "").lower()
    ]
