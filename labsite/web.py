"""Request/response wrappers shared by the public and admin routes."""

from __future__ import annotations

import json
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import parse_qs, quote, unquote

from werkzeug.datastructures import FileStorage
from werkzeug.formparser import parse_form_data

from labsite import settings


class Request:
    """Thin wrapper over the WSGI environ with lazy form/file parsing."""

    def __init__(self, environ: dict):
        self.environ = environ
        self.method = environ.get("REQUEST_METHOD", "GET").upper()
        self.path = environ.get("PATH_INFO", "/") or "/"
        self.query = {k: v[0] for k, v in parse_qs(environ.get("QUERY_STRING", "")).items()}
        self.cookies = self._parse_cookies(environ.get("HTTP_COOKIE", ""))
        self._form: Optional[Dict[str, str]] = None
        self._files: Optional[Dict[str, FileStorage]] = None

    def _parse_cookies(self, raw_cookie: str) -> Dict[str, str]:
        cookies: Dict[str, str] = {}
        if not raw_cookie:
            return cookies
        for token in raw_cookie.split(";"):
            if "=" not in token:
                continue
            key, value = token.split("=", 1)
            cookies[key.strip()] = unquote(value.strip())
        return cookies

    @property
    def form(self) -> Dict[str, str]:
        if self._form is None:
            self._parse_form_data()
        return self._form or {}

    @property
    def files(self) -> Dict[str, FileStorage]:
        if self._files is None:
            self._parse_form_data()
        return self._files or {}

    def _parse_form_data(self) -> None:
        self._form = {}
        self._files = {}
        if self.method not in {"POST", "PUT", "PATCH", "DELETE"}:
            return
        _stream, form, files = parse_form_data(self.environ)
        self._form = {key: form.get(key, "") for key in form.keys()}
        self._files = {key: files[key] for key in files.keys()}

    @property
    def client_ip(self) -> str:
        return self.environ.get("REMOTE_ADDR", "unknown")

    @property
    def user_agent(self) -> str:
        return self.environ.get("HTTP_USER_AGENT", "")


class Response:
    """Response object that centralizes security headers.

    Pages are unframeable unless ``frame_ancestors`` lists the origins that
    may embed them.
    """

    def __init__(
        self,
        body: object = "",
        status: str = "200 OK",
        content_type: str = "text/html; charset=utf-8",
        headers: Optional[List[Tuple[str, str]]] = None,
        frame_ancestors: Optional[Iterable[str]] = None,
        cacheable: bool = False,
    ):
        self.body = body.encode("utf-8") if isinstance(body, str) else bytes(body)
        self.status = status
        self.content_type = content_type
        self.headers = headers or []
        self.frame_ancestors = list(frame_ancestors) if frame_ancestors is not None else None
        self.cacheable = cacheable

    def security_headers(self) -> List[Tuple[str, str]]:
        if self.frame_ancestors is None:
            ancestors = "'none'"
        else:
            ancestors = " ".join(["'self'"] + self.frame_ancestors)
        headers = [
            ("Content-Type", self.content_type),
            ("X-Content-Type-Options", "nosniff"),
            ("Referrer-Policy", "strict-origin-when-cross-origin"),
            ("Cache-Control", "public, max-age=300" if self.cacheable else "no-store"),
            ("Permissions-Policy", "camera=(), microphone=(), geolocation=()"),
            (
                "Content-Security-Policy",
                "default-src 'self'; style-src 'self'; script-src 'self'; img-src 'self' data: https:; "
                f"base-uri 'self'; form-action 'self'; frame-ancestors {ancestors}",
            ),
        ]
        if self.frame_ancestors is None:
            headers.append(("X-Frame-Options", "DENY"))
        return headers

    def wsgi(self, start_response):
        start_response(self.status, self.security_headers() + self.headers)
        return [self.body]


def redirect(location: str, cookies: Optional[List[str]] = None) -> Response:
    headers = [("Location", location)]
    for cookie in cookies or []:
        headers.append(("Set-Cookie", cookie))
    return Response("", status="302 Found", headers=headers)


def with_msg(path: str, message: str) -> str:
    joiner = "&" if "?" in path else "?"
    return f"{path}{joiner}msg={quote(message)}"


def json_response(payload: object, status: str = "200 OK") -> Response:
    return Response(json.dumps(payload), status=status, content_type="application/json; charset=utf-8")


def not_found(message: str = "Pagina nu a fost găsită.") -> Response:
    return Response(f"<h1>404 Not Found</h1><p>{message}</p>", status="404 Not Found")


def set_cookie(name: str, value: str, max_age: Optional[int] = None, path: str = "/") -> str:
    parts = [f"{name}={quote(value)}", f"Path={path}", "HttpOnly", "SameSite=Lax"]
    if settings.COOKIE_SECURE:
        parts.append("Secure")
    if max_age is not None:
        parts.append(f"Max-Age={max_age}")
    return "; ".join(parts)


def clear_cookie(name: str, path: str = "/") -> str:
    parts = [f"{name}=", "Max-Age=0", f"Path={path}", "HttpOnly", "SameSite=Lax"]
    if settings.COOKIE_SECURE:
        parts.append("Secure")
    return "; ".join(parts)
