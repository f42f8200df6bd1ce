"""WSGI entry point for the laboratory directory and its admin panel."""

from __future__ import annotations

import logging
import mimetypes
from socketserver import ThreadingMixIn
from wsgiref.simple_server import WSGIServer, make_server

from labsite import admin, db, pages, settings, uploads
from labsite.frame_sync import FrameSyncConfig, render_script
from labsite.helpers import h
from labsite.web import Response, Request, json_response, not_found, redirect

logger = logging.getLogger(__name__)

# Scripts that carry the frame sync configuration placeholder.
TEMPLATED_SCRIPTS = {"embed.js", "frame-reporter.js"}
STATIC_TYPES = {
    ".css": "text/css; charset=utf-8",
    ".js": "application/javascript; charset=utf-8",
    ".svg": "image/svg+xml",
}


class ThreadedWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


def serve_static(rel: str) -> Response:
    static_file = (settings.STATIC_DIR / rel).resolve()
    if settings.STATIC_DIR.resolve() not in static_file.parents or not static_file.is_file():
        return Response("Not found", status="404 Not Found", content_type="text/plain")
    mime = STATIC_TYPES.get(static_file.suffix, "text/plain; charset=utf-8")
    if static_file.name in TEMPLATED_SCRIPTS:
        body = render_script(static_file, FrameSyncConfig.from_settings())
    else:
        body = static_file.read_text(encoding="utf-8")
    return Response(body, content_type=mime, cacheable=True)


def serve_upload(path: str) -> Response:
    target = uploads.resolve_public_path(path)
    if target is None or not target.is_file():
        return Response("Not found", status="404 Not Found", content_type="text/plain")
    mime = mimetypes.guess_type(target.name)[0] or "application/octet-stream"
    return Response(target.read_bytes(), content_type=mime, cacheable=True)


def app(environ, start_response):
    """WSGI callable. Routes are matched explicitly, public first."""
    req = Request(environ)

    if req.path.startswith("/static/"):
        return serve_static(req.path[len("/static/"):]).wsgi(start_response)
    if req.path == "/embed.js":
        return serve_static("embed.js").wsgi(start_response)
    if req.path.startswith(uploads.PUBLIC_PREFIX):
        return serve_upload(req.path).wsgi(start_response)

    if req.path == "/healthz":
        return Response("ok", content_type="text/plain").wsgi(start_response)
    if req.path == "/readyz":
        try:
            db.ensure_bootstrap()
            probe = db.db_connect()
            probe.execute("SELECT 1").fetchone()
            probe.close()
            return Response("ready", content_type="text/plain").wsgi(start_response)
        except Exception as exc:
            logger.warning("Readiness probe failed: %s", exc)
            return Response(
                f"not-ready: {exc}",
                status="503 Service Unavailable",
                content_type="text/plain",
            ).wsgi(start_response)

    try:
        db.ensure_bootstrap()
    except Exception as exc:
        body = f"<h1>503 Service Unavailable</h1><p>Inițializarea bazei de date a eșuat: {h(str(exc))}</p>"
        return Response(body, status="503 Service Unavailable").wsgi(start_response)

    conn = db.db_connect()
    try:
        if req.path == "/":
            return redirect("/labs").wsgi(start_response)
        if req.path == "/labs" and req.method == "GET":
            return pages.labs_page(conn, req).wsgi(start_response)
        if req.path == "/api/labs" and req.method == "GET":
            return json_response({"labs": pages.public_labs_payload(conn)}).wsgi(start_response)
        if req.path == "/api/embed-config" and req.method == "GET":
            return json_response(FrameSyncConfig.from_settings().script_options()).wsgi(start_response)
        if req.path == "/admin" or req.path.startswith("/admin/"):
            return admin.handle_admin(conn, req).wsgi(start_response)
        return not_found().wsgi(start_response)
    except Exception:
        logger.exception("Unhandled error on %s %s", req.method, req.path)
        return Response(
            "<h1>500 Internal Server Error</h1><p>A apărut o eroare neașteptată.</p>",
            status="500 Internal Server Error",
        ).wsgi(start_response)
    finally:
        conn.close()


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def run() -> None:
    configure_logging()
    db.ensure_bootstrap()
    server_mode = "threaded" if settings.WSGI_THREADED else "single-threaded"
    logger.info(
        "%s running on http://%s:%s (backend=%s, mode=%s)",
        settings.APP_NAME,
        settings.HOST,
        settings.PORT,
        settings.DB_BACKEND,
        server_mode,
    )
    if settings.WSGI_THREADED:
        server = make_server(settings.HOST, settings.PORT, app, server_class=ThreadedWSGIServer)
    else:
        server = make_server(settings.HOST, settings.PORT, app)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    run()
