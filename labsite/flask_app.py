"""Flask front for the laboratory directory.

The hand-dispatched WSGI app in ``labsite.server`` does all routing; Flask
adds the CLI commands and a familiar deployment target.
"""

from __future__ import annotations

import os

import click
from flask import Flask, request

from labsite import auth, db, settings
from labsite.server import app as wsgi_app
from labsite.server import configure_logging

flask_app = Flask(__name__, static_folder=None, template_folder=None)

flask_app.config["SECRET_KEY"] = settings.SECRET_KEY
flask_app.config["SESSION_COOKIE_SECURE"] = settings.COOKIE_SECURE
flask_app.config["SESSION_COOKIE_HTTPONLY"] = True
flask_app.config["SESSION_COOKIE_SAMESITE"] = "Lax"


@flask_app.before_request
def setup_request():
    # Probes answer on their own, even before the database is usable.
    if request.path in {"/healthz", "/readyz"}:
        return None
    try:
        db.ensure_bootstrap()
    except Exception:
        return flask_app.response_class("<h1>503 Service Unavailable</h1>", status=503, mimetype="text/html")
    return None


@flask_app.route("/", defaults={"path": ""}, methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
@flask_app.route("/<path:path>", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
def catch_all(path):
    """Delegate every route to the WSGI app and relay its response."""
    response_data = {}

    def start_response(status, headers, exc_info=None):
        response_data["status"] = status
        response_data["headers"] = headers
        return lambda s: None

    body = b"".join(wsgi_app(request.environ, start_response))
    return flask_app.response_class(
        body,
        status=response_data.get("status", "200 OK"),
        headers=response_data.get("headers", []),
    )


@flask_app.cli.command("init-db")
def init_db_command():
    """Create the schema and the bootstrap super-admin."""
    db.init_db()
    click.echo(f"Database initialized ({settings.DB_BACKEND}).")


@flask_app.cli.command("create-admin")
@click.option("--email", required=True, help="Address in the allowed domain.")
@click.option("--role", type=click.Choice(sorted(auth.ROLE_LABELS)), default=auth.SUPER_ADMIN, show_default=True)
@click.option("--lab-id", type=int, default=None, help="Laboratory for a lab_admin account.")
def create_admin_command(email, role, lab_id):
    """Create an account and print its temporary password."""
    db.ensure_bootstrap()
    conn = db.db_connect()
    try:
        _user_id, password = auth.create_user(conn, email, role, lab_id)
        conn.commit()
    except auth.AccountError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        conn.close()
    click.echo(f"Created {auth.normalize_email(email)} ({role}). Temporary password: {password}")


if __name__ == "__main__":
    configure_logging()
    flask_app.run(
        host=settings.HOST,
        port=settings.PORT,
        debug=os.environ.get("FLASK_DEBUG", "0") == "1",
        threaded=True,
    )
