import json
import re

from labsite import db, settings
from labsite.frame_sync import SCRIPT_CONFIG_PLACEHOLDER


def _injected_config(script):
    match = re.search(r"var CONFIG = (\{.*?\});\n", script)
    assert match, "config assignment missing"
    return json.loads(match.group(1))


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.get_data(as_text=True) == "ok"


def test_readyz(client):
    response = client.get("/readyz")
    assert response.status_code == 200
    assert response.get_data(as_text=True) == "ready"


def test_embed_script_carries_settings(client):
    response = client.get("/embed.js")
    assert response.status_code == 200
    assert response.headers["Content-Type"].startswith("application/javascript")
    script = response.get_data(as_text=True)
    assert SCRIPT_CONFIG_PLACEHOLDER not in script
    config = _injected_config(script)
    assert config["iframeId"] == "icmpp-labs"
    assert config["minHeight"] == 600
    assert config["allowedOrigins"] == ["https://labs.icmpp.ro"]
    assert config["messageTypes"]["requestHeight"] == "request-height"


def test_reporter_script_is_configured(client, monkeypatch):
    monkeypatch.setattr(settings, "EMBED_DEBOUNCE_MS", 250)
    script = client.get("/static/frame-reporter.js").get_data(as_text=True)
    assert _injected_config(script)["debounceMs"] == 250
    assert "postMessage" in script


def test_stylesheet_is_served(client):
    response = client.get("/static/style.css")
    assert response.status_code == 200
    assert response.headers["Content-Type"].startswith("text/css")


def test_static_paths_cannot_escape(client):
    assert client.get("/static/../settings.py").status_code == 404
    assert client.get("/static/missing.js").status_code == 404


def test_embed_config_endpoint(client):
    payload = client.get("/api/embed-config").get_json()
    assert payload["originMatch"] == "strict"


def test_unknown_route_is_404(client):
    assert client.get("/nope").status_code == 404


def test_bootstrap_failure_returns_503(client, monkeypatch):
    def broken():
        raise RuntimeError("disk full")

    monkeypatch.setattr(db, "init_db", broken)
    db.reset_bootstrap()
    assert client.get("/labs").status_code == 503
    assert client.get("/healthz").status_code == 200


def test_unexpected_errors_become_500(client, monkeypatch, caplog):
    from labsite import pages

    def explode(conn, req):
        raise RuntimeError("boom")

    monkeypatch.setattr(pages, "labs_page", explode)
    response = client.get("/labs")
    assert response.status_code == 500
    assert "boom" not in response.get_data(as_text=True)
    assert "Unhandled error on GET /labs" in caplog.text


def test_reporter_script_wires_the_model_stimuli(client):
    script = client.get("/static/frame-reporter.js").get_data(as_text=True)
    assert "sizeObserver.observe(document.body)" in script
    assert "mutationObserver.observe(document.body, { childList: true, subtree: true" in script
    assert 'window.addEventListener("resize", sendHeight)' in script
    assert "data.type === TYPES.requestHeight" in script
    assert "}, CONFIG.debounceMs);" in script
    assert 'window.addEventListener("pagehide", stop)' in script


def test_embed_script_checks_origin_before_applying_floor(client):
    script = client.get("/embed.js").get_data(as_text=True)
    assert script.index("originAllowed(event.origin)") < script.index("parseMessage(event.data)")
    assert "Math.max(height, CONFIG.minHeight)" in script
    assert "window.innerHeight * CONFIG.viewportFraction" in script
    assert "postMessage({ type: TYPES.requestHeight }" in script
