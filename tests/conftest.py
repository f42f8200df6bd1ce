"""Shared fixtures: a throwaway database per test and fake browser contexts."""

import re

import pytest

from labsite import auth, db, settings
from labsite.flask_app import flask_app

ADMIN_EMAIL = "admin@icmpp.ro"
ADMIN_PASSWORD = "super-secret-1"
CSRF_RE = re.compile(r'name="csrf_token" value="([^"]+)"')


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "DB_BACKEND", "sqlite")
    monkeypatch.setattr(settings, "DB_PATH", tmp_path / "labs.db")
    monkeypatch.setattr(settings, "UPLOAD_DIR", tmp_path / "uploads")
    monkeypatch.setattr(settings, "ALLOWED_EMAIL_DOMAIN", "icmpp.ro")
    monkeypatch.setattr(settings, "BOOTSTRAP_ADMIN_EMAIL", ADMIN_EMAIL)
    monkeypatch.setattr(settings, "BOOTSTRAP_ADMIN_PASSWORD", ADMIN_PASSWORD)
    monkeypatch.setattr(settings, "COOKIE_SECURE", False)
    monkeypatch.setattr(settings, "PUBLIC_BASE_URL", "https://labs.icmpp.ro")
    monkeypatch.setattr(settings, "EMBED_ALLOWED_ORIGINS", ("https://labs.icmpp.ro",))
    monkeypatch.setattr(settings, "EMBED_FRAME_ANCESTORS", ("https://www.icmpp.ro", "https://icmpp.ro"))
    monkeypatch.setattr(settings, "EMBED_ORIGIN_MATCH", "strict")
    monkeypatch.setattr(auth, "PASSWORD_ITERATIONS", 1000)
    auth.RATE_LIMIT.clear()
    db.reset_bootstrap()
    yield
    db.reset_bootstrap()
    auth.RATE_LIMIT.clear()


@pytest.fixture
def conn():
    db.ensure_bootstrap()
    connection = db.db_connect()
    yield connection
    connection.close()


@pytest.fixture
def client():
    flask_app.config["TESTING"] = True
    return flask_app.test_client()


def login(client, email=ADMIN_EMAIL, password=ADMIN_PASSWORD):
    return client.post("/admin/login", data={"email": email, "password": password})


def csrf_token(client):
    page = client.get("/admin/password").get_data(as_text=True)
    match = CSRF_RE.search(page)
    assert match, "csrf token missing from admin page"
    return match.group(1)


@pytest.fixture
def admin_client(client):
    response = login(client)
    assert response.status_code == 302
    return client


@pytest.fixture
def make_lab(conn):
    from labsite import records

    def _make(name="Laborator Polimeri", head_name="Dr. Ion Popescu", **extra):
        values = {"name": name, "head_name": head_name, "is_active": 1}
        values.update(extra)
        lab_id = records.create_record(conn, "labs", None, values)
        conn.commit()
        return lab_id

    return _make


@pytest.fixture
def make_lab_admin(conn):
    def _make(lab_id, email="lab.admin@icmpp.ro", password="lab-pass-123"):
        user_id, _ = auth.create_user(conn, email, auth.LAB_ADMIN, lab_id, password=password, must_change_password=False)
        conn.commit()
        return user_id, email, password

    return _make


class ManualScheduler:
    """Deterministic stand-in for ``TimerScheduler``; time moves on ``advance``."""

    def __init__(self):
        self.now = 0.0
        self.handles = []

    def call_later(self, delay, callback):
        handle = ScheduledCall(self.now + delay, callback)
        self.handles.append(handle)
        return handle

    def advance(self, seconds):
        self.now += seconds
        due = [h for h in self.handles if not h.cancelled and not h.fired and h.when <= self.now]
        for handle in sorted(due, key=lambda h: h.when):
            handle.fired = True
            handle.callback()

    @property
    def pending(self):
        return [h for h in self.handles if not h.cancelled and not h.fired]


class ScheduledCall:
    def __init__(self, when, callback):
        self.when = when
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class FakeObserver:
    def __init__(self, callback):
        self.callback = callback
        self.connected = True

    def disconnect(self):
        self.connected = False

    def fire(self):
        if self.connected:
            self.callback()


class ListenerMixin:
    def _init_listeners(self):
        self.listeners = {}

    def add_event_listener(self, kind, handler):
        self.listeners.setdefault(kind, []).append(handler)

    def remove_event_listener(self, kind, handler):
        if handler in self.listeners.get(kind, []):
            self.listeners[kind].remove(handler)

    def dispatch(self, kind, event=None):
        for handler in list(self.listeners.get(kind, [])):
            handler(event)


class FakeParentWindow:
    def __init__(self, fail=False):
        self.fail = fail
        self.messages = []

    def post_message(self, data, target_origin):
        if self.fail:
            raise PermissionError("Blocked a frame from accessing a cross-origin frame")
        self.messages.append((data, target_origin))


class FakeFrameWindow(ListenerMixin):
    """Embedded document's window with a controllable height."""

    def __init__(self, parent=None, height=450, top_level=False):
        self._init_listeners()
        self.parent = self if top_level else (parent or FakeParentWindow())
        self.height = height
        self.size_observers = []
        self.mutation_observers = []

    def scroll_height(self):
        return self.height

    def observe_size(self, callback):
        observer = FakeObserver(callback)
        self.size_observers.append(observer)
        return observer

    def observe_mutations(self, callback):
        observer = FakeObserver(callback)
        self.mutation_observers.append(observer)
        return observer

    def mutate(self, new_height=None):
        if new_height is not None:
            self.height = new_height
        for observer in self.mutation_observers:
            observer.fire()


class FakeIframe(ListenerMixin):
    def __init__(self, fail_post=False):
        self._init_listeners()
        self.fail_post = fail_post
        self.heights = []
        self.posted = []

    @property
    def height(self):
        return self.heights[-1] if self.heights else None

    def set_height(self, px):
        self.heights.append(px)

    def post_message(self, data, target_origin):
        if self.fail_post:
            raise PermissionError("cross-origin content window")
        self.posted.append((data, target_origin))


class FakeHostWindow(ListenerMixin):
    def __init__(self, inner_height=1000, origin="https://www.icmpp.ro"):
        self._init_listeners()
        self.inner_height = inner_height
        self.origin = origin


class FakeDocument:
    def __init__(self, elements=None):
        self.elements = dict(elements or {})

    def get_element_by_id(self, element_id):
        return self.elements.get(element_id)
