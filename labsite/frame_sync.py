"""Embedded-frame height negotiation.

The public directory is shown inside an ``<iframe>`` on the institute's
WordPress site. Two small participants keep the frame as tall as its content:

- ``EmbeddedHeightReporter`` runs inside the frame. It measures the document
  and pushes ``resize`` messages to the parent, and answers ``request-height``.
- ``HostFrameController`` runs in the embedding page. It trusts only
  allow-listed origins and never lets the frame shrink below a floor.

This module is the reference model of that protocol. The browser scripts in
``static/embed.js`` and ``static/frame-reporter.js`` implement the same rules
and are configured from ``FrameSyncConfig.script_options()``.
"""

from __future__ import annotations

import html
import json
import logging
import math
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

from labsite import settings

logger = logging.getLogger(__name__)

RESIZE = "resize"
REQUEST_HEIGHT = "request-height"
MESSAGE_KINDS = (RESIZE, REQUEST_HEIGHT)

ORIGIN_MATCH_STRICT = "strict"
ORIGIN_MATCH_FRAGMENT = "fragment"
ORIGIN_MATCH_MODES = (ORIGIN_MATCH_STRICT, ORIGIN_MATCH_FRAGMENT)
DEFAULT_PORTS = {"http": 80, "https": 443}
SCRIPT_CONFIG_PLACEHOLDER = "{{frame_sync_config}}"


@dataclass(frozen=True)
class HeightMessage:
    """One height-sync message as it travels between browsing contexts."""

    kind: str
    height: Optional[int] = None

    def __post_init__(self) -> None:
        if self.kind not in MESSAGE_KINDS:
            raise ValueError(f"unknown message kind: {self.kind!r}")
        if self.kind == RESIZE:
            if isinstance(self.height, bool) or not isinstance(self.height, int) or self.height <= 0:
                raise ValueError("resize messages need a positive integer height")
        elif self.height is not None:
            raise ValueError("request-height messages carry no height")

    @classmethod
    def resize(cls, height: int) -> "HeightMessage":
        return cls(RESIZE, height)

    @classmethod
    def request_height(cls) -> "HeightMessage":
        return cls(REQUEST_HEIGHT)

    def to_wire(self) -> Dict[str, object]:
        if self.kind == RESIZE:
            return {"type": self.kind, "height": self.height}
        return {"type": self.kind}


def parse_message(data: object) -> Optional[HeightMessage]:
    """Decode a received payload, returning None for anything malformed."""
    if not isinstance(data, Mapping):
        return None
    kind = data.get("type")
    if kind == REQUEST_HEIGHT:
        return HeightMessage.request_height()
    if kind != RESIZE:
        return None
    height = data.get("height")
    if isinstance(height, bool) or not isinstance(height, (int, float)):
        return None
    if not math.isfinite(height) or height <= 0:
        return None
    return HeightMessage.resize(int(math.ceil(height)))


def clamp_height(height: int, floor: int) -> int:
    return max(int(height), int(floor))


def normalize_origin(value: object) -> str:
    """Serialize an origin as ``scheme://host[:port]``, or "" if it is not one."""
    if not isinstance(value, str) or not value.strip():
        return ""
    parts = urlsplit(value.strip())
    if not parts.scheme or not parts.hostname:
        return ""
    scheme = parts.scheme.lower()
    host = parts.hostname.lower()
    try:
        port = parts.port
    except ValueError:
        return ""
    if port is None or DEFAULT_PORTS.get(scheme) == port:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


def legacy_origin_fragment(origin: str) -> str:
    """First dotted label of an origin with its https scheme removed."""
    return origin.replace("https://", "").split(".")[0]


class OriginPolicy:
    """Decides which message senders the host trusts.

    ``strict`` compares serialized origins for equality. ``fragment`` keeps the
    historical behaviour of the WordPress snippet: an origin is trusted when it
    contains the first label of any allowed origin. Fragment matching admits
    look-alike hosts (``lab-gatekeeper.evil.example`` contains
    ``lab-gatekeeper``) and is only available when asked for explicitly.
    """

    def __init__(self, allowed: Iterable[str], host_origin: str = "", mode: str = ORIGIN_MATCH_STRICT):
        if mode not in ORIGIN_MATCH_MODES:
            raise ValueError(f"unknown origin match mode: {mode!r}")
        entries = [str(item) for item in allowed if item]
        if host_origin:
            entries.append(host_origin)
        self.mode = mode
        self._exact = frozenset(filter(None, (normalize_origin(item) for item in entries)))
        self._fragments = tuple(filter(None, (legacy_origin_fragment(item) for item in entries)))

    @property
    def origins(self) -> Tuple[str, ...]:
        return tuple(sorted(self._exact))

    def allows(self, origin: object) -> bool:
        if not isinstance(origin, str) or not origin:
            return False
        if self.mode == ORIGIN_MATCH_FRAGMENT:
            return any(fragment in origin for fragment in self._fragments)
        return normalize_origin(origin) in self._exact


@dataclass(frozen=True)
class FrameSyncConfig:
    iframe_id: str = "icmpp-labs"
    min_height: int = 600
    viewport_fraction: float = 0.8
    debounce_ms: int = 100
    allowed_origins: Tuple[str, ...] = field(default_factory=tuple)
    origin_match: str = ORIGIN_MATCH_STRICT
    ancestors: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_settings(cls) -> "FrameSyncConfig":
        return cls(
            iframe_id=settings.EMBED_IFRAME_ID,
            min_height=settings.EMBED_MIN_HEIGHT,
            viewport_fraction=settings.EMBED_VIEWPORT_FRACTION,
            debounce_ms=settings.EMBED_DEBOUNCE_MS,
            allowed_origins=tuple(settings.EMBED_ALLOWED_ORIGINS),
            origin_match=settings.EMBED_ORIGIN_MATCH,
            ancestors=tuple(settings.EMBED_FRAME_ANCESTORS),
        )

    def origin_policy(self, host_origin: str = "") -> OriginPolicy:
        return OriginPolicy(self.allowed_origins, host_origin=host_origin, mode=self.origin_match)

    def frame_ancestors(self) -> List[str]:
        """Origins allowed to embed the public pages, for the CSP header."""
        return sorted(set(filter(None, (normalize_origin(item) for item in self.ancestors))))

    def script_options(self) -> Dict[str, object]:
        if self.origin_match == ORIGIN_MATCH_FRAGMENT:
            origins = list(self.allowed_origins)
        else:
            origins = sorted(set(filter(None, (normalize_origin(item) for item in self.allowed_origins))))
        return {
            "iframeId": self.iframe_id,
            "minHeight": self.min_height,
            "viewportFraction": self.viewport_fraction,
            "debounceMs": self.debounce_ms,
            "allowedOrigins": origins,
            "originMatch": self.origin_match,
            "messageTypes": {"resize": RESIZE, "requestHeight": REQUEST_HEIGHT},
        }


def render_script(path: Path, config: FrameSyncConfig) -> str:
    """Load a browser script and inject the protocol constants into it."""
    payload = json.dumps(config.script_options(), sort_keys=True)
    return path.read_text(encoding="utf-8").replace(SCRIPT_CONFIG_PLACEHOLDER, payload)


def embed_snippet(base_url: str, config: FrameSyncConfig) -> str:
    """Markup to paste into the host page (WordPress custom HTML block)."""
    base = base_url.rstrip("/")
    return (
        f'<iframe id="{html.escape(config.iframe_id, quote=True)}" '
        f'src="{html.escape(base, quote=True)}/labs" width="100%" frameborder="0" '
        f'style="border: none; min-height: {int(config.min_height)}px;"></iframe>\n'
        f'<script src="{html.escape(base, quote=True)}/embed.js"></script>'
    )


@dataclass
class MessageEvent:
    origin: str
    data: Any = None


class TimerScheduler:
    """Runs callbacks on daemon ``threading.Timer`` threads."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer


class Debouncer:
    """Coalesces bursts of triggers into one deferred call.

    States: ``idle -> pending -> idle``. A trigger while pending restarts the
    delay instead of queueing a second call. ``close()`` is final: the pending
    call is cancelled and later triggers are ignored.
    """

    IDLE = "idle"
    PENDING = "pending"
    CLOSED = "closed"

    def __init__(self, delay_ms: int, action: Callable[[], object], scheduler: Optional[Any] = None):
        self.delay = max(0, int(delay_ms)) / 1000.0
        self._action = action
        self._scheduler = scheduler or TimerScheduler()
        self._lock = threading.Lock()
        self._handle: Optional[Any] = None
        self._generation = 0
        self.state = self.IDLE

    def trigger(self) -> bool:
        with self._lock:
            if self.state == self.CLOSED:
                return False
            if self._handle is not None:
                self._handle.cancel()
            self._generation += 1
            generation = self._generation
            self._handle = self._scheduler.call_later(self.delay, lambda: self._fire(generation))
            self.state = self.PENDING
        return True

    def _fire(self, generation: int) -> None:
        with self._lock:
            # A cancelled timer can still be mid-callback on its own thread.
            if self.state != self.PENDING or generation != self._generation:
                return
            self.state = self.IDLE
            self._handle = None
        self._action()

    def close(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.cancel()
                self._handle = None
            self.state = self.CLOSED


class EmbeddedHeightReporter:
    """Pushes the embedded document's height to the parent browsing context.

    ``window`` is the frame's own window and must provide:

    - ``parent``: the parent window (``None`` or the window itself when
      top-level), exposing ``post_message(data, target_origin)``
    - ``scroll_height()``: full scrollable height of the document root
    - ``observe_size(callback)`` on the body and ``observe_mutations(callback)``
      on the body subtree: each returns an observer with ``disconnect()``
    - ``add_event_listener(kind, handler)`` / ``remove_event_listener(kind, handler)``
    """

    def __init__(self, window: Any, config: Optional[FrameSyncConfig] = None, scheduler: Optional[Any] = None):
        self.window = window
        self.config = config or FrameSyncConfig.from_settings()
        self._debouncer = Debouncer(self.config.debounce_ms, self.report_height, scheduler)
        self._observers: List[Any] = []
        self._listeners: List[Tuple[str, Callable[..., Any]]] = []
        self._started = False
        self._stopped = False
        self.reports_sent = 0

    @property
    def active(self) -> bool:
        return self._started and not self._stopped

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.report_height()
        self._observers.append(self.window.observe_size(self._on_size_change))
        self._observers.append(self.window.observe_mutations(self._on_mutation))
        self._listen("message", self.handle_message)
        self._listen("resize", self._on_viewport_resize)

    def _listen(self, kind: str, handler: Callable[..., Any]) -> None:
        self.window.add_event_listener(kind, handler)
        self._listeners.append((kind, handler))

    def _is_embedded(self) -> bool:
        parent = self.window.parent
        return parent is not None and parent is not self.window

    def report_height(self) -> bool:
        """Send one ``resize`` message; returns whether it was handed to the parent."""
        if self._stopped:
            return False
        try:
            if not self._is_embedded():
                return False
            height = int(self.window.scroll_height())
            if height <= 0:
                return False
            self.window.parent.post_message(HeightMessage.resize(height).to_wire(), "*")
        except Exception:
            # Cross-origin parents may refuse access; the host keeps its fallback height.
            logger.debug("Height report to parent frame failed", exc_info=True)
            return False
        self.reports_sent += 1
        return True

    def handle_message(self, event: Any) -> None:
        message = parse_message(getattr(event, "data", None))
        if message is not None and message.kind == REQUEST_HEIGHT:
            self.report_height()

    def _on_size_change(self, *_args: Any) -> None:
        self.report_height()

    def _on_viewport_resize(self, *_args: Any) -> None:
        self.report_height()

    def _on_mutation(self, *_args: Any) -> None:
        self._debouncer.trigger()

    @property
    def pending(self) -> bool:
        return self._debouncer.state == Debouncer.PENDING

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._debouncer.close()
        for observer in self._observers:
            observer.disconnect()
        self._observers = []
        for kind, handler in self._listeners:
            self.window.remove_event_listener(kind, handler)
        self._listeners = []


class HostFrameController:
    """Keeps the embedding page's iframe in step with its content height.

    ``window`` provides ``inner_height``, ``origin`` and the listener methods;
    ``document.get_element_by_id`` returns the frame element, which provides
    ``set_height(px)``, ``post_message(data, target_origin)`` (into its content
    window) and the listener methods.
    """

    def __init__(self, window: Any, document: Any, config: Optional[FrameSyncConfig] = None):
        self.window = window
        self.document = document
        self.config = config or FrameSyncConfig.from_settings()
        self.origin_policy = self.config.origin_policy(host_origin=getattr(window, "origin", "") or "")
        self.frame: Optional[Any] = None
        self.applied_height: Optional[int] = None
        self._connected = False

    def initialize(self) -> bool:
        frame = self.document.get_element_by_id(self.config.iframe_id)
        if frame is None:
            logger.warning('Frame sync: iframe with id="%s" not found', self.config.iframe_id)
            return False
        self.frame = frame
        self.window.add_event_listener("message", self.handle_message)
        self.apply_fallback_height()
        frame.add_event_listener("load", self.on_frame_load)
        self._connected = True
        return True

    def fallback_height(self) -> int:
        viewport = float(getattr(self.window, "inner_height", 0) or 0)
        return clamp_height(int(round(viewport * self.config.viewport_fraction)), self.config.min_height)

    def apply_fallback_height(self) -> None:
        self._set_height(self.fallback_height())

    def _set_height(self, height: int) -> None:
        if self.frame is None:
            return
        self.frame.set_height(height)
        self.applied_height = height

    def on_frame_load(self, *_args: Any) -> bool:
        if self.frame is None:
            return False
        try:
            self.frame.post_message(HeightMessage.request_height().to_wire(), "*")
        except Exception:
            # Cross-origin content window; the fallback height stays in effect.
            return False
        return True

    def handle_message(self, event: Any) -> bool:
        """Apply a trusted ``resize``; returns whether the frame height was set."""
        if self.frame is None or not self._connected:
            return False
        if not self.origin_policy.allows(getattr(event, "origin", None)):
            return False
        message = parse_message(getattr(event, "data", None))
        if message is None or message.kind != RESIZE:
            return False
        self._set_height(clamp_height(message.height or 0, self.config.min_height))
        return True

    def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        self.window.remove_event_listener("message", self.handle_message)
        if self.frame is not None:
            self.frame.remove_event_listener("load", self.on_frame_load)
