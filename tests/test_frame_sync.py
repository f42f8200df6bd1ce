"""Height negotiation between the embedded directory and its host page."""

import logging
import threading

import pytest

from conftest import (
    FakeDocument,
    FakeFrameWindow,
    FakeHostWindow,
    FakeIframe,
    FakeParentWindow,
    ManualScheduler,
)
from labsite.frame_sync import (
    REQUEST_HEIGHT,
    RESIZE,
    Debouncer,
    EmbeddedHeightReporter,
    FrameSyncConfig,
    HeightMessage,
    HostFrameController,
    MessageEvent,
    OriginPolicy,
    TimerScheduler,
    clamp_height,
    embed_snippet,
    normalize_origin,
    parse_message,
)

APP_ORIGIN = "https://labs.icmpp.ro"
HOST_ORIGIN = "https://www.icmpp.ro"


@pytest.fixture
def config():
    return FrameSyncConfig(
        iframe_id="icmpp-labs",
        min_height=600,
        viewport_fraction=0.8,
        debounce_ms=100,
        allowed_origins=(APP_ORIGIN,),
    )


@pytest.fixture
def host(config):
    window = FakeHostWindow(inner_height=1000, origin=HOST_ORIGIN)
    iframe = FakeIframe()
    controller = HostFrameController(window, FakeDocument({"icmpp-labs": iframe}), config)
    assert controller.initialize()
    return controller, window, iframe


def resize_from(origin, height):
    return MessageEvent(origin=origin, data={"type": RESIZE, "height": height})


# --- message codec ---------------------------------------------------------


def test_resize_message_wire_format():
    assert HeightMessage.resize(450).to_wire() == {"type": "resize", "height": 450}
    assert HeightMessage.request_height().to_wire() == {"type": "request-height"}


@pytest.mark.parametrize("height", [0, -1, True, 2.5, None])
def test_resize_message_rejects_bad_heights(height):
    with pytest.raises(ValueError):
        HeightMessage(RESIZE, height)


def test_request_height_carries_no_height():
    with pytest.raises(ValueError):
        HeightMessage(REQUEST_HEIGHT, 10)
    with pytest.raises(ValueError):
        HeightMessage("scroll")


def test_parse_message_rounds_fractional_heights_up():
    assert parse_message({"type": "resize", "height": 450.2}) == HeightMessage.resize(451)


@pytest.mark.parametrize(
    "data",
    [
        None,
        "resize",
        ["resize", 900],
        {"height": 900},
        {"type": "scroll", "height": 900},
        {"type": "resize"},
        {"type": "resize", "height": 0},
        {"type": "resize", "height": -20},
        {"type": "resize", "height": "900"},
        {"type": "resize", "height": True},
        {"type": "resize", "height": float("nan")},
        {"type": "resize", "height": float("inf")},
    ],
)
def test_parse_message_drops_malformed_payloads(data):
    assert parse_message(data) is None


def test_parse_message_accepts_request_height():
    assert parse_message({"type": "request-height"}).kind == REQUEST_HEIGHT


def test_clamp_height_never_goes_below_floor():
    assert clamp_height(450, 600) == 600
    assert clamp_height(900, 600) == 900


# --- origins ---------------------------------------------------------------


def test_normalize_origin():
    assert normalize_origin("https://WWW.icmpp.ro:443/labs?x=1") == "https://www.icmpp.ro"
    assert normalize_origin("http://localhost:8080") == "http://localhost:8080"
    assert normalize_origin("not an origin") == ""
    assert normalize_origin(None) == ""


def test_strict_policy_requires_exact_origin():
    policy = OriginPolicy([APP_ORIGIN], host_origin=HOST_ORIGIN)
    assert policy.allows(APP_ORIGIN)
    assert policy.allows(HOST_ORIGIN)
    assert not policy.allows("https://labs.icmpp.ro.evil.example")
    assert not policy.allows("http://labs.icmpp.ro")
    assert not policy.allows("")
    assert not policy.allows(None)


def test_fragment_policy_keeps_substring_matching():
    policy = OriginPolicy([APP_ORIGIN], mode="fragment")
    assert policy.allows(APP_ORIGIN)
    # Look-alike hosts pass in this mode; strict mode exists for that reason.
    assert policy.allows("https://labs-mirror.evil.example")
    assert not policy.allows("https://example.org")


def test_unknown_policy_mode_is_rejected():
    with pytest.raises(ValueError):
        OriginPolicy([APP_ORIGIN], mode="prefix")


# --- host controller -------------------------------------------------------


def test_host_applies_viewport_fallback_on_init(host):
    controller, _window, iframe = host
    assert iframe.height == 800
    assert controller.applied_height == 800


def test_fallback_never_below_floor(config):
    window = FakeHostWindow(inner_height=500)
    iframe = FakeIframe()
    controller = HostFrameController(window, FakeDocument({"icmpp-labs": iframe}), config)
    controller.initialize()
    assert iframe.height == 600


def test_small_report_is_raised_to_floor(host):
    controller, window, iframe = host
    window.dispatch("message", resize_from(APP_ORIGIN, 450))
    assert iframe.height == 600
    assert controller.applied_height == 600


def test_large_report_is_applied(host):
    controller, window, iframe = host
    window.dispatch("message", resize_from(APP_ORIGIN, 900))
    assert iframe.height == 900


def test_untrusted_origin_leaves_height_unchanged(host):
    controller, window, iframe = host
    window.dispatch("message", resize_from(APP_ORIGIN, 900))
    window.dispatch("message", resize_from("https://evil.example", 3000))
    assert iframe.height == 900
    assert iframe.heights == [800, 900]


def test_host_trusts_its_own_origin(host):
    controller, _window, iframe = host
    assert controller.handle_message(resize_from(HOST_ORIGIN, 1200))
    assert iframe.height == 1200


@pytest.mark.parametrize(
    "data",
    [{"type": "resize", "height": 0}, {"type": "resize", "height": -5}, {"type": "resize"}, {"type": "request-height"}, "junk"],
)
def test_malformed_reports_are_ignored(host, data):
    controller, window, iframe = host
    window.dispatch("message", MessageEvent(origin=APP_ORIGIN, data=data))
    assert iframe.heights == [800]


@pytest.mark.parametrize("reported", [1, 150, 599, 600, 601, 1234, 10_000])
def test_applied_height_is_max_of_report_and_floor(host, reported):
    controller, window, iframe = host
    window.dispatch("message", resize_from(APP_ORIGIN, reported))
    assert iframe.height == max(reported, 600)
    if reported > 600:
        assert iframe.height == reported


def test_repeated_report_is_idempotent(host):
    controller, window, iframe = host
    window.dispatch("message", resize_from(APP_ORIGIN, 950))
    first = controller.applied_height
    window.dispatch("message", resize_from(APP_ORIGIN, 950))
    assert controller.applied_height == first == 950


def test_frame_load_requests_height(host):
    controller, _window, iframe = host
    iframe.dispatch("load")
    assert iframe.posted == [({"type": "request-height"}, "*")]


def test_frame_load_swallows_cross_origin_errors(config):
    iframe = FakeIframe(fail_post=True)
    controller = HostFrameController(FakeHostWindow(), FakeDocument({"icmpp-labs": iframe}), config)
    controller.initialize()
    assert controller.on_frame_load() is False
    assert iframe.height == 800


def test_missing_iframe_warns_and_stays_inert(config, caplog):
    window = FakeHostWindow()
    controller = HostFrameController(window, FakeDocument(), config)
    with caplog.at_level(logging.WARNING, logger="labsite.frame_sync"):
        assert controller.initialize() is False
    assert "icmpp-labs" in caplog.text
    assert window.listeners == {}
    assert controller.handle_message(resize_from(APP_ORIGIN, 900)) is False


def test_disconnect_removes_listeners(host):
    controller, window, iframe = host
    controller.disconnect()
    controller.disconnect()
    assert window.listeners["message"] == []
    assert iframe.listeners["load"] == []
    assert controller.handle_message(resize_from(APP_ORIGIN, 900)) is False
    assert iframe.heights == [800]


def test_fragment_mode_controller_accepts_lookalike(config):
    legacy = FrameSyncConfig(
        iframe_id=config.iframe_id,
        min_height=config.min_height,
        allowed_origins=config.allowed_origins,
        origin_match="fragment",
    )
    iframe = FakeIframe()
    controller = HostFrameController(FakeHostWindow(), FakeDocument({"icmpp-labs": iframe}), legacy)
    controller.initialize()
    assert controller.handle_message(resize_from("https://labs-copy.example", 700))
    assert iframe.height == 700


# --- embedded reporter -----------------------------------------------------


def test_reporter_sends_initial_height_on_start(config):
    parent = FakeParentWindow()
    window = FakeFrameWindow(parent=parent, height=450)
    reporter = EmbeddedHeightReporter(window, config, ManualScheduler())
    reporter.start()
    assert parent.messages == [({"type": "resize", "height": 450}, "*")]
    assert reporter.reports_sent == 1


def test_reporter_is_silent_when_not_framed(config):
    window = FakeFrameWindow(top_level=True)
    reporter = EmbeddedHeightReporter(window, config, ManualScheduler())
    reporter.start()
    assert reporter.reports_sent == 0


def test_reporter_swallows_parent_errors(config):
    window = FakeFrameWindow(parent=FakeParentWindow(fail=True))
    reporter = EmbeddedHeightReporter(window, config, ManualScheduler())
    reporter.start()
    assert reporter.report_height() is False
    assert reporter.reports_sent == 0


def test_size_change_reports_immediately(config):
    parent = FakeParentWindow()
    window = FakeFrameWindow(parent=parent, height=450)
    reporter = EmbeddedHeightReporter(window, config, ManualScheduler())
    reporter.start()
    window.height = 980
    window.size_observers[0].fire()
    assert parent.messages[-1][0] == {"type": "resize", "height": 980}


def test_viewport_resize_reports_immediately(config):
    parent = FakeParentWindow()
    window = FakeFrameWindow(parent=parent)
    reporter = EmbeddedHeightReporter(window, config, ManualScheduler())
    reporter.start()
    window.dispatch("resize")
    assert reporter.reports_sent == 2


def test_mutation_burst_coalesces_into_one_report(config):
    parent = FakeParentWindow()
    window = FakeFrameWindow(parent=parent, height=450)
    scheduler = ManualScheduler()
    reporter = EmbeddedHeightReporter(window, config, scheduler)
    reporter.start()

    for step in range(5):
        window.mutate(new_height=500 + step * 10)
        scheduler.advance(0.05)
    assert reporter.reports_sent == 1
    assert reporter.pending

    scheduler.advance(0.1)
    assert reporter.reports_sent == 2
    assert parent.messages[-1][0] == {"type": "resize", "height": 540}
    assert not reporter.pending


def test_request_height_triggers_immediate_report(config):
    parent = FakeParentWindow()
    window = FakeFrameWindow(parent=parent, height=700)
    reporter = EmbeddedHeightReporter(window, config, ManualScheduler())
    reporter.start()
    window.dispatch("message", MessageEvent(origin=HOST_ORIGIN, data={"type": "request-height"}))
    assert reporter.reports_sent == 2
    window.dispatch("message", MessageEvent(origin=HOST_ORIGIN, data={"type": "resize", "height": 5}))
    assert reporter.reports_sent == 2


def test_stop_cancels_pending_report_and_is_idempotent(config):
    parent = FakeParentWindow()
    window = FakeFrameWindow(parent=parent)
    scheduler = ManualScheduler()
    reporter = EmbeddedHeightReporter(window, config, scheduler)
    reporter.start()
    window.mutate()
    assert reporter.pending

    reporter.stop()
    reporter.stop()
    scheduler.advance(1)
    assert reporter.reports_sent == 1
    assert not reporter.active
    assert all(not o.connected for o in window.size_observers + window.mutation_observers)
    assert window.listeners["message"] == [] and window.listeners["resize"] == []
    assert reporter.report_height() is False


def test_reporter_and_host_end_to_end(config):
    window = FakeHostWindow(inner_height=1000)
    iframe = FakeIframe()
    controller = HostFrameController(window, FakeDocument({"icmpp-labs": iframe}), config)
    controller.initialize()

    class Relay:
        def post_message(self, data, target_origin):
            window.dispatch("message", MessageEvent(origin=APP_ORIGIN, data=data))

    frame_window = FakeFrameWindow(parent=Relay(), height=450)
    reporter = EmbeddedHeightReporter(frame_window, config, ManualScheduler())
    reporter.start()
    assert iframe.height == 600
    frame_window.height = 1400
    frame_window.size_observers[0].fire()
    assert iframe.height == 1400


# --- debouncer --------------------------------------------------------------


def test_debouncer_state_machine():
    calls = []
    scheduler = ManualScheduler()
    debouncer = Debouncer(100, lambda: calls.append(1), scheduler)
    assert debouncer.state == Debouncer.IDLE
    assert debouncer.trigger()
    assert debouncer.state == Debouncer.PENDING
    debouncer.trigger()
    assert len(scheduler.pending) == 1
    scheduler.advance(0.1)
    assert calls == [1]
    assert debouncer.state == Debouncer.IDLE

    debouncer.close()
    assert debouncer.state == Debouncer.CLOSED
    assert debouncer.trigger() is False


def test_debouncer_with_real_timers():
    fired = threading.Event()
    debouncer = Debouncer(10, fired.set, TimerScheduler())
    debouncer.trigger()
    assert fired.wait(2)
    debouncer.close()


# --- configuration ----------------------------------------------------------


def test_script_options_expose_protocol_constants(config):
    options = config.script_options()
    assert options["iframeId"] == "icmpp-labs"
    assert options["minHeight"] == 600
    assert options["debounceMs"] == 100
    assert options["allowedOrigins"] == [APP_ORIGIN]
    assert options["messageTypes"] == {"resize": "resize", "requestHeight": "request-height"}


def test_frame_ancestors_come_from_settings():
    config = FrameSyncConfig.from_settings()
    assert config.frame_ancestors() == ["https://icmpp.ro", "https://www.icmpp.ro"]
    assert config.allowed_origins == (APP_ORIGIN,)


def test_embed_snippet(config):
    snippet = embed_snippet("https://labs.icmpp.ro/", config)
    assert '<iframe id="icmpp-labs" src="https://labs.icmpp.ro/labs"' in snippet
    assert "min-height: 600px" in snippet
    assert '<script src="https://labs.icmpp.ro/embed.js"></script>' in snippet
