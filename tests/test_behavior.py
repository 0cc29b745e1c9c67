import pytest

from prf.schemas import ObservedEvent
from prf.scoring.behavior import BehaviorScorer, measure

ORIGIN = "https://shop.example.com/login"


def ev(kind, ts, **attrs):
    return ObservedEvent(type=kind, timestamp=ts, attrs=attrs)


def test_two_types_hit_the_cap():
    s = BehaviorScorer(origin_url=ORIGIN)
    s.record("formHijacking", "Form action changed", 0.8)
    assert s.score() == 68.0
    s.record("popupAbuse", "Popup created", 0.3)
    assert s.score() == 100.0


def test_single_type_scores():
    s = BehaviorScorer()
    s.record("popupAbuse", "Popup created", 0.3)
    assert s.score() == 42.5
    s.record("popupAbuse", "Popup created", 0.3)  # duplicate detail
    assert s.score() == 42.5
    s.record("popupAbuse", "Dialog used: alert", 0.2)
    assert s.score() == 50.0


def test_monotonic_in_detected_types():
    s = BehaviorScorer()
    last = s.score()
    for pattern in ["popupAbuse", "redirectChain", "eventBlockers", "cookieTheft", "keyLogging"]:
        s.record(pattern, f"{pattern} seen", 0.1)
        assert s.score() >= last
        last = s.score()


def test_unknown_pattern_ignored():
    s = BehaviorScorer()
    assert s.record("teleport", "x", 0.9) is False
    assert s.score() == 0


def test_immediate_report_only_above_threshold():
    reports = []
    s = BehaviorScorer(origin_url=ORIGIN, reporter=reports.append)
    s.record("popupAbuse", "Popup created", 0.3)
    s.record("keyLogging", "handler", 0.7)
    assert reports == []
    s.record("formHijacking", "Form action changed", 0.8)
    assert len(reports) == 1
    assert reports[0].score == s.score()


def test_form_action_change_to_other_domain():
    s = BehaviorScorer(origin_url=ORIGIN)
    s.observe(ev("form_action_changed", 1.0, old_action="https://shop.example.com/a", new_action="https://shop.example.com/b"))
    assert s.detected_types() == []
    s.observe(ev("form_action_changed", 2.0, old_action="https://shop.example.com/a",
                 new_action="https://evil.example/c", sensitive=True))
    assert s.detected_types() == ["formHijacking"]
    assert len(s.patterns["formHijacking"].details) == 2


def test_network_request_after_sensitive_input():
    s = BehaviorScorer(origin_url=ORIGIN)
    s.observe(ev("network_request", 0.0, url="https://cdn.other.example/x.js"))
    assert s.detected_types() == []
    s.observe(ev("sensitive_input", 10.0))
    s.observe(ev("network_request", 12.0, url="https://collect.evil.example/p"))
    s.observe(ev("network_request", 13.0, url="/api/same-origin"))
    assert s.patterns["formHijacking"].details == ["Request sending data to external domain: collect.evil.example"]
    s.observe(ev("network_request", 30.0, url="https://late.evil.example/p"))
    assert len(s.patterns["formHijacking"].details) == 1


def test_keylogging_handler():
    s = BehaviorScorer(origin_url=ORIGIN)
    s.observe(ev("password_listener", 1.0, event_type="keydown", handler="e => validate(e)"))
    assert s.detected_types() == []
    s.observe(ev("password_listener", 2.0, event_type="keyup", handler="e => $.ajax({data: e.key})"))
    assert s.detected_types() == ["keyLogging"]


def test_history_burst_within_window():
    s = BehaviorScorer(origin_url=ORIGIN)
    s.observe(ev("history_change", 0.0, method="pushState"))
    s.observe(ev("history_change", 10.0, method="pushState"))
    assert "Multiple history manipulations detected" not in s.patterns["redirectChain"].details
    s.observe(ev("history_change", 11.0, method="replaceState"))
    assert "Multiple history manipulations detected" in s.patterns["redirectChain"].details


def test_iframes_cookies_popups_and_unload():
    s = BehaviorScorer(origin_url=ORIGIN)
    s.observe(ev("iframe", 1.0, src="https://shop.example.com/frame", width="1px", height="1px"))
    s.observe(ev("iframe", 1.0, src="https://ads.other.example/"))
    s.observe(ev("cookie_write", 2.0, value="sessionid=abc"))
    s.observe(ev("popup", 3.0))
    s.observe(ev("popup", 4.0))
    s.observe(ev("unload_handler", 5.0, event_type="beforeunload", handler="return 'stay'"))
    s.observe(ev("unload_handler", 5.0, event_type="click", handler=""))
    assert set(s.detected_types()) == {"invisibleIframes", "cookieTheft", "popupAbuse", "eventBlockers"}
    assert "Multiple popups detected" in s.patterns["popupAbuse"].details
    assert "Navigation blocking detected" in s.patterns["eventBlockers"].details
    assert s.score() == 100.0


def test_result_no_opinion_until_observed():
    s = BehaviorScorer(origin_url=ORIGIN)
    assert s.result() is None
    s.observe(ev("sensitive_input", 1.0))
    result = s.result()
    assert result.score == 0 and result.confidence is None
    s.record("cookieTheft", "x", 0.7)
    assert s.result().confidence == pytest.approx(0.7)
    assert s.analysis()["detectedPatterns"][0]["type"] == "cookieTheft"


def test_attach_subscribes_to_observer():
    class Observer:
        def __init__(self):
            self.callbacks = []

        def subscribe(self, callback):
            self.callbacks.append(callback)

        def emit(self, event):
            for cb in self.callbacks:
                cb(event)

    obs = Observer()
    s = BehaviorScorer(origin_url=ORIGIN)
    s.attach(obs)
    obs.emit(ev("cookie_write", 1.0, value="document.cookie = token"))
    assert s.detected_types() == ["cookieTheft"]


def test_measure_tolerates_units():
    assert measure("4px") == 4.0
    assert measure(" 250ms ") == 250.0
    assert measure(3) == 3.0
    assert measure("auto") is None
    assert measure(None) is None
