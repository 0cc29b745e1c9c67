"""
Runtime behavior scoring.

The host environment instruments the page (form mutations, network calls,
cookie writes, history changes, iframes, popups, unload handlers) and emits
``ObservedEvent``s through an ``EventObserver``. This module only interprets
that stream; it never touches a browser.

Observation kinds understood by ``BehaviorScorer.observe``:

    form_action_changed  attrs: old_action, new_action, sensitive
    sensitive_input      (marks activity on a password/credential field)
    password_listener    attrs: event_type, handler
    network_request      attrs: url, body
    cookie_write         attrs: value
    history_change       attrs: method
    url_change           attrs: url
    iframe               attrs: src, hidden, display, visibility, opacity, width, height
    popup
    dialog               attrs: method
    unload_handler       attrs: event_type, handler
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from prf.calibration.table import CalibrationTable, DEFAULT_CALIBRATION
from prf.schemas import ObservedEvent, SignalResult
from prf.utils.url import hostname, resolve

log = logging.getLogger(__name__)

KEY_EVENTS = ("keydown", "keyup", "keypress", "input")


class EventObserver(Protocol):
    """Capability port supplied by the host: delivers runtime observations."""

    def subscribe(self, callback: Callable[[ObservedEvent], None]) -> None: ...


@dataclass
class PatternState:
    weight: float
    details: List[str] = field(default_factory=list)

    @property
    def detected(self) -> bool:
        return bool(self.details)


@dataclass
class RecordedEvent:
    type: str
    detail: str
    weight: float
    timestamp: float


_MEASURE = re.compile(r"^\s*(-?(?:\d+(?:\.\d*)?|\.\d+))\s*(?:px|ms)?\s*$", re.IGNORECASE)


def measure(value: Any) -> Optional[float]:
    """Numeric attribute from the page; tolerates CSS-style px and ms suffixes."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    m = _MEASURE.match(str(value))
    return float(m.group(1)) if m else None


class BehaviorScorer:
    def __init__(
        self,
        calibration: CalibrationTable = DEFAULT_CALIBRATION,
        origin_url: str = "",
        reporter: Optional[Callable[[SignalResult], None]] = None,
    ):
        self.calibration = calibration
        self.origin_host = hostname(origin_url)
        self.origin_url = origin_url
        self.reporter = reporter
        self.patterns: Dict[str, PatternState] = {
            name: PatternState(weight=w) for name, w in calibration.behavior.weights.items()
        }
        self.events: List[RecordedEvent] = []
        self.observed_count = 0
        self._sensitive_activity: List[float] = []
        self._url_changes: List[float] = []
        self._handlers: Dict[str, Callable[[ObservedEvent], None]] = {
            "form_action_changed": self._on_form_action_changed,
            "sensitive_input": self._on_sensitive_input,
            "password_listener": self._on_password_listener,
            "network_request": self._on_network_request,
            "cookie_write": self._on_cookie_write,
            "history_change": self._on_history_change,
            "url_change": self._on_url_change,
            "iframe": self._on_iframe,
            "popup": self._on_popup,
            "dialog": self._on_dialog,
            "unload_handler": self._on_unload_handler,
        }

    def attach(self, observer: EventObserver) -> None:
        observer.subscribe(self.observe)

    # ---- recording ----
    def record(self, pattern: str, detail: str, weight: float, timestamp: float = 0.0) -> bool:
        """Record one suspicious event. Unknown pattern types are ignored."""
        state = self.patterns.get(pattern)
        if state is None:
            log.debug("Ignoring unknown behavior pattern %r", pattern)
            return False
        if detail not in state.details:
            state.details.append(detail)
        self.events.append(RecordedEvent(pattern, detail, weight, timestamp))
        if weight > self.calibration.behavior.immediate_report_weight:
            self.report()
        return True

    def observe(self, event: ObservedEvent) -> None:
        self.observed_count += 1
        handler = self._handlers.get(event.type)
        if handler is None:
            # Already-classified events may name a pattern directly.
            if event.type in self.patterns:
                weight = float(event.attrs.get("weight", self.patterns[event.type].weight))
                self.record(event.type, event.detail or event.type, weight, event.timestamp)
            else:
                log.debug("Unhandled observation kind %r", event.type)
            return
        handler(event)

    def _recent(self, pattern: str, now: float, window: float) -> int:
        return sum(1 for e in self.events if e.type == pattern and 0 <= now - e.timestamp < window)

    def _external(self, url: str) -> Optional[str]:
        target = hostname(resolve(self.origin_url or "http://invalid/", url)) if url else ""
        if target and self.origin_host and target != self.origin_host:
            return target
        return None

    # ---- observation handlers ----
    def _on_form_action_changed(self, event: ObservedEvent) -> None:
        old, new = event.attrs.get("old_action", ""), event.attrs.get("new_action", "")
        old_host, new_host = hostname(old), hostname(new)
        if not old_host or not new_host or old_host == new_host:
            return
        self.record("formHijacking", f"Form action changed from {old} to {new}", 0.8, event.timestamp)
        if event.attrs.get("sensitive"):
            self.record(
                "formHijacking",
                "Password form submission redirected to external domain",
                0.9,
                event.timestamp,
            )

    def _on_sensitive_input(self, event: ObservedEvent) -> None:
        self._sensitive_activity.append(event.timestamp)

    def _on_password_listener(self, event: ObservedEvent) -> None:
        self._sensitive_activity.append(event.timestamp)
        event_type = str(event.attrs.get("event_type", "")).lower()
        handler = str(event.attrs.get("handler", "")).lower()
        if event_type in KEY_EVENTS and any(m in handler for m in self.calibration.behavior.exfil_markers):
            self.record(
                "keyLogging",
                "Keyboard event on password field with suspicious handler",
                0.7,
                event.timestamp,
            )

    def _recent_sensitive_activity(self, now: float) -> bool:
        window = self.calibration.behavior.sensitive_window_s
        return any(0 <= now - t < window for t in self._sensitive_activity)

    def _on_network_request(self, event: ObservedEvent) -> None:
        target = self._external(str(event.attrs.get("url", "")))
        if target and self._recent_sensitive_activity(event.timestamp):
            self.record("formHijacking", f"Request sending data to external domain: {target}", 0.7, event.timestamp)
        body = event.attrs.get("body")
        if isinstance(body, str):
            lowered = body.lower()
            if any(m in lowered for m in self.calibration.behavior.credential_markers):
                self.record("formHijacking", "Request sending credentials", 0.6, event.timestamp)

    def _on_cookie_write(self, event: ObservedEvent) -> None:
        value = str(event.attrs.get("value", event.detail)).lower()
        if any(m in value for m in self.calibration.behavior.cookie_markers):
            self.record("cookieTheft", "Potential session cookie manipulation", 0.7, event.timestamp)

    def _on_history_change(self, event: ObservedEvent) -> None:
        cfg = self.calibration.behavior
        method = event.attrs.get("method", "pushState")
        self.record("redirectChain", f"History API used: {method}", 0.2, event.timestamp)
        if self._recent("redirectChain", event.timestamp, cfg.redirect_window_s) >= cfg.burst_count:
            self.record("redirectChain", "Multiple history manipulations detected", 0.6, event.timestamp)

    def _on_url_change(self, event: ObservedEvent) -> None:
        cfg = self.calibration.behavior
        self._url_changes.append(event.timestamp)
        recent = sum(1 for t in self._url_changes if 0 <= event.timestamp - t < cfg.redirect_window_s)
        if recent >= cfg.burst_count:
            self.record("redirectChain", f"Multiple redirects detected (count: {recent})", 0.5, event.timestamp)

    def _on_iframe(self, event: ObservedEvent) -> None:
        a = event.attrs
        limit = self.calibration.behavior.hidden_iframe_px
        width, height = measure(a.get("width")), measure(a.get("height"))
        hidden = (
            bool(a.get("hidden"))
            or a.get("display") == "none"
            or a.get("visibility") == "hidden"
            or str(a.get("opacity", "")).strip() in ("0", "0.0")
            or (width is not None and width <= limit)
            or (height is not None and height <= limit)
        )
        if hidden:
            self.record("invisibleIframes", "Hidden iframe detected", 0.7, event.timestamp)
        src = str(a.get("src", "") or "")
        target = self._external(src) if src.lower().startswith(("http:", "https:", "//")) else None
        if target:
            self.record("invisibleIframes", f"Cross-domain iframe from {target}", 0.3, event.timestamp)

    def _on_popup(self, event: ObservedEvent) -> None:
        cfg = self.calibration.behavior
        self.record("popupAbuse", "Popup created", 0.3, event.timestamp)
        if self._recent("popupAbuse", event.timestamp, cfg.popup_window_s) >= cfg.burst_count:
            self.record("popupAbuse", "Multiple popups detected", 0.6, event.timestamp)

    def _on_dialog(self, event: ObservedEvent) -> None:
        cfg = self.calibration.behavior
        method = event.attrs.get("method", "alert")
        self.record("popupAbuse", f"Dialog used: {method}", 0.2, event.timestamp)
        if self._recent("popupAbuse", event.timestamp, cfg.popup_window_s) >= cfg.burst_count:
            self.record("popupAbuse", "Multiple dialogs detected", 0.5, event.timestamp)

    def _on_unload_handler(self, event: ObservedEvent) -> None:
        event_type = str(event.attrs.get("event_type", "")).lower()
        if event_type not in self.calibration.behavior.blocker_events:
            return
        self.record("eventBlockers", f"Added {event_type} event handler", 0.4, event.timestamp)
        handler = str(event.attrs.get("handler", ""))
        if event_type == "beforeunload" and "return" in handler:
            self.record("eventBlockers", "Navigation blocking detected", 0.6, event.timestamp)

    # ---- scoring ----
    def detected_types(self) -> List[str]:
        return [name for name, state in self.patterns.items() if state.detected]

    def score(self) -> float:
        total = 0.0
        detected = 0
        for state in self.patterns.values():
            if not state.detected:
                continue
            detail_factor = min(len(state.details) / 2, 1.0)
            total += state.weight * (0.7 + 0.3 * detail_factor) * 100
            detected += 1
        if detected > 1:
            total *= 1 + self.calibration.behavior.multi_type_bonus * (detected - 1)
        return round(min(total, 100.0), 2)

    def result(self) -> Optional[SignalResult]:
        """None until anything has been observed or recorded."""
        if not self.observed_count and not self.events:
            return None
        indicators = []
        for name, state in sorted(self.patterns.items(), key=lambda kv: -kv[1].weight):
            indicators.extend(f"[{name}] {d}" for d in state.details[:3])
        detected = [self.patterns[n].weight for n in self.detected_types()]
        return SignalResult(
            score=self.score(),
            indicators=indicators,
            confidence=max(detected) if detected else None,
        )

    def analysis(self) -> Dict[str, Any]:
        detected = [
            {"type": name, "confidence": state.weight, "details": state.details[:3]}
            for name, state in self.patterns.items()
            if state.detected
        ]
        score = self.score()
        return {
            "behaviorScore": score,
            "isPhishing": score >= self.calibration.fusion.phishing_threshold,
            "detectedPatterns": sorted(detected, key=lambda d: -d["confidence"]),
            "detectedEventCount": len(self.events),
        }

    def report(self) -> Optional[SignalResult]:
        """Push the current result to the reporter; silent while the score is 0."""
        result = self.result()
        if result is None or result.score <= 0 or self.reporter is None:
            return result
        try:
            self.reporter(result)
        except Exception as e:
            log.error("Behavior reporter failed: %s", e)
        return result
