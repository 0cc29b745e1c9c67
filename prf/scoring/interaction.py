"""
User-interaction scoring: how the page constrains, rushes or misleads the
person using it. Feeds the ``interaction`` input of session fusion.

Observation kinds (``ObservedEvent.type``) and the attrs they read:

    navigation_attempt   blocked attempt to leave the page
    locked_page          page pins the user to a single history entry
    countdown / urgency_text
    password_fill        attrs: duration_ms
    sensitive_submit     attrs: since_load_ms
    click                attrs: width, height
    link_click           attrs: text, href
    fake_browser_ui / address_bar_mimic / hidden_input / misleading_label
"""
from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional

from prf.calibration.table import CalibrationTable, DEFAULT_CALIBRATION
from prf.schemas import ObservedEvent, SignalResult
from prf.scoring.behavior import measure

log = logging.getLogger(__name__)

CATEGORIES = ("restrictedNavigation", "forcedInteraction", "unusualTiming", "deceptiveElements")

# Kinds that count as the user actually doing something on the page.
USER_KINDS = frozenset({"click", "link_click", "password_fill", "key_input", "focus", "scroll"})


class InteractionScorer:
    def __init__(self, calibration: CalibrationTable = DEFAULT_CALIBRATION):
        self.calibration = calibration
        self.findings: Dict[str, Dict[str, int]] = {c: {} for c in CATEGORIES}
        self.observed_count = 0
        self._user_interactions: List[float] = []
        self._navigation_attempts: List[float] = []

    def _add(self, category: str, detail: str, points: int) -> None:
        # Same finding twice counts once.
        self.findings[category].setdefault(detail, points)

    def observe(self, event: ObservedEvent) -> None:
        cfg = self.calibration.interaction
        self.observed_count += 1
        kind, a, ts = event.type, event.attrs, event.timestamp

        if kind == "navigation_attempt":
            self._navigation_attempts.append(ts)
            recent = sum(1 for t in self._navigation_attempts if 0 <= ts - t < cfg.navigation_window_s)
            if recent >= cfg.navigation_min_attempts:
                points = min(recent * cfg.navigation_points_per_attempt, cfg.navigation_points_cap)
                nav = self.findings["restrictedNavigation"]
                key = "Multiple navigation attempts detected"
                nav[key] = max(nav.get(key, 0), points)
        elif kind == "locked_page":
            self._add("restrictedNavigation", "Page may be preventing normal navigation", cfg.locked_page_points)
        elif kind == "countdown":
            self._add("forcedInteraction", "Countdown timer detected, potentially creating false urgency", cfg.countdown_points)
        elif kind == "urgency_text":
            self._add(
                "forcedInteraction",
                "Urgency language detected, potentially forcing hasty user decisions",
                cfg.urgency_text_points,
            )
        elif kind == "password_fill":
            duration = measure(a.get("duration_ms"))
            if duration is not None and duration < cfg.fast_password_ms:
                self._add("unusualTiming", "Password entered unusually fast (possible autofill abuse)", cfg.fast_password_points)
        elif kind == "sensitive_submit":
            since_load = measure(a.get("since_load_ms"))
            if since_load is not None and since_load < cfg.fast_submit_ms:
                self._add("unusualTiming", "Sensitive form submitted very soon after page load", cfg.fast_submit_points)
            prior = sum(1 for t in self._user_interactions if t <= ts)
            if prior < cfg.minimal_prior_interactions:
                self._add(
                    "unusualTiming",
                    "Sensitive form submitted with minimal prior interaction",
                    cfg.minimal_interaction_points,
                )
        elif kind == "click":
            w, h = measure(a.get("width")), measure(a.get("height"))
            if (w is not None and w < cfg.small_target_px) or (h is not None and h < cfg.small_target_px):
                self._add("deceptiveElements", "Click on unusually small element", cfg.small_target_points)
        elif kind == "link_click":
            self._check_link(str(a.get("text", "")), str(a.get("href", "")))
        elif kind == "fake_browser_ui":
            self._add("deceptiveElements", "Elements that may mimic browser UI", cfg.fake_browser_ui_points)
        elif kind == "address_bar_mimic":
            self._add("deceptiveElements", "Elements that may mimic browser address bar", cfg.address_bar_points)
        elif kind == "hidden_input":
            self._add(
                "deceptiveElements",
                "Hidden input field detected that may be collecting data covertly",
                cfg.hidden_input_points,
            )
        elif kind == "misleading_label":
            self._add("deceptiveElements", "Potentially misleading form field label detected", cfg.misleading_label_points)
        else:
            log.debug("Unhandled interaction kind %r", kind)

        if kind in USER_KINDS:
            self._user_interactions.append(ts)

    def _check_link(self, text: str, href: str) -> None:
        cfg = self.calibration.interaction
        text, href = text.lower(), href.lower()
        for keyword in cfg.link_claim_keywords:
            if keyword in text and keyword not in href:
                self._add(
                    "deceptiveElements",
                    f"Link text mentions \"{keyword}\" but points elsewhere",
                    cfg.misleading_link_points,
                )

    def category_score(self, category: str) -> int:
        return sum(self.findings[category].values())

    def score(self) -> int:
        cfg = self.calibration.interaction
        total = (
            self.category_score("restrictedNavigation") * cfg.restricted_navigation_weight
            + self.category_score("forcedInteraction") * cfg.forced_interaction_weight
            + self.category_score("unusualTiming") * cfg.unusual_timing_weight
            + self.category_score("deceptiveElements") * cfg.deceptive_elements_weight
        )
        return min(int(math.floor(total + 0.5)), 100)

    def result(self) -> Optional[SignalResult]:
        if not self.observed_count:
            return None
        indicators = [f"[{c}] {d}" for c in CATEGORIES for d in list(self.findings[c])[:2]]
        return SignalResult(score=float(self.score()), indicators=indicators)
