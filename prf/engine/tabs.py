"""
Per-tab risk state: Idle -> Scanning -> Safe | Suspicious | Danger.

Each navigation gets a fresh token. Results carrying any other token are
dropped. Danger is sticky for the navigation and alerts at most once.
"""
from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from prf.calibration.table import CalibrationTable, DEFAULT_CALIBRATION
from prf.engine.cache import CACHED_SCORES, KnownUrlCache
from prf.engine.fusion import FusionSession
from prf.schemas import RiskAssessment, RiskLevel, Strategy
from prf.scoring.behavior import BehaviorScorer
from prf.scoring.interaction import InteractionScorer

log = logging.getLogger(__name__)

AlertSink = Callable[[str, RiskAssessment], None]


class TabStatus(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    SAFE = "safe"
    SUSPICIOUS = "suspicious"
    DANGER = "danger"


_LEVEL_OF = {
    TabStatus.SAFE: RiskLevel.SAFE,
    TabStatus.SUSPICIOUS: RiskLevel.SUSPICIOUS,
    TabStatus.DANGER: RiskLevel.LIKELY_PHISHING,
}


@dataclass
class TabState:
    tab_id: str
    navigation_token: int
    url: str
    session: FusionSession
    behavior: BehaviorScorer
    interaction: InteractionScorer
    status: TabStatus = TabStatus.SCANNING
    last_assessment: Optional[RiskAssessment] = None
    alert_issued: bool = False
    verified: bool = False

    def snapshot(self) -> Dict[str, Any]:
        return {
            "tabId": self.tab_id,
            "navigationToken": self.navigation_token,
            "url": self.url,
            "status": self.status.value,
            "lastAssessment": self.last_assessment.model_dump(mode="json", by_alias=True) if self.last_assessment else None,
            "alertIssued": self.alert_issued,
        }


def status_for(assessment: RiskAssessment, calibration: CalibrationTable = DEFAULT_CALIBRATION) -> TabStatus:
    f = calibration.fusion
    if assessment.oracle_unsafe or assessment.combined_score >= f.phishing_threshold:
        return TabStatus.DANGER
    if assessment.combined_score >= f.suspicious_threshold:
        return TabStatus.SUSPICIOUS
    return TabStatus.SAFE


def cached_assessment(url: str, level: RiskLevel) -> RiskAssessment:
    score = CACHED_SCORES[level]
    return RiskAssessment(
        url=url,
        combined_score=score,
        is_phishing=level is RiskLevel.LIKELY_PHISHING,
        indicators=[f"Previously classified as {level.value}"],
        strategy=Strategy.CACHE,
        risk_level=level,
        cached=True,
    )


class TabRiskStateMachine:
    def __init__(
        self,
        cache: KnownUrlCache,
        calibration: CalibrationTable = DEFAULT_CALIBRATION,
        alert_sink: Optional[AlertSink] = None,
    ):
        self.cache = cache
        self.calibration = calibration
        self.alert_sink = alert_sink
        self.tabs: Dict[str, TabState] = {}
        self.alerts_sent = 0
        self._tokens = itertools.count(1)

    def __len__(self) -> int:
        return len(self.tabs)

    def get(self, tab_id: str) -> Optional[TabState]:
        return self.tabs.get(tab_id)

    def start_navigation(self, tab_id: str, url: str) -> int:
        """New token, fresh scorers, alert flag reset."""
        token = next(self._tokens)
        self.tabs[tab_id] = TabState(
            tab_id=tab_id,
            navigation_token=token,
            url=url,
            session=FusionSession(url, self.calibration),
            behavior=BehaviorScorer(self.calibration, origin_url=url),
            interaction=InteractionScorer(self.calibration),
        )
        log.debug("Tab %s navigating to %s (token %d)", tab_id, url, token)
        return token

    def is_current(self, tab_id: str, token: int) -> bool:
        state = self.tabs.get(tab_id)
        return state is not None and state.navigation_token == token

    def lookup_cached(self, tab_id: str) -> Optional[RiskAssessment]:
        """Apply a cache hit for the tab's current URL, if there is one."""
        state = self.tabs.get(tab_id)
        if state is None:
            return None
        level = self.cache.lookup(state.url)
        if level is None:
            return None
        assessment = cached_assessment(state.url, level)
        self.apply(tab_id, state.navigation_token, assessment)
        return assessment

    def apply(self, tab_id: str, token: int, assessment: RiskAssessment, terminal: bool = True) -> bool:
        """
        Move the tab to the status the assessment implies. Only terminal
        assessments are written to the known-URL cache.
        """
        state = self.tabs.get(tab_id)
        if state is None or state.navigation_token != token:
            log.info("Discarding stale result for tab %s (token %s)", tab_id, token)
            return False

        new_status = status_for(assessment, self.calibration)
        if state.status is TabStatus.DANGER and new_status is not TabStatus.DANGER:
            log.debug("Tab %s stays in danger (recomputed %s)", tab_id, new_status.value)
            new_status = TabStatus.DANGER
        state.status = new_status
        state.last_assessment = assessment

        if terminal and not assessment.cached:
            self.cache.record(state.url, _LEVEL_OF[new_status])

        if new_status is TabStatus.DANGER and not state.alert_issued:
            state.alert_issued = True
            self._alert(tab_id, assessment)
        return True

    def _alert(self, tab_id: str, assessment: RiskAssessment) -> None:
        self.alerts_sent += 1
        log.warning("ALERT tab=%s url=%s score=%d", tab_id, assessment.url, assessment.combined_score)
        if self.alert_sink is None:
            return
        try:
            self.alert_sink(tab_id, assessment)
        except Exception as e:
            log.error("Alert sink failed: %s", e)

    def status(self, tab_id: str) -> Dict[str, Any]:
        state = self.tabs.get(tab_id)
        if state is None:
            return {"tabId": tab_id, "status": TabStatus.IDLE.value, "lastAssessment": None, "alertIssued": False}
        return state.snapshot()

    def close_tab(self, tab_id: str) -> bool:
        return self.tabs.pop(tab_id, None) is not None

    def clear(self) -> None:
        self.tabs.clear()
