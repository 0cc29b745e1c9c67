"""
Score fusion.

Strategy is picked from what is available:

    session_fused   runtime behavior or interaction reports exist
                    text*0.4 + behavior*0.35 + interaction*0.25
    ml_augmented    an ML score exists
                    ml*0.6 + rule*0.4
    baseline        rule score only

An unsafe external verdict forces 100 / phishing in every strategy.
``FusionSession`` keeps the latest signals of one navigation and latches
that verdict so recomputation can never drop below it.
"""
from __future__ import annotations

import logging
import math
from typing import Iterable, List, Optional

from prf.calibration.table import CalibrationTable, DEFAULT_CALIBRATION
from prf.schemas import (
    ExternalVerdict,
    RiskAssessment,
    RiskLevel,
    SignalResult,
    SourceBreakdown,
    Strategy,
)

log = logging.getLogger(__name__)


def round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def clamp_score(x: float) -> int:
    return max(0, min(100, round_half_up(x)))


def risk_level(score: int, calibration: CalibrationTable = DEFAULT_CALIBRATION) -> RiskLevel:
    f = calibration.fusion
    if score >= f.phishing_threshold:
        return RiskLevel.LIKELY_PHISHING
    if score >= f.suspicious_threshold:
        return RiskLevel.SUSPICIOUS
    return RiskLevel.SAFE


def _value(s: Optional[SignalResult]) -> float:
    return s.score if s is not None else 0.0


def _merge_indicators(signals: Iterable[Optional[SignalResult]]) -> List[str]:
    seen: List[str] = []
    for s in signals:
        if s is None:
            continue
        for ind in s.indicators:
            if ind not in seen:
                seen.append(ind)
    return seen


def fuse(
    url: str,
    rule: Optional[SignalResult] = None,
    ml: Optional[SignalResult] = None,
    text: Optional[SignalResult] = None,
    behavior: Optional[SignalResult] = None,
    interaction: Optional[SignalResult] = None,
    verdict: Optional[ExternalVerdict] = None,
    fallback: bool = False,
    calibration: CalibrationTable = DEFAULT_CALIBRATION,
) -> RiskAssessment:
    """Combine whichever signals are present into one assessment."""
    f = calibration.fusion

    if behavior is not None or interaction is not None:
        strategy = Strategy.SESSION_FUSED
        raw = _value(text) * f.text_weight + _value(behavior) * f.behavior_weight + _value(interaction) * f.interaction_weight
        ordered = [text, behavior, interaction, rule, ml]
    elif ml is not None:
        strategy = Strategy.ML_AUGMENTED
        raw = ml.score * f.ml_weight + _value(rule) * f.rule_weight
        ordered = [rule, ml, text]
    else:
        strategy = Strategy.BASELINE
        raw = _value(rule)
        ordered = [rule, text]

    combined = clamp_score(raw)
    indicators = _merge_indicators(ordered)

    unsafe = verdict is not None and not verdict.is_safe
    threat_type = None
    if unsafe:
        combined = 100
        threat_type = verdict.threat_type or "UNKNOWN"
        indicators.insert(0, f"External verdict: {threat_type}")

    breakdown = SourceBreakdown(
        ml=ml.score if ml is not None else None,
        rule=rule.score if rule is not None else None,
        behavior=behavior.score if behavior is not None else None,
        text=text.score if text is not None else None,
        interaction=interaction.score if interaction is not None else None,
    )
    return RiskAssessment(
        url=url,
        combined_score=combined,
        is_phishing=unsafe or combined >= f.phishing_threshold,
        indicators=indicators,
        source_breakdown=breakdown,
        fallback=fallback,
        strategy=strategy,
        risk_level=RiskLevel.LIKELY_PHISHING if unsafe else risk_level(combined, calibration),
        oracle_unsafe=unsafe,
        threat_type=threat_type,
    )


class FusionSession:
    """Latest signals for one navigation; recompute with ``assess()``."""

    def __init__(self, url: str, calibration: CalibrationTable = DEFAULT_CALIBRATION):
        self.url = url
        self.calibration = calibration
        self.rule: Optional[SignalResult] = None
        self.ml: Optional[SignalResult] = None
        self.text: Optional[SignalResult] = None
        self.behavior: Optional[SignalResult] = None
        self.interaction: Optional[SignalResult] = None
        self.verdict: Optional[ExternalVerdict] = None
        self.fallback = False

    @property
    def oracle_unsafe(self) -> bool:
        return self.verdict is not None and not self.verdict.is_safe

    def set_verdict(self, verdict: Optional[ExternalVerdict]) -> None:
        if self.oracle_unsafe:
            if verdict is None or verdict.is_safe:
                log.debug("Ignoring later verdict for %s: unsafe already latched", self.url)
            return
        if verdict is not None:
            self.verdict = verdict

    def update(self, **signals: Optional[SignalResult]) -> None:
        for name, value in signals.items():
            if name not in ("rule", "ml", "text", "behavior", "interaction"):
                raise ValueError(f"unknown signal {name!r}")
            setattr(self, name, value)

    def assess(self) -> RiskAssessment:
        return fuse(
            self.url,
            rule=self.rule,
            ml=self.ml,
            text=self.text,
            behavior=self.behavior,
            interaction=self.interaction,
            verdict=self.verdict,
            fallback=self.fallback,
            calibration=self.calibration,
        )
