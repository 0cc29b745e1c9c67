"""
Calibration table: every weight, threshold, phrase list and brand map used by
the scorers and the fusion engine.

The table is loaded once (``load_calibration``) and handed to each component
by reference. A JSON file may override any subset of the defaults; nested
sections merge with their own defaults.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

CALIBRATION_VERSION = "v1.0"

log = logging.getLogger(__name__)

# (min, max) used for clamp-then-scale normalization. Binary flags and the
# external-link ratio are already in [0, 1] and are not listed.
FEATURE_RANGES: Dict[str, Tuple[float, float]] = {
    "url_length": (10, 200),
    "domain_length": (3, 50),
    "subdomain_count": (0, 5),
    "path_length": (0, 100),
    "path_segment_count": (0, 10),
    "special_char_count": (0, 20),
    "query_param_count": (0, 10),
    "form_count": (0, 10),
    "login_form_count": (0, 5),
    "password_field_count": (0, 5),
    "link_count": (0, 100),
}

# Static importance per feature, used to rank contributions. Not a
# per-prediction attribution.
FEATURE_IMPORTANCE: Dict[str, float] = {
    "url_length": 0.09,
    "domain_length": 0.08,
    "subdomain_count": 0.07,
    "has_hyphen_in_domain": 0.04,
    "path_length": 0.05,
    "path_segment_count": 0.03,
    "special_char_count": 0.06,
    "has_https": 0.08,
    "has_query_params": 0.02,
    "query_param_count": 0.03,
    "form_count": 0.05,
    "login_form_count": 0.07,
    "password_field_count": 0.06,
    "external_form_action": 0.08,
    "link_count": 0.03,
    "external_link_ratio": 0.05,
    "has_security_claims": 0.04,
    "has_urgent_language": 0.03,
    "content_has_https": 0.07,
    "login_form_without_https": 0.06,
}

BRAND_DOMAINS: Dict[str, List[str]] = {
    "paypal": ["paypal.com"],
    "apple": ["apple.com", "icloud.com"],
    "microsoft": ["microsoft.com", "live.com", "office365.com", "outlook.com"],
    "google": ["google.com", "gmail.com"],
    "amazon": ["amazon.com", "amazon.co.uk", "amazon.ca"],
    "facebook": ["facebook.com", "fb.com"],
    "instagram": ["instagram.com"],
    "netflix": ["netflix.com"],
    "wellsfargo": ["wellsfargo.com"],
    "chase": ["chase.com"],
    "bankofamerica": ["bankofamerica.com", "bofa.com"],
    "amex": ["americanexpress.com", "amex.com"],
    "twitter": ["twitter.com", "x.com"],
    "linkedin": ["linkedin.com"],
    "dropbox": ["dropbox.com"],
    "yahoo": ["yahoo.com"],
    "reddit": ["reddit.com"],
    "walmart": ["walmart.com"],
    "ebay": ["ebay.com"],
    "spotify": ["spotify.com"],
    "snapchat": ["snapchat.com"],
    "venmo": ["venmo.com"],
    "cashapp": ["cash.app", "squareup.com"],
    "zelle": ["zellepay.com"],
}

URGENCY_PHRASES: List[str] = [
    "urgent", "immediately", "right now", "as soon as possible",
    "warning", "alert", "attention", "important notice",
    "account suspended", "account blocked", "account limited",
    "suspicious activity", "unauthorized access", "security breach",
    "verification required", "confirm your details", "update your information",
    "failure to", "will result in", "consequences",
    "limited time", "expires soon", "deadline",
    "24 hours", "48 hours", "temporary hold",
]

SECURITY_PHRASES: List[str] = [
    "secure", "verified", "protected", "encrypted",
    "safe", "trusted", "official", "authentic",
    "guaranteed", "certified", "legitimate", "genuine",
    "security measure", "for your protection", "for your safety",
]

GRAMMAR_PATTERNS: Dict[str, float] = {
    "please to": 0.7,
    "kindly to": 0.7,
    "verify you": 0.6,
    "confirm you": 0.6,
    "dear valued": 0.8,
    "dear customer": 0.5,
    "dear user": 0.5,
    "company team": 0.6,
    "will expired": 0.9,
    "will suspended": 0.9,
    "account will locked": 0.9,
    "verify you account": 0.9,
    "do the needful": 0.8,
    "kindly revert": 0.7,
}

BEHAVIOR_WEIGHTS: Dict[str, float] = {
    "formHijacking": 0.8,
    "keyLogging": 0.9,
    "redirectChain": 0.6,
    "cookieTheft": 0.7,
    "invisibleIframes": 0.7,
    "popupAbuse": 0.5,
    "eventBlockers": 0.6,
}

# Keywords a link's text may claim while pointing somewhere else.
LINK_CLAIM_KEYWORDS: List[str] = [
    "google", "facebook", "apple", "microsoft", "paypal",
    "amazon", "bank", "secure", "login", "signin",
]


class RuleCalibration(BaseModel):
    model_config = ConfigDict(frozen=True)

    unencrypted_login_submit: int = 30
    cross_domain_login_submit: int = 30
    login_without_https: int = 30
    brand_title_mismatch: int = 30
    urgency_language: int = 15
    security_claims_when_suspicious: int = 10
    external_link_ratio: int = 15
    multiple_password_fields: int = 15
    suspicious_floor: int = 20
    external_ratio_threshold: float = 0.7
    external_link_min: int = 5


class TextCalibration(BaseModel):
    model_config = ConfigDict(frozen=True)

    urgency_phrases: List[str] = Field(default_factory=lambda: list(URGENCY_PHRASES))
    security_phrases: List[str] = Field(default_factory=lambda: list(SECURITY_PHRASES))
    grammar_patterns: Dict[str, float] = Field(default_factory=lambda: dict(GRAMMAR_PATTERNS))
    urgency_points: int = 25
    urgency_min_matches: int = 2
    claims_points: int = 15
    claims_min_matches: int = 3
    brand_points: int = 30
    brand_min_occurrences: int = 2
    quality_points: int = 15
    quality_threshold: float = 1.0
    short_sentence_chars: float = 10
    short_sentence_min_count: int = 3
    short_sentence_weight: float = 0.5
    long_sentence_words: int = 25
    long_sentence_weight: float = 0.4
    max_quality_examples: int = 3


class BehaviorCalibration(BaseModel):
    model_config = ConfigDict(frozen=True)

    weights: Dict[str, float] = Field(default_factory=lambda: dict(BEHAVIOR_WEIGHTS))
    sensitive_window_s: float = 5.0
    redirect_window_s: float = 5.0
    popup_window_s: float = 10.0
    burst_count: int = 2
    immediate_report_weight: float = 0.7
    multi_type_bonus: float = 0.1
    hidden_iframe_px: float = 2
    exfil_markers: List[str] = Field(default_factory=lambda: ["send", "post", "ajax", "fetch", "sendbeacon"])
    credential_markers: List[str] = Field(default_factory=lambda: ["password", "credential", "passwd", "login"])
    cookie_markers: List[str] = Field(default_factory=lambda: ["session", "document.cookie"])
    blocker_events: List[str] = Field(default_factory=lambda: ["beforeunload", "unload", "blur"])


class InteractionCalibration(BaseModel):
    model_config = ConfigDict(frozen=True)

    restricted_navigation_weight: float = 0.3
    forced_interaction_weight: float = 0.2
    unusual_timing_weight: float = 0.25
    deceptive_elements_weight: float = 0.25
    navigation_window_s: float = 30.0
    navigation_min_attempts: int = 3
    navigation_points_per_attempt: int = 10
    navigation_points_cap: int = 80
    locked_page_points: int = 10
    small_target_px: float = 10
    small_target_points: int = 20
    misleading_link_points: int = 30
    fake_browser_ui_points: int = 40
    address_bar_points: int = 30
    hidden_input_points: int = 30
    misleading_label_points: int = 20
    countdown_points: int = 20
    urgency_text_points: int = 10
    fast_password_ms: float = 1500
    fast_password_points: int = 30
    fast_submit_ms: float = 5000
    fast_submit_points: int = 40
    minimal_prior_interactions: int = 3
    minimal_interaction_points: int = 20
    link_claim_keywords: List[str] = Field(default_factory=lambda: list(LINK_CLAIM_KEYWORDS))


class FusionCalibration(BaseModel):
    model_config = ConfigDict(frozen=True)

    ml_weight: float = 0.6
    rule_weight: float = 0.4
    text_weight: float = 0.4
    behavior_weight: float = 0.35
    interaction_weight: float = 0.25
    phishing_threshold: int = 70
    suspicious_threshold: int = 40


class CacheCalibration(BaseModel):
    model_config = ConfigDict(frozen=True)

    phishing_capacity: int = 1000
    suspicious_capacity: int = 1000
    safe_capacity: int = 5000


class CalibrationTable(BaseModel):
    model_config = ConfigDict(frozen=True)

    version: str = CALIBRATION_VERSION
    feature_ranges: Dict[str, Tuple[float, float]] = Field(default_factory=lambda: dict(FEATURE_RANGES))
    feature_importance: Dict[str, float] = Field(default_factory=lambda: dict(FEATURE_IMPORTANCE))
    brand_domains: Dict[str, List[str]] = Field(default_factory=lambda: {k: list(v) for k, v in BRAND_DOMAINS.items()})
    ml_threshold: float = 0.7
    rules: RuleCalibration = Field(default_factory=RuleCalibration)
    text: TextCalibration = Field(default_factory=TextCalibration)
    behavior: BehaviorCalibration = Field(default_factory=BehaviorCalibration)
    interaction: InteractionCalibration = Field(default_factory=InteractionCalibration)
    fusion: FusionCalibration = Field(default_factory=FusionCalibration)
    cache: CacheCalibration = Field(default_factory=CacheCalibration)


DEFAULT_CALIBRATION = CalibrationTable()


def load_calibration(path: Optional[str] = None) -> CalibrationTable:
    """Defaults, optionally overridden by a JSON file at ``path``."""
    if not path:
        return DEFAULT_CALIBRATION
    p = Path(path)
    data = json.loads(p.read_text(encoding="utf-8"))
    table = CalibrationTable.model_validate(data)
    log.info("Calibration %s loaded from %s", table.version, p.name)
    return table
