"""
Wire and in-process types shared by the scorers, the fusion engine and the
HTTP service. JSON uses the camelCase names; Python code uses snake_case.
"""
from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

_WIRE = ConfigDict(populate_by_name=True, frozen=True)


def now_ms() -> int:
    return int(time.time() * 1000)


# ====== Page content (from the DOM-scraping collaborator) ======
class InputInfo(BaseModel):
    model_config = _WIRE

    type: str = ""
    name: str = ""
    id: str = ""
    placeholder: str = ""
    label: str = ""


class FormInfo(BaseModel):
    model_config = _WIRE

    action: str = ""
    method: str = "get"
    id: str = ""
    is_login_form: bool = Field(False, alias="isLoginForm")
    inputs: List[InputInfo] = Field(default_factory=list)

    def password_fields(self) -> int:
        return sum(1 for i in self.inputs if (i.type or "").lower() == "password")


class LinkInfo(BaseModel):
    model_config = _WIRE

    href: str = ""
    text: str = ""
    is_external: bool = Field(False, alias="isExternal")


class PageContent(BaseModel):
    model_config = _WIRE

    title: str = ""
    meta_description: str = Field("", alias="metaDescription")
    text_sample: str = Field("", alias="textSample")
    forms: List[FormInfo] = Field(default_factory=list)
    links: List[LinkInfo] = Field(default_factory=list)
    has_https: bool = Field(False, alias="hasHttps")
    claims_secure_or_verified: bool = Field(False, alias="claimsSecureOrVerified")
    has_urgency_language: bool = Field(False, alias="hasUrgencyLanguage")

    def login_forms(self) -> List[FormInfo]:
        return [f for f in self.forms if f.is_login_form]


# ====== Scorer output ======
class SignalResult(BaseModel):
    model_config = _WIRE

    score: float = Field(0.0, ge=0.0)
    indicators: List[str] = Field(default_factory=list)
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)


class SourceBreakdown(BaseModel):
    model_config = _WIRE

    ml: Optional[float] = None
    rule: Optional[float] = None
    behavior: Optional[float] = None
    text: Optional[float] = None
    interaction: Optional[float] = None


class Strategy(str, Enum):
    BASELINE = "baseline"
    ML_AUGMENTED = "ml_augmented"
    SESSION_FUSED = "session_fused"
    CACHE = "cache"


class RiskLevel(str, Enum):
    SAFE = "safe"
    SUSPICIOUS = "suspicious"
    LIKELY_PHISHING = "likely_phishing"


class RiskAssessment(BaseModel):
    model_config = _WIRE

    url: str
    combined_score: int = Field(0, ge=0, le=100, alias="combinedScore")
    is_phishing: bool = Field(False, alias="isPhishing")
    indicators: List[str] = Field(default_factory=list)
    source_breakdown: SourceBreakdown = Field(default_factory=SourceBreakdown, alias="sourceBreakdown")
    fallback: bool = False
    strategy: Strategy = Strategy.BASELINE
    risk_level: RiskLevel = Field(RiskLevel.SAFE, alias="riskLevel")
    oracle_unsafe: bool = Field(False, alias="oracleUnsafe")
    threat_type: Optional[str] = Field(None, alias="threatType")
    cached: bool = False
    timestamp: int = Field(default_factory=now_ms)


# ====== External verdict oracle ======
class ExternalVerdict(BaseModel):
    model_config = _WIRE

    is_safe: bool = Field(True, alias="isSafe")
    threat_type: Optional[str] = Field(None, alias="threatType")


# ====== Runtime observations ======
class ObservedEvent(BaseModel):
    model_config = _WIRE

    type: str
    detail: str = ""
    timestamp: float = Field(default_factory=time.time)
    attrs: Dict[str, Any] = Field(default_factory=dict)
