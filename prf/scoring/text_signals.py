"""
Phrase-level text analysis of a page: urgency language, over-insistent
security claims, brand mentions hosted on the wrong domain, and the clumsy
phrasing typical of phishing kits.
"""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from prf.calibration.table import CalibrationTable, DEFAULT_CALIBRATION
from prf.schemas import PageContent, SignalResult
from prf.utils.url import host_matches, hostname

_SENTENCE_SPLIT = re.compile(r"[.!?]+")


def build_corpus(page: PageContent) -> str:
    parts: List[str] = []
    for text in (page.title, page.meta_description, page.text_sample):
        if text:
            parts.append(text)

    link_text = " ".join(link.text.strip() for link in page.links if link.text and link.text.strip())
    if link_text:
        parts.append(link_text)

    form_text: List[str] = []
    for form in page.forms:
        for inp in form.inputs:
            form_text.extend(v for v in (inp.label, inp.placeholder, inp.id, inp.name) if v)
    if form_text:
        parts.append(" ".join(form_text))

    return " ".join(parts).lower()


def count_occurrences(text: str, sub: str) -> int:
    """Overlapping occurrence count."""
    if not sub:
        return 0
    count, pos = 0, text.find(sub)
    while pos != -1:
        count += 1
        pos = text.find(sub, pos + 1)
    return count


def text_confidence(score: float, indicator_count: int, text_length: int) -> float:
    confidence = score / 100
    confidence *= 0.7 + min(indicator_count, 5) / 10
    confidence *= 0.8 + min(text_length / 500, 1) * 0.2
    return min(max(confidence, 0.1), 0.95)


class TextSignalScorer:
    def __init__(self, calibration: CalibrationTable = DEFAULT_CALIBRATION):
        self.calibration = calibration

    def urgency(self, text: str) -> List[str]:
        return [p for p in self.calibration.text.urgency_phrases if p in text]

    def security_claims(self, text: str) -> List[str]:
        return [p for p in self.calibration.text.security_phrases if p in text]

    def brands(self, text: str, title: str, host: str) -> Dict[str, Any]:
        cfg = self.calibration.text
        title = (title or "").lower()
        detected: List[str] = []
        mismatch: Optional[str] = None
        for brand, domains in self.calibration.brand_domains.items():
            in_title = brand in title
            if not (in_title or brand in text):
                continue
            detected.append(brand)
            if host_matches(host, domains):
                continue
            if mismatch is None and (in_title or count_occurrences(text, brand) >= cfg.brand_min_occurrences):
                mismatch = f"{brand} mentioned but hosted on {host or 'an unknown host'}"
        return {"detected": detected, "mismatch": mismatch}

    def language_quality(self, text: str) -> Dict[str, Any]:
        cfg = self.calibration.text
        total = 0.0
        issues: List[str] = []
        for pattern, weight in cfg.grammar_patterns.items():
            if pattern in text:
                total += weight
                issues.append(pattern)

        sentences = [s.strip() for s in _SENTENCE_SPLIT.split(text) if s.strip()]
        avg_len = sum(len(s) for s in sentences) / (len(sentences) or 1)
        if avg_len < cfg.short_sentence_chars and len(sentences) > cfg.short_sentence_min_count:
            total += cfg.short_sentence_weight
            issues.append("unusually short sentences")
        if any(len(s.split()) > cfg.long_sentence_words for s in sentences):
            total += cfg.long_sentence_weight
            issues.append("overly complex sentences")

        return {
            "poor": total >= cfg.quality_threshold,
            "score": round(total, 3),
            "examples": issues[: cfg.max_quality_examples],
        }

    def analyze(self, page: Optional[PageContent], url: str) -> Optional[Dict[str, Any]]:
        """Full breakdown, or None when there is no text to judge."""
        if page is None:
            return None
        text = build_corpus(page)
        if not text.strip():
            return None

        cfg = self.calibration.text
        host = hostname(url)
        score = 0
        indicators: List[str] = []
        patterns: List[str] = []

        urgent = self.urgency(text)
        patterns.extend(urgent)
        if len(urgent) >= cfg.urgency_min_matches:
            indicators.append("Urgent or threatening language detected")
            score += cfg.urgency_points

        claims = self.security_claims(text)
        patterns.extend(claims)
        if len(claims) >= cfg.claims_min_matches:
            indicators.append("Excessive security or verification claims")
            score += cfg.claims_points

        brands = self.brands(text, page.title, host)
        if brands["mismatch"]:
            indicators.append(f"Brand impersonation detected: {brands['mismatch']}")
            score += cfg.brand_points

        quality = self.language_quality(text)
        if quality["poor"]:
            indicators.append("Poor language quality or inconsistent terminology")
            score += cfg.quality_points
            patterns.extend(quality["examples"])

        score = min(score, 100)
        result = SignalResult(
            score=float(score),
            indicators=indicators,
            confidence=round(text_confidence(score, len(indicators), len(text)), 4),
        )
        return {
            "result": result,
            "patterns": patterns,
            "brand_mentions": brands["detected"],
            "brand_mismatch": brands["mismatch"] is not None,
            "text_length": len(text),
        }

    def score(self, page: Optional[PageContent], url: str) -> Optional[SignalResult]:
        analysis = self.analyze(page, url)
        return analysis["result"] if analysis else None
