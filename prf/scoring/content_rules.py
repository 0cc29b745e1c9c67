from __future__ import annotations

import logging
from typing import List, Optional

from prf.calibration.table import CalibrationTable, DEFAULT_CALIBRATION
from prf.schemas import PageContent, SignalResult
from prf.utils.url import host_matches, hostname, resolve

log = logging.getLogger(__name__)


class ContentRuleScorer:
    """
    Deterministic point rules over scraped page content. The sum is not
    capped here; fusion clamps the combined score.
    """

    def __init__(self, calibration: CalibrationTable = DEFAULT_CALIBRATION):
        self.calibration = calibration

    def score(self, page: Optional[PageContent], url: str) -> Optional[SignalResult]:
        if page is None:
            return None

        pts = self.calibration.rules
        current_host = hostname(url)
        indicators: List[str] = []
        score = 0
        brand_mismatch = False

        login_forms = page.login_forms()
        for form in login_forms:
            if not form.action:
                continue
            if form.action.lower().startswith("http:"):
                indicators.append("Login form submits credentials via unencrypted connection")
                score += pts.unencrypted_login_submit
            target = hostname(resolve(url, form.action))
            if not target:
                log.debug("Skipping unparseable form action %r", form.action)
                continue
            if target != current_host:
                indicators.append(f"Login form submits data to external domain ({target})")
                score += pts.cross_domain_login_submit

        if login_forms and not page.has_https:
            indicators.append("Login form on page without HTTPS encryption")
            score += pts.login_without_https

        title = (page.title or "").lower()
        if title:
            for brand, domains in self.calibration.brand_domains.items():
                if brand in title and not host_matches(current_host, domains):
                    indicators.append(f"Page claims to be {brand} but is hosted on {current_host or 'an unknown host'}")
                    score += pts.brand_title_mismatch
                    brand_mismatch = True

        if page.has_urgency_language:
            indicators.append("Page contains urgent or alarming language typical of phishing attempts")
            score += pts.urgency_language

        # Only counts once the page already looks suspicious.
        if page.claims_secure_or_verified and (score > pts.suspicious_floor or brand_mismatch):
            indicators.append("Page makes excessive security or verification claims")
            score += pts.security_claims_when_suspicious

        links = page.links
        if links:
            external = sum(1 for link in links if link.is_external)
            ratio = external / len(links)
            if ratio > pts.external_ratio_threshold and len(links) > pts.external_link_min:
                indicators.append(f"High ratio of external links ({round(ratio * 100)}%)")
                score += pts.external_link_ratio

        for form in page.forms:
            if form.password_fields() > 1:
                indicators.append("Multiple password fields in a single form (unusual behavior)")
                score += pts.multiple_password_fields

        return SignalResult(score=float(score), indicators=indicators)
