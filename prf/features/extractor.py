from __future__ import annotations

import logging
import re
from typing import Dict, Optional
from urllib.parse import urlsplit

from prf.calibration.table import CalibrationTable, DEFAULT_CALIBRATION
from prf.features.vector import FeatureVector
from prf.schemas import PageContent
from prf.utils.url import hostname, resolve, subdomain_count

log = logging.getLogger(__name__)

_SPECIAL_CHARS = re.compile(r"[^a-zA-Z0-9./-]")


def normalize_value(value: float, lo: float, hi: float) -> float:
    if value < lo:
        return 0.0
    if value > hi:
        return 1.0
    if hi == lo:
        return 0.0
    return (value - lo) / (hi - lo)


def _scaled(name: str, value: float, calibration: CalibrationTable) -> float:
    lo, hi = calibration.feature_ranges[name]
    return normalize_value(float(value), lo, hi)


def extract_url_features(url: str, calibration: CalibrationTable = DEFAULT_CALIBRATION) -> Dict[str, float]:
    """Ten URL-lexical features, or {} when the URL cannot be parsed."""
    try:
        raw = (url or "").strip()
        parts = urlsplit(raw)
        scheme = (parts.scheme or "").lower()
        host = (parts.hostname or "").lower()
        if scheme not in ("http", "https") or not host:
            log.debug("URL features skipped (unparseable): %r", url)
            return {}

        path = parts.path or "/"
        query = parts.query or ""
        segments = [s for s in path.split("/") if s]
        params = [p for p in query.split("&")] if query else []

        feats = {
            "url_length": _scaled("url_length", len(raw), calibration),
            "domain_length": _scaled("domain_length", len(host), calibration),
            "subdomain_count": _scaled("subdomain_count", subdomain_count(host), calibration),
            "has_hyphen_in_domain": 1.0 if "-" in host else 0.0,
            "path_length": _scaled("path_length", len(path), calibration),
            "path_segment_count": _scaled("path_segment_count", len(segments), calibration),
            "special_char_count": _scaled("special_char_count", len(_SPECIAL_CHARS.findall(raw)), calibration),
            "has_https": 1.0 if scheme == "https" else 0.0,
            "has_query_params": 1.0 if query else 0.0,
            "query_param_count": _scaled("query_param_count", len(params), calibration),
        }
        return feats
    except Exception as e:
        log.warning("URL feature extraction failed: %s", e)
        return {}


def _external_form_action(page: PageContent, page_url: str, current_host: str) -> float:
    for form in page.forms:
        if not form.action:
            continue
        # Per-element: a malformed action is skipped, not fatal.
        target = hostname(resolve(page_url, form.action))
        if target and target != current_host:
            return 1.0
    return 0.0


def extract_content_features(
    page: PageContent,
    url: str,
    calibration: CalibrationTable = DEFAULT_CALIBRATION,
) -> Dict[str, float]:
    try:
        current_host = hostname(url)
        forms = page.forms
        login_forms = page.login_forms()
        password_fields = sum(f.password_fields() for f in forms)

        links = page.links
        external_links = sum(1 for link in links if link.is_external)
        external_ratio = external_links / len(links) if links else 0.0

        has_https = 1.0 if page.has_https else 0.0

        return {
            "form_count": _scaled("form_count", len(forms), calibration),
            "login_form_count": _scaled("login_form_count", len(login_forms), calibration),
            "password_field_count": _scaled("password_field_count", password_fields, calibration),
            "external_form_action": _external_form_action(page, url, current_host),
            "link_count": _scaled("link_count", len(links), calibration),
            "external_link_ratio": float(external_ratio),
            "has_security_claims": 1.0 if page.claims_secure_or_verified else 0.0,
            "has_urgent_language": 1.0 if page.has_urgency_language else 0.0,
            "content_has_https": has_https,
            "login_form_without_https": 1.0 if (not has_https and login_forms) else 0.0,
        }
    except Exception as e:
        log.warning("Content feature extraction failed: %s", e)
        return {}


def extract(
    url: str,
    page: Optional[PageContent] = None,
    calibration: CalibrationTable = DEFAULT_CALIBRATION,
) -> FeatureVector:
    """
    URL features plus, only when ``page`` is given, content features.
    Never raises: a failure yields a partial or empty vector.
    """
    feats: Dict[str, float] = dict(extract_url_features(url, calibration))
    if page is not None:
        feats.update(extract_content_features(page, url, calibration))
    return FeatureVector(feats)
