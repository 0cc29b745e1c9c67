from typing import List, Mapping

FEATURE_VERSION = "v1.0"

URL_FEATURES: List[str] = [
    "url_length", "domain_length", "subdomain_count", "has_hyphen_in_domain",
    "path_length", "path_segment_count", "special_char_count", "has_https",
    "has_query_params", "query_param_count",
]

CONTENT_FEATURES: List[str] = [
    "form_count", "login_form_count", "password_field_count",
    "external_form_action", "link_count", "external_link_ratio",
    "has_security_claims", "has_urgent_language", "content_has_https",
    "login_form_without_https",
]

# Model input order. Changing it invalidates every trained artifact.
FEATURE_NAMES: List[str] = URL_FEATURES + CONTENT_FEATURES


def to_vector(feats: Mapping[str, float]) -> List[float]:
    return [float(feats.get(name, 0.0)) for name in FEATURE_NAMES]


def readable_name(name: str) -> str:
    return " ".join(w.capitalize() for w in name.split("_"))
