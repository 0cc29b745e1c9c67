from urllib.parse import urlsplit, urlunsplit, urljoin
import ipaddress
import tldextract

# Bundled public-suffix snapshot only; never fetch the list at runtime.
_EXTRACT = tldextract.TLDExtract(suffix_list_urls=())


def normalize_url(u: str) -> str:
    if not isinstance(u, str):
        return ""
    u = u.strip().replace("\\", "/")
    if not u:
        return ""
    parts = urlsplit(u)
    scheme = (parts.scheme or "http").lower()
    netloc = (parts.netloc or "").lower()
    if netloc.endswith(":80") and scheme == "http":
        netloc = netloc[:-3]
    if netloc.endswith(":443") and scheme == "https":
        netloc = netloc[:-4]
    return urlunsplit((scheme, netloc, parts.path or "", parts.query or "", ""))


def hostname(u: str) -> str:
    """Lowercased host of ``u`` or "" when it cannot be parsed."""
    if not isinstance(u, str) or not u:
        return ""
    try:
        return (urlsplit(u.strip()).hostname or "").lower()
    except ValueError:
        return ""


def cache_domain(u: str) -> str:
    """Host without a leading ``www.``, the key used for domain-level lookups."""
    if isinstance(u, str) and u and "://" not in u:
        u = "http://" + u.strip()
    host = hostname(u)
    return host[4:] if host.startswith("www.") else host


def resolve(base: str, ref: str) -> str:
    try:
        return urljoin(base, ref)
    except ValueError:
        return ""


def subdomain_count(host: str) -> int:
    if not host or is_ip_literal(host):
        return 0
    ext = _EXTRACT(host)
    if not ext.subdomain:
        return 0
    return len([seg for seg in ext.subdomain.split(".") if seg])


def host_matches(host: str, domains) -> bool:
    """True when ``host`` is one of ``domains`` or a subdomain of one."""
    host = (host or "").lower().rstrip(".")
    if not host:
        return False
    for d in domains:
        d = d.lower()
        if host == d or host.endswith("." + d):
            return True
    return False


def is_ip_literal(host: str) -> bool:
    host = (host or "").strip("[]")
    if host.count(":") == 1:
        host = host.split(":")[0]
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        return False
