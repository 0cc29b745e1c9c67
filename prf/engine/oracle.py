"""
External verdict oracle: the contract, two implementations, and the guard
that bounds every network-bound call made by the engine.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol, Union

import httpx

from prf.schemas import ExternalVerdict
from prf.utils.url import cache_domain

log = logging.getLogger(__name__)

SAFE_BROWSING_ENDPOINT = "https://safebrowsing.googleapis.com/v4/threatMatches:find"
THREAT_TYPES = ["MALWARE", "SOCIAL_ENGINEERING", "UNWANTED_SOFTWARE", "POTENTIALLY_HARMFUL_APPLICATION"]
UNAVAILABLE_THREAT = "VERDICT_UNAVAILABLE"


class VerdictOracle(Protocol):
    async def check(self, url: str) -> ExternalVerdict: ...


class OracleFailurePolicy(str, Enum):
    """What an oracle timeout or error means for the assessment."""

    FAIL_OPEN = "fail_open"  # no verdict, local fusion decides
    FAIL_CLOSED = "fail_closed"  # treated as unsafe

    @classmethod
    def parse(cls, value: Optional[str]) -> "OracleFailurePolicy":
        try:
            return cls((value or cls.FAIL_OPEN.value).strip().lower())
        except ValueError:
            log.warning("Unknown oracle failure policy %r, using fail_open", value)
            return cls.FAIL_OPEN

    def on_failure(self) -> Optional[ExternalVerdict]:
        if self is OracleFailurePolicy.FAIL_CLOSED:
            return ExternalVerdict(is_safe=False, threat_type=UNAVAILABLE_THREAT)
        return None


class SafeBrowsingOracle:
    """Google Safe Browsing v4 lookup. Raises on transport or HTTP errors."""

    def __init__(
        self,
        api_key: str,
        endpoint: str = SAFE_BROWSING_ENDPOINT,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
        client_id: str = "phish-risk-fusion",
        client_version: str = "1.0.0",
    ):
        self.api_key = api_key
        self.endpoint = endpoint
        self.client_id = client_id
        self.client_version = client_version
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def request_body(self, url: str) -> Dict[str, Any]:
        return {
            "client": {"clientId": self.client_id, "clientVersion": self.client_version},
            "threatInfo": {
                "threatTypes": THREAT_TYPES,
                "platformTypes": ["ANY_PLATFORM"],
                "threatEntryTypes": ["URL"],
                "threatEntries": [{"url": url}],
            },
        }

    async def check(self, url: str) -> ExternalVerdict:
        r = await self._client.post(self.endpoint, params={"key": self.api_key}, json=self.request_body(url))
        r.raise_for_status()
        matches = (r.json() or {}).get("matches") or []
        if not matches:
            return ExternalVerdict(is_safe=True)
        return ExternalVerdict(is_safe=False, threat_type=matches[0].get("threatType"))

    async def aclose(self) -> None:
        await self._client.aclose()


class StaticOracle:
    """Fixed deny list keyed by URL or domain (``www.`` ignored)."""

    def __init__(self, deny: Optional[Mapping[str, str]] = None):
        self.deny: Dict[str, str] = {}
        for key, threat in (deny or {}).items():
            self.deny[key] = threat
            self.deny[cache_domain(key) or key] = threat

    async def check(self, url: str) -> ExternalVerdict:
        threat = self.deny.get(url) or self.deny.get(cache_domain(url))
        if threat:
            return ExternalVerdict(is_safe=False, threat_type=threat)
        return ExternalVerdict(is_safe=True)


GuardedFn = Callable[[], Union[Any, Awaitable[Any]]]


async def call_guarded(fn: GuardedFn, timeout: float, retries: int = 1, name: str = "call") -> Optional[Any]:
    """
    Run ``fn`` with a timeout and at most ``retries`` extra attempts.
    Coroutine functions are awaited; plain callables run in a worker thread.
    Returns None when every attempt failed.
    """
    attempts = 1 + max(0, min(retries, 1))
    for attempt in range(1, attempts + 1):
        try:
            if inspect.iscoroutinefunction(fn):
                return await asyncio.wait_for(fn(), timeout)
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout)
        except asyncio.TimeoutError:
            log.warning("%s timed out after %.1fs (attempt %d/%d)", name, timeout, attempt, attempts)
        except Exception as e:
            log.warning("%s failed: %s (attempt %d/%d)", name, e, attempt, attempts)
    return None
