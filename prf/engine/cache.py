from __future__ import annotations

import logging
from typing import Dict, Optional, Set

from prf.calibration.table import CacheCalibration
from prf.schemas import RiskLevel
from prf.utils.url import cache_domain, normalize_url

log = logging.getLogger(__name__)

# Lookup order: the most severe classification wins.
SEVERITY = (RiskLevel.LIKELY_PHISHING, RiskLevel.SUSPICIOUS, RiskLevel.SAFE)

CACHED_SCORES: Dict[RiskLevel, int] = {
    RiskLevel.LIKELY_PHISHING: 100,
    RiskLevel.SUSPICIOUS: 40,
    RiskLevel.SAFE: 0,
}


class KnownUrlCache:
    """
    Three bounded sets of previously classified URLs and domains. When a set
    grows past its capacity it is cleared in full, then the new key is added.
    """

    def __init__(self, calibration: Optional[CacheCalibration] = None):
        cfg = calibration or CacheCalibration()
        self.capacity: Dict[RiskLevel, int] = {
            RiskLevel.LIKELY_PHISHING: cfg.phishing_capacity,
            RiskLevel.SUSPICIOUS: cfg.suspicious_capacity,
            RiskLevel.SAFE: cfg.safe_capacity,
        }
        self.sets: Dict[RiskLevel, Set[str]] = {level: set() for level in SEVERITY}
        self.evictions: Dict[RiskLevel, int] = {level: 0 for level in SEVERITY}

    def __len__(self) -> int:
        return sum(len(s) for s in self.sets.values())

    def lookup(self, url: str) -> Optional[RiskLevel]:
        """Exact URL first, then its domain."""
        domain = cache_domain(url)
        for key in (normalize_url(url), domain):
            if not key:
                continue
            for level in SEVERITY:
                if key in self.sets[level]:
                    return level
        return None

    def _add(self, level: RiskLevel, key: str) -> None:
        for other in SEVERITY:
            if other is not level:
                self.sets[other].discard(key)
        bucket = self.sets[level]
        bucket.add(key)
        if len(bucket) > self.capacity[level]:
            log.info("Known-URL cache %s over capacity (%d), clearing", level.value, self.capacity[level])
            bucket.clear()
            bucket.add(key)
            self.evictions[level] += 1

    def record(self, url: str, level: RiskLevel) -> None:
        key = normalize_url(url) or url
        self._add(level, key)
        domain = cache_domain(url)
        if domain and domain != key:
            self._add(level, domain)

    def clear(self) -> None:
        for bucket in self.sets.values():
            bucket.clear()

    def stats(self) -> Dict[str, int]:
        out = {f"{level.value}_size": len(self.sets[level]) for level in SEVERITY}
        out.update({f"{level.value}_evictions": self.evictions[level] for level in SEVERITY})
        return out
