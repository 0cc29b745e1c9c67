from __future__ import annotations

from typing import Dict, Iterator, List, Mapping, Optional

from prf.features.config import FEATURE_NAMES, FEATURE_VERSION, to_vector


class FeatureVector(Mapping[str, float]):
    """
    Named, normalized features. A feature that was never computed is simply
    absent, so ``"form_count" in vec`` separates "not measured" from a
    measured 0.0. Values are clamped to [0, 1] on the way in.
    """

    version = FEATURE_VERSION

    def __init__(self, values: Optional[Mapping[str, float]] = None):
        self._values: Dict[str, float] = {}
        for name, value in (values or {}).items():
            self._values[name] = min(1.0, max(0.0, float(value)))

    def __getitem__(self, name: str) -> float:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        # Schema order first, then anything outside the schema.
        known = [n for n in FEATURE_NAMES if n in self._values]
        extra = [n for n in self._values if n not in FEATURE_NAMES]
        return iter(known + extra)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"FeatureVector({dict(self)!r})"

    def missing(self) -> List[str]:
        return [n for n in FEATURE_NAMES if n not in self._values]

    def to_array(self) -> List[float]:
        """Fixed model order; the only place a missing feature becomes 0."""
        return to_vector(self._values)
