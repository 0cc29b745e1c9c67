"""
Model loading and phishing-probability prediction over a FeatureVector.

Artifact (joblib) keys: model, feature_names, feature_version. The model is
any fitted estimator with predict_proba or decision_function; the artifact
is read, never written.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import logging

import numpy as np
import joblib

from prf.calibration.table import CalibrationTable, DEFAULT_CALIBRATION
from prf.features.config import FEATURE_NAMES, FEATURE_VERSION, readable_name
from prf.features.vector import FeatureVector
from prf.schemas import SignalResult

__all__ = ["MLClassifier", "MLPrediction", "ArtifactError"]

log = logging.getLogger(__name__)

TOP_K = 5


class ArtifactError(ValueError):
    pass


def _softmax(x: np.ndarray) -> np.ndarray:
    x = np.asarray(x, dtype=float)
    x = x - np.max(x, axis=-1, keepdims=True)
    e = np.exp(x)
    s = e / np.maximum(e.sum(axis=-1, keepdims=True), 1e-12)
    return s


def _proba_from_model(model, X: np.ndarray) -> np.ndarray:
    if hasattr(model, "predict_proba"):
        p = model.predict_proba(X)
        return np.asarray(p, dtype=float)
    if hasattr(model, "decision_function"):
        s = np.asarray(model.decision_function(X), dtype=float)
        if s.ndim == 1:
            s = np.vstack([-s, s]).T
        return _softmax(s)
    # no scoring method: uniform
    k = getattr(model, "classes_", [0, 1])
    return np.full((X.shape[0], len(k)), 1.0 / len(k), dtype=float)


def _positive_index(model) -> int:
    """Column of the phishing class: label 1, "phishing", or the last column."""
    classes = list(getattr(model, "classes_", [0, 1]))
    for label in (1, "1", "phishing", True):
        if label in classes:
            return classes.index(label)
    return len(classes) - 1


@dataclass(frozen=True)
class MLPrediction:
    probability: float
    confidence: float
    is_phishing: bool
    contributions: List[Tuple[str, float]] = field(default_factory=list)

    def to_signal(self) -> SignalResult:
        indicators = [
            f"ML detected: {readable_name(name)} (Impact: {impact:.3f})"
            for name, impact in self.contributions[:2]
        ]
        indicators.append(f"Machine Learning confidence: {round(self.confidence * 100)}%")
        return SignalResult(
            score=float(round(self.probability * 100)),
            indicators=indicators,
            confidence=self.confidence,
        )


def load_artifact(path: str) -> Dict[str, Any]:
    """Load and validate; raises ArtifactError when the file does not fit the schema."""
    artifact = joblib.load(path)
    if not isinstance(artifact, dict) or "model" not in artifact:
        raise ArtifactError("artifact must be a dict with a 'model' key")
    names = list(artifact.get("feature_names") or FEATURE_NAMES)
    if names != FEATURE_NAMES:
        raise ArtifactError(f"feature order mismatch ({len(names)} names)")
    version = artifact.get("feature_version", FEATURE_VERSION)
    if version != FEATURE_VERSION:
        raise ArtifactError(f"feature version {version} != {FEATURE_VERSION}")
    artifact["feature_names"] = names
    artifact["feature_version"] = version
    return artifact


class MLClassifier:
    """
    Wraps a pre-trained model. ``available`` is False when no usable artifact
    was loaded; ``predict`` then raises instead of making up a score.
    """

    def __init__(self, artifact: Optional[Dict[str, Any]] = None, calibration: CalibrationTable = DEFAULT_CALIBRATION):
        self.artifact = artifact
        self.calibration = calibration
        self.source: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.artifact is not None

    @classmethod
    def load(cls, path: Optional[str], calibration: CalibrationTable = DEFAULT_CALIBRATION) -> "MLClassifier":
        if not path or not Path(path).exists():
            log.warning("Model file not found (%s): ML unavailable", path)
            return cls(None, calibration)
        try:
            artifact = load_artifact(path)
        except Exception as e:
            log.error("Model load failed: %s", e)
            return cls(None, calibration)
        clf = cls(artifact, calibration)
        clf.source = Path(path).name
        log.info("Model loaded (%s, features=%s)", clf.source, artifact["feature_version"])
        return clf

    def contributions(self, vector: FeatureVector) -> List[Tuple[str, float]]:
        # Only computed features can contribute.
        importance = self.calibration.feature_importance
        ranked = [(name, importance.get(name, 0.0) * vector[name]) for name in vector if name in importance]
        ranked.sort(key=lambda kv: kv[1], reverse=True)
        return [(n, round(v, 6)) for n, v in ranked[:TOP_K]]

    def predict(self, vector: FeatureVector) -> MLPrediction:
        if self.artifact is None:
            raise RuntimeError("ML classifier unavailable")
        model = self.artifact["model"]
        X = np.asarray(vector.to_array(), dtype=float).reshape(1, -1)
        proba = _proba_from_model(model, X)[0]
        p = float(min(1.0, max(0.0, proba[_positive_index(model)])))
        return MLPrediction(
            probability=p,
            confidence=abs(p - 0.5) * 2,
            is_phishing=p >= self.calibration.ml_threshold,
            contributions=self.contributions(vector),
        )

    def score(self, vector: FeatureVector) -> SignalResult:
        return self.predict(vector).to_signal()
