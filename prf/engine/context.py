from __future__ import annotations

import logging
from typing import Optional

from prf.calibration.table import CalibrationTable, load_calibration
from prf.engine.cache import KnownUrlCache
from prf.engine.oracle import SAFE_BROWSING_ENDPOINT, SafeBrowsingOracle, VerdictOracle
from prf.engine.tabs import AlertSink, TabRiskStateMachine
from prf.models.classifier import MLClassifier
from prf.utils.settings import EngineSettings

log = logging.getLogger(__name__)


class RiskEngineContext:
    """
    Everything process-wide the engine mutates or shares: calibration,
    settings, the known-URL cache, the tab table, the classifier, the oracle
    and the alert sink. Built once at service start and passed by reference.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        calibration: Optional[CalibrationTable] = None,
        classifier: Optional[MLClassifier] = None,
        oracle: Optional[VerdictOracle] = None,
        alert_sink: Optional[AlertSink] = None,
    ):
        self.settings = settings or EngineSettings(model_file=None)
        self.calibration = calibration or load_calibration(self.settings.calibration_file)
        self.classifier = classifier or MLClassifier(None, self.calibration)
        self.oracle = oracle
        self.cache = KnownUrlCache(self.calibration.cache)
        self.tabs = TabRiskStateMachine(self.cache, self.calibration, alert_sink)

    @classmethod
    def from_settings(cls, settings: EngineSettings, alert_sink: Optional[AlertSink] = None) -> "RiskEngineContext":
        calibration = load_calibration(settings.calibration_file)
        classifier = MLClassifier.load(settings.model_file, calibration)
        oracle: Optional[VerdictOracle] = None
        if settings.oracle_enabled:
            oracle = SafeBrowsingOracle(
                settings.oracle_api_key,
                endpoint=settings.oracle_url or SAFE_BROWSING_ENDPOINT,
                timeout=settings.oracle_timeout,
            )
        else:
            log.info("No oracle API key: external verdicts disabled")
        return cls(settings, calibration, classifier, oracle, alert_sink)

    def reload_model(self) -> bool:
        self.classifier = MLClassifier.load(self.settings.model_file, self.calibration)
        return self.classifier.available

    def reset(self) -> None:
        """Forget every tab and cached classification."""
        self.tabs.clear()
        self.cache.clear()
        log.info("Engine state reset")

    async def close(self) -> None:
        self.reset()
        aclose = getattr(self.oracle, "aclose", None)
        if aclose is not None:
            await aclose()
