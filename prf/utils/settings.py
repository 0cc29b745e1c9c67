from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional

from prf.engine.oracle import OracleFailurePolicy

log = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_MODEL_FILE = ROOT_DIR / "models" / "model_v1.0.pkl"


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        log.warning("Invalid %s=%r, using %s", key, raw, default)
        return default


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    return int(_float(env, key, default))


@dataclass(frozen=True)
class EngineSettings:
    model_file: Optional[str] = str(DEFAULT_MODEL_FILE)
    calibration_file: Optional[str] = None
    oracle_url: Optional[str] = None
    oracle_api_key: Optional[str] = None
    oracle_timeout: float = 5.0
    ml_timeout: float = 2.0
    max_retries: int = 1
    oracle_failure_policy: OracleFailurePolicy = OracleFailurePolicy.FAIL_OPEN
    behavior_report_interval: float = 30.0
    allow_origins: List[str] = field(default_factory=lambda: ["*"])

    @property
    def oracle_enabled(self) -> bool:
        return bool(self.oracle_api_key)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        env = os.environ if env is None else env
        origins = env.get("PRF_ALLOW_ORIGINS", "*")
        return cls(
            model_file=env.get("PRF_MODEL_FILE") or str(DEFAULT_MODEL_FILE),
            calibration_file=env.get("PRF_CALIBRATION_FILE") or None,
            oracle_url=env.get("PRF_ORACLE_URL") or None,
            oracle_api_key=env.get("PRF_ORACLE_API_KEY") or None,
            oracle_timeout=_float(env, "PRF_ORACLE_TIMEOUT", 5.0),
            ml_timeout=_float(env, "PRF_ML_TIMEOUT", 2.0),
            max_retries=max(0, min(_int(env, "PRF_MAX_RETRIES", 1), 1)),
            oracle_failure_policy=OracleFailurePolicy.parse(env.get("PRF_ORACLE_FAILURE_POLICY")),
            behavior_report_interval=_float(env, "PRF_BEHAVIOR_REPORT_INTERVAL", 30.0),
            allow_origins=[o.strip() for o in origins.split(",") if o.strip()],
        )
