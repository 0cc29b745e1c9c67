import asyncio
import time

import numpy as np
from sklearn.dummy import DummyClassifier

from prf.engine.context import RiskEngineContext
from prf.engine.oracle import OracleFailurePolicy, StaticOracle
from prf.engine.pipeline import RiskPipeline
from prf.features.config import FEATURE_NAMES, FEATURE_VERSION
from prf.models.classifier import MLClassifier
from prf.schemas import ExternalVerdict, FormInfo, InputInfo, ObservedEvent, PageContent, RiskLevel, Strategy
from prf.utils.settings import EngineSettings

URL = "https://evil.example/login"
PAGE = PageContent(
    title="Sign in",
    has_https=True,
    text_sample="urgent: your account suspended, act immediately",
    forms=[FormInfo(action="/session", is_login_form=True, inputs=[InputInfo(type="password")])],
)


def _settings(**kw):
    base = dict(model_file=None, oracle_timeout=0.05, ml_timeout=0.05, max_retries=1)
    base.update(kw)
    return EngineSettings(**base)


def _pipeline(oracle=None, classifier=None, **settings):
    alerts = []
    ctx = RiskEngineContext(_settings(**settings), classifier=classifier, oracle=oracle,
                            alert_sink=lambda tab, a: alerts.append(a))
    return RiskPipeline(ctx), ctx, alerts


class CountingOracle:
    def __init__(self, verdict=None):
        self.calls = 0
        self.verdict = verdict or ExternalVerdict(is_safe=True)

    async def check(self, url):
        self.calls += 1
        return self.verdict


class SlowOracle:
    def __init__(self):
        self.calls = 0

    async def check(self, url):
        self.calls += 1
        await asyncio.sleep(10)


class SlowModel:
    classes_ = np.array([0, 1])

    def predict_proba(self, X):
        time.sleep(0.3)
        return np.array([[0.5, 0.5]])


def _dummy_classifier(p_phish=0.8):
    ones = int(p_phish * 10)
    model = DummyClassifier(strategy="prior").fit(np.zeros((10, 20)), [1] * ones + [0] * (10 - ones))
    return MLClassifier({"model": model, "feature_names": FEATURE_NAMES, "feature_version": FEATURE_VERSION})


def test_scan_without_network_signals():
    pipe, ctx, _ = _pipeline()
    a = asyncio.run(pipe.scan("1", URL, PAGE))
    assert a.strategy == Strategy.BASELINE
    assert a.fallback is False
    assert a.source_breakdown.rule == 0
    assert a.source_breakdown.text == 25
    assert ctx.tabs.status("1")["status"] == "safe"


def test_oracle_unsafe_forces_danger_and_stays():
    pipe, ctx, alerts = _pipeline(oracle=StaticOracle({"evil.example": "SOCIAL_ENGINEERING"}))
    a = asyncio.run(pipe.scan("1", URL, PAGE))
    assert a.combined_score == 100 and a.is_phishing
    assert "External verdict: SOCIAL_ENGINEERING" in a.indicators
    assert len(alerts) == 1

    later = pipe.ingest_behavior("1", [ObservedEvent(type="sensitive_input", timestamp=1.0)])
    assert later.strategy == Strategy.SESSION_FUSED
    assert later.combined_score == 100 and later.is_phishing
    later = pipe.ingest_interactions("1", [ObservedEvent(type="click", attrs={"width": 100, "height": 30})])
    assert later.combined_score == 100
    assert len(alerts) == 1
    assert ctx.tabs.status("1")["status"] == "danger"


def test_oracle_timeout_falls_back_after_one_retry():
    oracle = SlowOracle()
    pipe, _, _ = _pipeline(oracle=oracle)
    a = asyncio.run(pipe.scan("1", URL, PAGE))
    assert a.fallback is True
    assert a.oracle_unsafe is False
    assert oracle.calls == 2


def test_fail_closed_policy_treats_timeout_as_unsafe():
    pipe, _, _ = _pipeline(oracle=SlowOracle(), oracle_failure_policy=OracleFailurePolicy.FAIL_CLOSED)
    a = asyncio.run(pipe.scan("1", URL, PAGE))
    assert a.fallback is True
    assert a.is_phishing and a.combined_score == 100


def test_ml_augmented_and_ml_timeout():
    pipe, _, _ = _pipeline(classifier=_dummy_classifier(0.8))
    a = asyncio.run(pipe.scan("1", URL, PAGE))
    assert a.strategy == Strategy.ML_AUGMENTED
    assert a.source_breakdown.ml == 80
    assert a.combined_score == 48

    slow = MLClassifier({"model": SlowModel(), "feature_names": FEATURE_NAMES, "feature_version": FEATURE_VERSION})
    pipe, _, _ = _pipeline(classifier=slow)
    a = asyncio.run(pipe.scan("1", URL, PAGE))
    assert a.fallback is True
    assert a.strategy == Strategy.BASELINE


def test_result_for_old_navigation_is_discarded():
    async def run():
        gate, called = asyncio.Event(), asyncio.Event()

        class GateOracle:
            async def check(self, url):
                called.set()
                await gate.wait()
                return ExternalVerdict(is_safe=False, threat_type="MALWARE")

        pipe, ctx, alerts = _pipeline(oracle=GateOracle(), oracle_timeout=5)
        pipe.navigate("7", URL)
        task = asyncio.create_task(pipe.scan("7", URL, PAGE))
        await called.wait()
        token2, _ = pipe.navigate("7", "https://fine.example/")
        gate.set()
        return await task, ctx.tabs.status("7"), token2, alerts, ctx

    result, status, token2, alerts, ctx = asyncio.run(run())
    assert result is None
    assert status["navigationToken"] == token2
    assert status["url"] == "https://fine.example/"
    assert status["lastAssessment"] is None
    assert status["alertIssued"] is False
    assert alerts == []
    assert ctx.cache.lookup(URL) is None


def test_stale_runtime_events_are_discarded():
    pipe, ctx, _ = _pipeline()
    t1, _ = pipe.navigate("1", URL)
    pipe.navigate("1", "https://fine.example/")
    assert pipe.ingest_behavior("1", [ObservedEvent(type="popup")], token=t1) is None
    assert pipe.ingest_interactions("1", [ObservedEvent(type="countdown")], token=t1) is None
    assert ctx.tabs.status("1")["lastAssessment"] is None


def test_failing_scorer_is_isolated():
    pipe, _, _ = _pipeline()

    def boom(page, url):
        raise RuntimeError("broken rule table")

    pipe.rules.score = boom
    a = asyncio.run(pipe.scan("1", URL, PAGE))
    assert a.source_breakdown.rule is None
    assert a.source_breakdown.text == 25


def test_cache_short_circuits_second_scan():
    oracle = CountingOracle()
    pipe, _, _ = _pipeline(oracle=oracle)
    asyncio.run(pipe.scan("1", URL, PAGE))
    assert oracle.calls == 1
    _, hit = pipe.navigate("2", URL)
    assert hit is not None and hit.cached
    again = asyncio.run(pipe.scan("2", URL, PAGE))
    assert again.strategy == Strategy.CACHE
    assert oracle.calls == 1


def test_concurrent_scan_of_same_url_still_consults_oracle():
    async def run():
        gate, both = asyncio.Event(), asyncio.Event()
        calls = []

        class GateOracle:
            async def check(self, url):
                calls.append(url)
                if len(calls) == 2:
                    both.set()
                await gate.wait()
                return ExternalVerdict(is_safe=False, threat_type="SOCIAL_ENGINEERING")

        pipe, ctx, _ = _pipeline(oracle=GateOracle(), oracle_timeout=5)
        first = asyncio.create_task(pipe.scan("1", URL, PAGE))
        while not calls:
            await asyncio.sleep(0)
        assert ctx.tabs.status("1")["lastAssessment"] is not None
        assert ctx.cache.lookup(URL) is None
        second = asyncio.create_task(pipe.scan("2", URL, PAGE))
        await both.wait()
        gate.set()
        return await asyncio.gather(first, second), calls, ctx

    (a1, a2), calls, ctx = asyncio.run(run())
    assert len(calls) == 2
    assert a1.oracle_unsafe and a2.oracle_unsafe
    assert a2.strategy != Strategy.CACHE
    assert ctx.cache.lookup(URL) == RiskLevel.LIKELY_PHISHING


def test_runtime_events_before_scan_do_not_fill_cache():
    pipe, ctx, _ = _pipeline()
    pipe.navigate("1", URL)
    a = pipe.ingest_interactions("1", [ObservedEvent(type="fake_browser_ui")])
    assert a is not None
    assert ctx.cache.lookup(URL) is None


def test_behavior_reports_drive_session_fusion():
    pipe, ctx, alerts = _pipeline()
    asyncio.run(pipe.scan("1", URL, PAGE))
    events = [
        ObservedEvent(type="form_action_changed", timestamp=1.0,
                      attrs={"old_action": URL, "new_action": "https://drop.bad.example/c", "sensitive": True}),
        ObservedEvent(type="cookie_write", timestamp=2.0, attrs={"value": "session=1"}),
    ]
    a = pipe.ingest_behavior("1", events)
    assert a.strategy == Strategy.SESSION_FUSED
    assert a.source_breakdown.behavior == 100
    assert a.combined_score == 45
    assert pipe.report_all() == 1
    assert ctx.tabs.status("1")["status"] == "suspicious"


def test_assess_once_is_stateless():
    pipe, ctx, _ = _pipeline(oracle=CountingOracle())
    a = asyncio.run(pipe.assess_once(URL, PAGE, interactions=[ObservedEvent(type="fake_browser_ui")]))
    assert a.strategy == Strategy.SESSION_FUSED
    assert a.combined_score == 13
    assert len(ctx.tabs) == 0 and len(ctx.cache) == 0
