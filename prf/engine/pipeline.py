"""
Scan orchestration on top of ``RiskEngineContext``.

Local scorers run synchronously, each behind an isolation wrapper, and a
preliminary assessment is applied at once. The oracle and ML calls are the
only suspension points; they run concurrently under ``call_guarded`` and
their results are applied only if the tab is still on the same navigation.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Tuple

from prf.engine.context import RiskEngineContext
from prf.engine.fusion import fuse
from prf.engine.oracle import call_guarded
from prf.features.extractor import extract
from prf.features.vector import FeatureVector
from prf.schemas import ExternalVerdict, ObservedEvent, PageContent, RiskAssessment, SignalResult
from prf.scoring.behavior import BehaviorScorer
from prf.scoring.content_rules import ContentRuleScorer
from prf.scoring.interaction import InteractionScorer
from prf.scoring.text_signals import TextSignalScorer

log = logging.getLogger(__name__)


def isolated(name: str, fn: Callable[..., Any], *args, **kwargs) -> Optional[Any]:
    """Run one scorer; an exception is logged and becomes "no opinion"."""
    try:
        return fn(*args, **kwargs)
    except Exception:
        log.exception("Scorer %s failed", name)
        return None


@dataclass
class LocalSignals:
    vector: FeatureVector
    rule: Optional[SignalResult]
    text: Optional[SignalResult]


@dataclass
class RemoteSignals:
    ml: Optional[SignalResult] = None
    verdict: Optional[ExternalVerdict] = None
    fallback: bool = False


class RiskPipeline:
    def __init__(self, context: RiskEngineContext):
        self.ctx = context
        self.rules = ContentRuleScorer(context.calibration)
        self.text = TextSignalScorer(context.calibration)

    # ---- building blocks ----
    def local_signals(self, url: str, page: Optional[PageContent]) -> LocalSignals:
        vector = isolated("features", extract, url, page, self.ctx.calibration)
        return LocalSignals(
            vector=vector if vector is not None else FeatureVector(),
            rule=isolated("rule", self.rules.score, page, url),
            text=isolated("text", self.text.score, page, url),
        )

    async def remote_signals(self, url: str, vector: FeatureVector) -> RemoteSignals:
        s = self.ctx.settings
        out = RemoteSignals()

        async def _ml() -> None:
            clf = self.ctx.classifier
            if not clf.available:
                return
            pred = await call_guarded(functools.partial(clf.predict, vector), s.ml_timeout, s.max_retries, "ml")
            if pred is None:
                out.fallback = True
            else:
                out.ml = pred.to_signal()

        async def _oracle() -> None:
            oracle = self.ctx.oracle
            if oracle is None:
                return
            verdict = await call_guarded(functools.partial(oracle.check, url), s.oracle_timeout, s.max_retries, "oracle")
            if verdict is None:
                out.fallback = True
                out.verdict = s.oracle_failure_policy.on_failure()
            else:
                out.verdict = verdict

        await asyncio.gather(_ml(), _oracle())
        return out

    # ---- tab lifecycle ----
    def navigate(self, tab_id: str, url: str) -> Tuple[int, Optional[RiskAssessment]]:
        """Start a navigation; returns the token and a cache hit, if any."""
        token = self.ctx.tabs.start_navigation(tab_id, url)
        state = self.ctx.tabs.get(tab_id)
        state.behavior.reporter = functools.partial(self._on_behavior_report, tab_id, token)
        return token, self.ctx.tabs.lookup_cached(tab_id)

    async def scan(self, tab_id: str, url: str, page: Optional[PageContent] = None) -> Optional[RiskAssessment]:
        """
        Full scan of the tab's current page. Returns None when the tab moved
        on to another navigation before the network calls finished.
        """
        tabs = self.ctx.tabs
        state = tabs.get(tab_id)
        if state is None or state.url != url:
            _, hit = self.navigate(tab_id, url)
            state = tabs.get(tab_id)
        else:
            hit = tabs.lookup_cached(tab_id)
        if hit is not None:
            return hit

        token, session = state.navigation_token, state.session
        local = self.local_signals(url, page)
        session.update(rule=local.rule, text=local.text)
        tabs.apply(tab_id, token, session.assess(), terminal=False)

        remote = await self.remote_signals(url, local.vector)
        if not tabs.is_current(tab_id, token):
            log.info("Scan of %s finished after tab %s navigated away; discarded", url, tab_id)
            return None

        session.update(ml=remote.ml)
        session.set_verdict(remote.verdict)
        session.fallback = session.fallback or remote.fallback
        state.verified = True
        assessment = session.assess()
        tabs.apply(tab_id, token, assessment)
        return assessment

    def _recompute(self, tab_id: str, token: int) -> Optional[RiskAssessment]:
        state = self.ctx.tabs.get(tab_id)
        if state is None or state.navigation_token != token:
            log.info("Discarding runtime report for tab %s (stale token %s)", tab_id, token)
            return None
        assessment = state.session.assess()
        # runtime recomputes reach the cache only once the remote checks have run
        self.ctx.tabs.apply(tab_id, token, assessment, terminal=state.verified)
        return assessment

    def _on_behavior_report(self, tab_id: str, token: int, result: SignalResult) -> None:
        state = self.ctx.tabs.get(tab_id)
        if state is None or state.navigation_token != token:
            log.info("Discarding behavior report for tab %s (stale token %s)", tab_id, token)
            return
        state.session.update(behavior=result)
        self._recompute(tab_id, token)

    def ingest_behavior(
        self, tab_id: str, events: Iterable[ObservedEvent], token: Optional[int] = None
    ) -> Optional[RiskAssessment]:
        state = self.ctx.tabs.get(tab_id)
        if state is None:
            return None
        token = state.navigation_token if token is None else token
        if token != state.navigation_token:
            log.info("Discarding behavior events for tab %s (stale token %s)", tab_id, token)
            return None
        for event in events:
            isolated("behavior", state.behavior.observe, event)
        state.session.update(behavior=isolated("behavior", state.behavior.result))
        return self._recompute(tab_id, token)

    def ingest_interactions(
        self, tab_id: str, events: Iterable[ObservedEvent], token: Optional[int] = None
    ) -> Optional[RiskAssessment]:
        state = self.ctx.tabs.get(tab_id)
        if state is None:
            return None
        token = state.navigation_token if token is None else token
        if token != state.navigation_token:
            log.info("Discarding interaction events for tab %s (stale token %s)", tab_id, token)
            return None
        for event in events:
            isolated("interaction", state.interaction.observe, event)
        state.session.update(interaction=isolated("interaction", state.interaction.result))
        return self._recompute(tab_id, token)

    def report_all(self) -> int:
        """Periodic behavior report for every open tab; returns how many reported."""
        reported = 0
        for state in list(self.ctx.tabs.tabs.values()):
            result = isolated("behavior", state.behavior.report)
            if result is not None and result.score > 0:
                reported += 1
        return reported

    # ---- stateless ----
    async def assess_once(
        self,
        url: str,
        page: Optional[PageContent] = None,
        events: Iterable[ObservedEvent] = (),
        interactions: Iterable[ObservedEvent] = (),
    ) -> RiskAssessment:
        """One-shot assessment that touches neither the tab table nor the cache."""
        cal = self.ctx.calibration
        local = self.local_signals(url, page)

        behavior = BehaviorScorer(cal, origin_url=url)
        for event in events:
            isolated("behavior", behavior.observe, event)
        interaction = InteractionScorer(cal)
        for event in interactions:
            isolated("interaction", interaction.observe, event)

        remote = await self.remote_signals(url, local.vector)
        return fuse(
            url,
            rule=local.rule,
            ml=remote.ml,
            text=local.text,
            behavior=isolated("behavior", behavior.result),
            interaction=isolated("interaction", interaction.result),
            verdict=remote.verdict,
            fallback=remote.fallback,
            calibration=cal,
        )
