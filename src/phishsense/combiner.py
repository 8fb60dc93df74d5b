"""Score combiner: runs the engines concurrently and merges their results."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from dataclasses import asdict, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from phishsense.config import PatternConfig, load_config
from phishsense.engines import (
    ENGINE_ORDER,
    BaseEngine,
    BehaviorEngine,
    HeaderEngine,
    MLEngine,
    ReputationEngine,
    RuleEngine,
)
from phishsense.models import (
    AnalysisConfig,
    AnalysisResult,
    AuthSnapshot,
    BehaviorRecord,
    EmailContent,
    EngineBreakdown,
    EngineResult,
    EngineStatus,
    Finding,
    MLConfig,
    Sensitivity,
    Severity,
    TrustedRecord,
)
from phishsense.scoring import (
    EngineContribution,
    active_percentages,
    calculate_score,
    corroboration_floor,
    is_engine_active,
    summary_for,
)
from phishsense.store import Clock, RemoteSync, SenderHistory, SenderStore, verdict_for
from phishsense.threat_intel import ThreatIntelCache

logger = logging.getLogger(__name__)

# Finding id used when an engine raises past its own error handling.
_ERROR_IDS = {
    "rules": ("rules-error", "keywords"),
    "headers": ("header-error", "headers"),
    "reputation": ("reputation-error", "reputation"),
    "behavior": ("behavior-error", "behavior"),
    "ml": ("ml-error", "ml"),
}


class CombinerState(Enum):
    """Warm-up state of the combiner."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class ScoreCombiner:
    """Orchestrates the five engines and produces one AnalysisResult.

    All collaborators can be injected; anything omitted is built from the
    configuration. ML scoring becomes available only after
    ``initialize()`` (or the future from ``initialize_async()``) resolves.

    Args:
        config: Raw configuration dict from ``load_config``. Loaded from
            the default locations when omitted.
        store: Persistence for behavior and trusted-sender records.
        threat_intel: Shared threat intel cache.
        ml_engine: Pre-built ML engine.
        clock: Returns the current time; used for behavior records.
        remote_sync: Optional replication of behavior and trust upserts.
    """

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        *,
        store: SenderStore | None = None,
        threat_intel: ThreatIntelCache | None = None,
        ml_engine: MLEngine | None = None,
        clock: Clock | None = None,
        remote_sync: RemoteSync | None = None,
    ) -> None:
        self.config = config if config is not None else load_config()
        self.patterns = PatternConfig.from_config(self.config)

        analysis_cfg = self.config.get("analysis") or {}
        ml_config = MLConfig.from_mapping(self.config.get("ml"))
        # The ML engine owns its settings; AnalysisConfig.ml_config overrides them per call.
        self.analysis_config = AnalysisConfig(
            enable_ml=bool(analysis_cfg.get("enable_ml") or ml_config.enabled),
            sensitivity=Sensitivity.parse(analysis_cfg.get("sensitivity")),
        )

        if remote_sync is None:
            sync_cfg = self.config.get("remote_sync") or {}
            if sync_cfg.get("endpoint"):
                remote_sync = RemoteSync(sync_cfg["endpoint"], float(sync_cfg.get("timeout", 5)))

        self.threat_intel = threat_intel or ThreatIntelCache(
            self.patterns.threat_intel_sources, self.patterns.threat_intel_timeout,
        )
        self.history = SenderHistory(store, remote_sync=remote_sync, clock=clock)

        self.rule_engine = RuleEngine(self.patterns)
        self.header_engine = HeaderEngine()
        self.reputation_engine = ReputationEngine(self.patterns, self.threat_intel)
        self.behavior_engine = BehaviorEngine(self.patterns, self.history)
        self.ml_engine = ml_engine or MLEngine(self.patterns, ml_config)

        self._state = CombinerState.UNINITIALIZED
        self._state_lock = threading.Lock()
        self._init_future: concurrent.futures.Future | None = None

    @property
    def state(self) -> CombinerState:
        return self._state

    @property
    def engines(self) -> dict[str, BaseEngine]:
        return {
            "rules": self.rule_engine,
            "headers": self.header_engine,
            "reputation": self.reputation_engine,
            "behavior": self.behavior_engine,
            "ml": self.ml_engine,
        }

    # ------------------------------------------------------------------
    # Warm-up
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Warm up the ML engine. A failed warm-up leaves ML inactive.

        Calling again once READY re-warms an ML engine that has dropped
        its readiness (after ``update_config`` changed its mode) without
        leaving the READY state.
        """
        with self._state_lock:
            already_ready = self._state == CombinerState.READY
            if already_ready and self.ml_engine.is_ready():
                return
            if not already_ready:
                self._state = CombinerState.INITIALIZING

        try:
            self.ml_engine.initialize()
        except Exception as exc:
            logger.warning("ML warm-up failed, continuing without ML: %s", exc)

        if not already_ready:
            with self._state_lock:
                self._state = CombinerState.READY
            logger.debug("Score combiner ready")

    def initialize_async(self) -> concurrent.futures.Future:
        """Start ``initialize()`` on a background thread.

        Repeated calls return the same future.
        """
        with self._state_lock:
            if self._init_future is None:
                executor = concurrent.futures.ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="phishsense-init",
                )
                self._init_future = executor.submit(self.initialize)
                executor.shutdown(wait=False)
            return self._init_future

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze(
        self,
        content: EmailContent | Mapping[str, Any],
        config: AnalysisConfig | None = None,
    ) -> AnalysisResult:
        """Score one email.

        Args:
            content: EmailContent, or a mapping with subject, body, from,
                headers and user_id keys.
            config: Per-call options. Defaults to the configured ones.

        Returns:
            A complete AnalysisResult; engine failures are reported as
            low-severity findings, never raised.
        """
        start = time.perf_counter()
        if not isinstance(content, EmailContent):
            content = EmailContent.from_mapping(content)
        config = config or self.analysis_config
        # Per-call ML settings apply to this call only; the shared engine is never reconfigured.
        ml_config = config.ml_config

        # Snapshot readiness once so every step of this call agrees.
        ml_ready = self._state == CombinerState.READY and self.ml_engine.is_ready_for(ml_config)
        run_ml = config.enable_ml and ml_ready

        results = self._run_engines(content, run_ml, ml_config)

        contributions = [
            EngineContribution(
                name=key,
                score=results[key].score,
                weight=self.patterns.weight_for(engine.weight_key),
                active=is_engine_active(
                    key,
                    self.patterns.weight_for(engine.weight_key),
                    has_headers=content.has_headers,
                    ml_enabled=config.enable_ml,
                    ml_ready=ml_ready,
                ),
            )
            for key, engine in self.engines.items()
        ]
        by_name = {c.name: c for c in contributions}

        high_severity = {
            key for key, result in results.items()
            if any(f.severity == Severity.HIGH for f in result.findings)
        }
        floor = corroboration_floor(
            contributions,
            high_severity,
            self.patterns.corroboration_floor,
            self.patterns.corroboration_min_engines,
        )

        behavior = results["behavior"]
        score, risk_level = calculate_score(
            contributions,
            bonus=behavior.bonus,
            behavior_weight=by_name["behavior"].weight,
            behavior_active=by_name["behavior"].active,
            sensitivity=config.sensitivity,
            multipliers=dict(self.patterns.sensitivity_multipliers),
            thresholds=self.patterns.risk_thresholds,
            floor=floor,
        )

        findings: list[Finding] = []
        for key in ENGINE_ORDER:
            findings.extend(results[key].findings)
            if key == "behavior":
                findings.extend(results[key].bonus_findings)

        percentages = active_percentages(contributions)
        breakdown = {
            key: EngineBreakdown(
                score=results[key].score,
                percentage=percentages[key],
                status=results[key].status,
                details=dict(results[key].details),
            )
            for key in ENGINE_ORDER
        }
        breakdown["behavior"].details["bonus"] = behavior.bonus
        breakdown["misc"] = EngineBreakdown(score=0.0, percentage=0.0, status=EngineStatus.SKIPPED)

        logger.debug("Analysis complete: score=%s risk=%s", score, risk_level.value)
        return AnalysisResult(
            score=score,
            risk_level=risk_level,
            summary=summary_for(risk_level),
            findings=findings,
            breakdown=breakdown,
            processing_time=round((time.perf_counter() - start) * 1000, 2),
        )

    def _run_engines(
        self, content: EmailContent, run_ml: bool, ml_config: MLConfig | None = None,
    ) -> dict[str, EngineResult]:
        """Fan out to every engine and wait for all of them."""
        results: dict[str, EngineResult] = {}
        engines = self.engines
        if not run_ml:
            results["ml"] = EngineResult(
                engine_name=self.ml_engine.name,
                status=EngineStatus.SKIPPED,
                score=0.0,
                details={"confidence": 0.0, "model_used": "disabled", "processing_time": 0.0},
            )
            engines.pop("ml")

        with concurrent.futures.ThreadPoolExecutor(max_workers=len(engines)) as executor:
            futures = {
                executor.submit(
                    _run_engine, key, engine, content,
                    ml_config if key == "ml" and ml_config is not None else None,
                ): key
                for key, engine in engines.items()
            }
            for future in concurrent.futures.as_completed(futures):
                results[futures[future]] = future.result()

        return results

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_result(
        self, content: EmailContent | Mapping[str, Any], result: AnalysisResult,
    ) -> BehaviorRecord | None:
        """Record the analysis verdict as an interaction with the sender."""
        if not isinstance(content, EmailContent):
            content = EmailContent.from_mapping(content)
        return self.history.record_interaction(content.sender, verdict_for(result), content.user_id)

    def confirm_trusted(
        self,
        content: EmailContent | Mapping[str, Any],
        result: AnalysisResult | None = None,
        notes: str | None = None,
    ) -> TrustedRecord | None:
        """Mark the sender of ``content`` as legitimate for its user."""
        if not isinstance(content, EmailContent):
            content = EmailContent.from_mapping(content)
        return self.history.record_trusted_sender(
            content.sender,
            content.user_id,
            subject=content.subject or None,
            notes=notes,
            auth_snapshot=auth_snapshot_from(result) if result else None,
        )


def _run_engine(
    key: str, engine: BaseEngine, content: EmailContent, ml_config: MLConfig | None = None,
) -> EngineResult:
    """Run a single engine, converting any escaped exception to an error result."""
    try:
        if ml_config is not None:
            return engine.analyze(content, config=ml_config)
        return engine.analyze(content)
    except Exception as exc:
        logger.error("%s raised unexpectedly: %s", engine.name, exc)
        finding_id, category = _ERROR_IDS[key]
        return engine.error_result(exc, finding_id, f"{engine.name} failed", category)


def auth_snapshot_from(result: AnalysisResult) -> AuthSnapshot | None:
    """SPF/DKIM/DMARC pass flags from the header breakdown, if headers were analyzed."""
    headers = result.breakdown.get("headers")
    if headers is None or headers.status != EngineStatus.COMPLETED:
        return None
    details = headers.details

    def passed(key: str) -> bool | None:
        status = details.get(key)
        if status in (None, "unknown", "none"):
            return None
        return status == "pass"

    return AuthSnapshot(
        spf_passed=passed("spf_status"),
        dkim_passed=passed("dkim_status"),
        dmarc_passed=passed("dmarc_status"),
    )


def analysis_to_dict(result: AnalysisResult) -> dict[str, Any]:
    """Convert an AnalysisResult to a JSON-safe dict.

    Args:
        result: The analysis result dataclass.

    Returns:
        Dict with enum values and datetimes converted to strings.
    """
    return to_jsonable(asdict(result))


def to_jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]
    if is_dataclass(value):
        return to_jsonable(asdict(value))
    return value
