"""ML engine: small feed-forward classifier over keyword features."""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Any

import joblib
import numpy as np
import requests
from sklearn.neural_network import MLPClassifier

from phishsense.config import PatternConfig
from phishsense.engines.base import BaseEngine, clamp_score
from phishsense.exceptions import ModelNotReadyError, RemoteModelError
from phishsense.models import (
    EmailContent,
    EngineResult,
    EngineStatus,
    Finding,
    MLConfig,
    MLModelType,
    Severity,
)

logger = logging.getLogger(__name__)

_URL_RE = re.compile(r"https?://", re.IGNORECASE)

# Fixed tokens appended after the keyword-pattern slots.
EXTRA_TOKENS = (
    "urgent",
    "click",
    "verify",
    "password",
    "account",
    "bank",
    "paypal",
    "security",
    "update",
)

# Seed corpus for the demo model; 1 = phishing.
DEMO_TEXTS = (
    "Your account needs verification immediately",
    "Click here to update your password",
    "Security alert for your account",
    "Your package will be delivered tomorrow",
    "Meeting scheduled for next week",
    "Invoice attached for your review",
    "Thank you for your recent purchase",
    "Account suspended due to suspicious activity",
    "Verify your identity to continue",
    "Congratulations! You won a prize",
)
DEMO_LABELS = (1, 1, 1, 0, 0, 0, 0, 1, 1, 1)

HIGH_RISK_SCORE = 70.0
MEDIUM_RISK_SCORE = 40.0


class MLEngine(BaseEngine):
    """Phishing probability from a local MLP or a remote scoring endpoint.

    The engine must be warmed up with ``initialize()`` before it reports
    ready. Readiness flips exactly once, after the model is in place, so
    concurrent callers never see a half-loaded model.
    """

    name = "ML Engine"
    weight_key = "ml"

    def __init__(
        self,
        patterns: PatternConfig,
        config: MLConfig | None = None,
        session: Any = None,
        random_state: int = 42,
    ) -> None:
        self.patterns = patterns
        self.config = config or MLConfig()
        self.random_state = random_state
        self._session = session or requests.Session()
        self._lock = threading.Lock()
        self._model: MLPClassifier | None = None
        self._ready = False

    @property
    def feature_count(self) -> int:
        return self.patterns.keyword_pattern_count + len(EXTRA_TOKENS) + 1

    def is_ready(self) -> bool:
        return self._ready and self.config.enabled and self.config.model_type != MLModelType.DISABLED

    def is_ready_for(self, config: MLConfig | None) -> bool:
        """Whether the warmed-up engine can serve a call made with ``config``.

        A per-call config must ask for the mode the engine was warmed up
        in; a local call naming a different model file is not served.
        """
        if config is None:
            return self.is_ready()
        if not self.is_ready() or not config.enabled:
            return False
        if config.model_type != self.config.model_type:
            return False
        if config.model_type == MLModelType.LOCAL:
            if config.model_path and config.model_path != self.config.model_path:
                return False
            return self._model is not None
        return True

    def initialize(self) -> None:
        """Load or train the local model. Safe to call more than once.

        Raises:
            Exception: Whatever loading or training raised; the engine
                stays not-ready in that case.
        """
        with self._lock:
            if self._ready:
                return
            if not self.config.enabled or self.config.model_type == MLModelType.DISABLED:
                logger.debug("ML engine disabled, skipping warm-up")
                return
            if self.config.model_type == MLModelType.LOCAL and self._model is None:
                self._model = self._load_or_train()
            self._ready = True
            logger.info("ML engine initialized (%s)", self.config.model_type.value)

    def _load_or_train(self) -> MLPClassifier:
        path = self.config.model_path
        if path and Path(path).exists():
            model = joblib.load(path)
            if getattr(model, "n_features_in_", None) == self.feature_count:
                logger.info("Loaded ML model from %s", path)
                return model
            logger.warning(
                "Model at %s expects %s features, have %s; retraining",
                path, getattr(model, "n_features_in_", None), self.feature_count,
            )
        return self.train(DEMO_TEXTS, DEMO_LABELS)

    def train(self, texts, labels) -> MLPClassifier:
        """Fit a fresh classifier on the given texts and 0/1 labels."""
        model = MLPClassifier(
            hidden_layer_sizes=(32, 16),
            activation="relu",
            solver="lbfgs",
            max_iter=500,
            random_state=self.random_state,
        )
        model.fit(self.features(texts), np.asarray(labels))
        logger.debug("Trained ML model on %d samples", len(labels))
        return model

    def save_model(self, path: str | Path) -> Path:
        """Persist the local model with joblib.

        Raises:
            ModelNotReadyError: If no local model has been loaded or trained.
        """
        if self._model is None:
            raise ModelNotReadyError("No local model to save")
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        joblib.dump(self._model, target)
        return target

    def update_config(self, **changes: Any) -> None:
        """Merge new ML settings; a change of mode requires re-initialization."""
        with self._lock:
            if "model_type" in changes and not isinstance(changes["model_type"], MLModelType):
                changes["model_type"] = MLModelType(changes["model_type"])
            updated = replace(self.config, **changes)
            mode_changed = (
                updated.model_type != self.config.model_type
                or updated.model_path != self.config.model_path
            )
            self.config = updated
            if mode_changed:
                self._ready = False
                if updated.model_path:
                    self._model = None

    def features(self, texts) -> np.ndarray:
        """Boolean feature matrix, one row per text."""
        patterns = [p for c in self.patterns.keyword_categories for p in c.patterns]
        rows = []
        for text in texts:
            lower = text.lower()
            row = [1.0 if p in lower else 0.0 for p in patterns]
            row.extend(1.0 if token in lower else 0.0 for token in EXTRA_TOKENS)
            row.append(1.0 if _URL_RE.search(lower) else 0.0)
            rows.append(row)
        return np.asarray(rows, dtype=float).reshape(len(rows), self.feature_count)

    def predict_local(self, content: EmailContent) -> tuple[float, float]:
        """Return (probability, confidence) from the local model."""
        if not self._ready or self._model is None:
            raise ModelNotReadyError("ML model is not initialized")
        x = self.features([f"{content.subject} {content.body}"])
        probability = float(self._model.predict_proba(x)[0][1])
        return probability, abs(probability - 0.5) * 2

    def predict_remote(
        self, content: EmailContent, config: MLConfig | None = None,
    ) -> tuple[float, float]:
        """Return (probability, confidence) from the remote endpoint.

        Raises:
            RemoteModelError: On transport failure or a malformed payload.
        """
        config = config or self.config
        endpoint = config.api_endpoint
        if not endpoint:
            raise RemoteModelError("No ML API endpoint configured")
        try:
            response = self._session.post(
                endpoint,
                json={"subject": content.subject, "body": content.body, "from": content.sender},
                timeout=config.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            raise RemoteModelError(f"ML API request failed: {exc}") from exc

        if not isinstance(data, dict) or "probability" not in data:
            raise RemoteModelError("ML API response is missing 'probability'")
        try:
            probability = min(1.0, max(0.0, float(data["probability"])))
            confidence = float(data.get("confidence", 0.5))
        except (TypeError, ValueError) as exc:
            raise RemoteModelError(f"ML API returned non-numeric values: {exc}") from exc
        return probability, confidence

    def analyze(self, content: EmailContent, config: MLConfig | None = None) -> EngineResult:
        """Score one email.

        Args:
            content: The email to analyze.
            config: Settings for this call only. The engine's own
                configuration is left untouched.
        """
        start = time.perf_counter()
        config = config or self.config

        if not config.enabled or config.model_type == MLModelType.DISABLED:
            return EngineResult(
                engine_name=self.name,
                status=EngineStatus.SKIPPED,
                score=0.0,
                details=_details(0.0, "disabled", None),
            )

        try:
            if config.model_type == MLModelType.REMOTE:
                if not self._ready:
                    raise ModelNotReadyError("ML engine is not initialized")
                probability, confidence = self.predict_remote(content, config)
                model_used = "external-api"
            else:
                probability, confidence = self.predict_local(content)
                model_used = "sklearn-mlp"
        except Exception as exc:
            logger.warning("Error in ML analysis: %s", exc)
            result = self.error_result(exc, "ml-error", "Error in ML analysis", "ml")
            result.details = _details(0.0, "error", start)
            return result

        score = clamp_score(probability * 100)
        findings: list[Finding] = []
        if score > HIGH_RISK_SCORE:
            findings.append(
                Finding(
                    id="ml-high-risk",
                    severity=Severity.HIGH,
                    text=f"ML analysis indicates high phishing probability ({round(score)}%)",
                    category="ml",
                    meta={"score": score, "confidence": confidence},
                )
            )
        elif score > MEDIUM_RISK_SCORE:
            findings.append(
                Finding(
                    id="ml-medium-risk",
                    severity=Severity.MEDIUM,
                    text=f"ML analysis indicates moderate phishing probability ({round(score)}%)",
                    category="ml",
                    meta={"score": score, "confidence": confidence},
                )
            )

        details = _details(confidence, model_used, start)
        details["probability"] = probability
        details["below_confidence_threshold"] = confidence < config.confidence_threshold
        return EngineResult(
            engine_name=self.name,
            status=EngineStatus.COMPLETED,
            score=score,
            findings=findings,
            details=details,
        )


def _details(confidence: float, model_used: str, start: float | None) -> dict[str, Any]:
    elapsed = 0.0 if start is None else round((time.perf_counter() - start) * 1000, 2)
    return {"confidence": confidence, "model_used": model_used, "processing_time": elapsed}
