"""Sender behavior engine: history-based risk and trust bonus."""

from __future__ import annotations

import logging

from phishsense.config import PatternConfig
from phishsense.engines.base import BaseEngine, clamp_score
from phishsense.models import EmailContent, EngineResult, EngineStatus, Finding, Severity
from phishsense.store import SenderHistory

logger = logging.getLogger(__name__)

HIGH_SCORE = 45.0
MEDIUM_SCORE = 25.0
LOW_SCORE = 10.0

TRUSTED_BONUS = 20.0
FREQUENT_SAFE_BONUS = 15.0
MIN_SAFE_INTERACTIONS = 3


class BehaviorEngine(BaseEngine):
    """Score a sender from the recorded interaction history.

    Risk findings require a user id; anonymous analyses score zero. The
    trust bonus is returned separately so the combiner can subtract it
    after weighting.
    """

    name = "Behavior Engine"
    weight_key = "behavior"

    def __init__(self, patterns: PatternConfig, history: SenderHistory) -> None:
        self.history = history
        self.dormant_days = patterns.dormant_days
        self.max_bonus = patterns.max_behavior_bonus

    def analyze(self, content: EmailContent) -> EngineResult:
        try:
            return self._analyze(content)
        except Exception as exc:
            logger.warning("Behavior engine failed: %s", exc)
            return self.error_result(exc, "behavior-error", "Error reading sender history", "behavior")

    def _analyze(self, content: EmailContent) -> EngineResult:
        user_id = content.user_id
        signals = self.history.behavior_signals(content.sender, user_id)
        trusted = self.history.is_sender_trusted(content.sender, user_id)

        findings: list[Finding] = []
        bonus_findings: list[Finding] = []
        score = 0.0
        bonus = 0.0

        if user_id:
            if signals.phishing_interactions > 0:
                findings.append(
                    Finding(
                        id="behavior-previous-phish",
                        severity=Severity.HIGH,
                        text="This sender previously delivered phishing content",
                        category="behavior",
                        meta={"phishing_interactions": signals.phishing_interactions},
                    )
                )
                score += HIGH_SCORE

            if signals.total_interactions == 0 or signals.is_first_interaction:
                findings.append(
                    Finding(
                        id="behavior-first-contact",
                        severity=Severity.MEDIUM,
                        text="First interaction with this sender",
                        category="behavior",
                        meta={"total_interactions": signals.total_interactions},
                    )
                )
                score += MEDIUM_SCORE

            days = signals.days_since_last_interaction
            if days is not None and days > self.dormant_days:
                findings.append(
                    Finding(
                        id="behavior-long-dormant",
                        severity=Severity.LOW,
                        text=f"Sender has been dormant for {days} days",
                        category="behavior",
                        meta={"days_since_last": days},
                    )
                )
                score += LOW_SCORE

        if trusted:
            bonus += TRUSTED_BONUS
            bonus_findings.append(
                Finding(
                    id="behavior-trusted-sender",
                    severity=Severity.LOW,
                    text="Sender confirmed as legitimate previously",
                    category="behavior-positive",
                )
            )

        if (
            user_id
            and signals.safe_interactions >= MIN_SAFE_INTERACTIONS
            and signals.phishing_interactions == 0
        ):
            bonus += FREQUENT_SAFE_BONUS
            bonus_findings.append(
                Finding(
                    id="behavior-frequent-safe",
                    severity=Severity.LOW,
                    text="Multiple past safe interactions with this sender",
                    category="behavior-positive",
                    meta={"safe_interactions": signals.safe_interactions},
                )
            )

        return EngineResult(
            engine_name=self.name,
            status=EngineStatus.COMPLETED,
            score=clamp_score(score),
            findings=findings,
            details={
                "total_interactions": signals.total_interactions,
                "phishing_interactions": signals.phishing_interactions,
                "safe_interactions": signals.safe_interactions,
                "suspicious_interactions": signals.suspicious_interactions,
                "days_since_last_interaction": signals.days_since_last_interaction,
                "is_first_interaction": signals.is_first_interaction,
                "trusted_sender": trusted,
            },
            bonus=min(self.max_bonus, bonus),
            bonus_findings=bonus_findings,
        )
