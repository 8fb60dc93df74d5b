"""Base engine interface for PhishSense."""

from __future__ import annotations

from abc import ABC, abstractmethod

from phishsense.models import EmailContent, EngineResult, EngineStatus, Finding, Severity


class BaseEngine(ABC):
    """Abstract base class for all PhishSense engines.

    Each engine inspects an email from one angle (content rules, headers,
    sender reputation, sender history, ML) and returns an EngineResult
    with findings and a 0-100 score for that dimension.
    """

    name: str = ""
    # Key into the scoring_weights table
    weight_key: str = ""

    @abstractmethod
    def analyze(self, content: EmailContent) -> EngineResult:
        """Run analysis on the given email.

        Implementations must not raise; failures are reported through
        ``error_result``.

        Args:
            content: The email to analyze.

        Returns:
            An EngineResult with findings and a score for this dimension.
        """
        ...

    def error_result(
        self, exc: Exception, finding_id: str, text: str, category: str,
    ) -> EngineResult:
        """Zero-score result carrying a single low-severity error finding."""
        return EngineResult(
            engine_name=self.name,
            status=EngineStatus.ERROR,
            score=0.0,
            findings=[
                Finding(
                    id=finding_id,
                    severity=Severity.LOW,
                    text=text,
                    category=category,
                    meta={"error": str(exc)},
                )
            ],
            error_message=str(exc),
        )


def clamp_score(score: float) -> float:
    """Clamp an engine score to the 0-100 range."""
    return max(0.0, min(100.0, float(score)))
