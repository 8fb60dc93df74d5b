"""Data models for PhishSense analysis results and sender history."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping


class Severity(Enum):
    """Severity of a single finding."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class EngineStatus(Enum):
    """Status of an individual engine run."""

    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"
    ERROR = "ERROR"


class RiskLevel(Enum):
    """Overall risk classification for an analyzed email."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class Sensitivity(Enum):
    """How aggressively the combined score is scaled."""

    LENIENT = "lenient"
    BALANCED = "balanced"
    STRICT = "strict"

    @classmethod
    def parse(cls, value: "str | Sensitivity | None") -> "Sensitivity":
        """Accept the canonical names and the legacy low/medium/high aliases."""
        if isinstance(value, Sensitivity):
            return value
        if not value:
            return cls.BALANCED
        normalized = str(value).strip().lower()
        aliases = {"low": cls.LENIENT, "medium": cls.BALANCED, "high": cls.STRICT}
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)


class MLModelType(Enum):
    """Where ML inference happens."""

    LOCAL = "local"
    REMOTE = "remote"
    DISABLED = "disabled"


class Verdict(Enum):
    """Outcome recorded for a sender interaction."""

    SAFE = "safe"
    SUSPICIOUS = "suspicious"
    PHISHING = "phishing"


@dataclass(frozen=True)
class Finding:
    """A single piece of evidence produced by an engine."""

    id: str
    severity: Severity
    text: str
    category: str
    start_index: int | None = None
    end_index: int | None = None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class EngineResult:
    """Output from a single analysis engine."""

    engine_name: str
    status: EngineStatus
    score: float  # 0-100, engine-local scale
    findings: list[Finding] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)
    error_message: str = ""
    # Risk-reducing channel, only populated by the behavior engine
    bonus: float = 0.0
    bonus_findings: list[Finding] = field(default_factory=list)


@dataclass
class EngineBreakdown:
    """Per-engine slice of the final result."""

    score: float
    percentage: float  # share of active weight, 0-100
    status: EngineStatus
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class AnalysisResult:
    """Final aggregated verdict for one email."""

    score: float
    risk_level: RiskLevel
    summary: str
    findings: list[Finding]
    breakdown: dict[str, EngineBreakdown]
    processing_time: float  # milliseconds


@dataclass(frozen=True)
class EmailContent:
    """Email-shaped input to the combiner."""

    subject: str = ""
    body: str = ""
    sender: str = ""
    headers: str = ""
    user_id: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "EmailContent":
        """Build from a dict using either ``from`` or ``sender`` for the sender.

        Non-string values are converted with ``str()`` so malformed input
        still produces an analyzable email.
        """
        return cls(
            subject=_text(data.get("subject")),
            body=_text(data.get("body")),
            sender=_text(data.get("from")) or _text(data.get("sender")),
            headers=_text(data.get("headers")),
            user_id=_text(data.get("user_id")) or _text(data.get("userId")) or None,
        )

    @property
    def has_headers(self) -> bool:
        return isinstance(self.headers, str) and bool(self.headers.strip())


@dataclass
class MLConfig:
    """Settings for the ML engine."""

    enabled: bool = False
    model_type: MLModelType = MLModelType.LOCAL
    api_endpoint: str | None = None
    confidence_threshold: float = 0.5
    model_path: str | None = None
    timeout: float = 10.0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "MLConfig":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            model_type=MLModelType(data.get("model_type", MLModelType.LOCAL.value)),
            api_endpoint=data.get("api_endpoint") or None,
            confidence_threshold=float(data.get("confidence_threshold", 0.5)),
            model_path=data.get("model_path") or None,
            timeout=float(data.get("timeout", 10.0)),
        )


@dataclass
class AnalysisConfig:
    """Per-call options for the combiner."""

    enable_ml: bool = False
    sensitivity: Sensitivity = Sensitivity.BALANCED
    ml_config: MLConfig | None = None


@dataclass(frozen=True)
class BehaviorRecord:
    """Interaction history with one sender, optionally scoped to a user."""

    sender: str
    domain: str
    user_id: str | None
    total_interactions: int
    phishing_interactions: int
    safe_interactions: int
    suspicious_interactions: int
    first_seen: datetime
    last_seen: datetime


@dataclass(frozen=True)
class BehaviorSignals:
    """Derived view of a BehaviorRecord used by the behavior engine."""

    total_interactions: int = 0
    phishing_interactions: int = 0
    safe_interactions: int = 0
    suspicious_interactions: int = 0
    days_since_last_interaction: int | None = None
    is_first_interaction: bool = True
    first_seen: datetime | None = None
    last_seen: datetime | None = None


@dataclass(frozen=True)
class AuthSnapshot:
    """SPF/DKIM/DMARC pass flags captured when a sender was confirmed."""

    spf_passed: bool | None = None
    dkim_passed: bool | None = None
    dmarc_passed: bool | None = None


@dataclass(frozen=True)
class TrustedRecord:
    """A sender explicitly confirmed legitimate by a user."""

    id: str
    sender: str
    domain: str
    user_id: str | None
    created_at: datetime
    last_confirmed_at: datetime
    confirmation_count: int
    subject: str | None = None
    notes: str | None = None
    auth_snapshot: AuthSnapshot | None = None


@dataclass(frozen=True)
class ThreatIntelData:
    """Merged external and bundled blocklists."""

    malicious_domains: frozenset[str]
    malicious_urls: frozenset[str]
    last_updated: str | None = None


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)
