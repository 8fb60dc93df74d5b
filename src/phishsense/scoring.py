"""Central scoring for PhishSense.

Engine scores are merged as a weighted average over the *active*
engines only. An engine is active when its configured weight is
positive and its precondition holds for the call (headers supplied for
the header engine, a ready and enabled model for the ML engine). The
behavior trust bonus is subtracted after weighting and sensitivity
scaling, and never pushes the score below zero.
"""

from __future__ import annotations

from dataclasses import dataclass

from phishsense.models import RiskLevel, Sensitivity

_SUMMARIES = {
    RiskLevel.LOW: "Likely Safe",
    RiskLevel.MEDIUM: "Suspicious",
    RiskLevel.HIGH: "Phishing",
}

_DEFAULT_MULTIPLIERS = {"lenient": 0.8, "balanced": 1.0, "strict": 1.2}


@dataclass(frozen=True)
class EngineContribution:
    """One engine's input to the weighted average."""

    name: str
    score: float
    weight: float
    active: bool


def is_engine_active(
    name: str,
    weight: float,
    *,
    has_headers: bool,
    ml_enabled: bool,
    ml_ready: bool,
) -> bool:
    """Eligibility predicate for one engine on one call.

    Args:
        name: Engine key (rules, headers, reputation, behavior, ml).
        weight: Configured scoring weight for the engine.
        has_headers: Whether non-empty header text was supplied.
        ml_enabled: Whether the caller asked for ML scoring.
        ml_ready: Whether the ML engine finished its warm-up.

    Returns:
        True if the engine participates in the weighted average.
    """
    if weight <= 0:
        return False
    if name == "headers":
        return has_headers
    if name == "ml":
        return ml_enabled and ml_ready
    return True


def aggregate(contributions: list[EngineContribution]) -> float:
    """Weighted average of active engine scores; 0 when nothing is active."""
    active = [c for c in contributions if c.active]
    total_weight = sum(c.weight for c in active)
    if total_weight <= 0:
        return 0.0
    return sum(c.score * c.weight for c in active) / total_weight


def active_percentages(contributions: list[EngineContribution]) -> dict[str, float]:
    """Each engine's share of the total active weight, 0-100."""
    total_weight = sum(c.weight for c in contributions if c.active)
    return {
        c.name: (c.weight / total_weight * 100.0) if c.active and total_weight > 0 else 0.0
        for c in contributions
    }


def corroboration_floor(
    contributions: list[EngineContribution],
    high_severity_engines: set[str],
    floor: float,
    min_engines: int = 2,
) -> float:
    """Minimum pre-sensitivity score implied by agreeing high-severity evidence.

    Returns ``floor`` when at least ``min_engines`` active engines produced
    a high-severity finding, otherwise 0.
    """
    agreeing = [c for c in contributions if c.active and c.name in high_severity_engines]
    if min_engines > 0 and len(agreeing) >= min_engines:
        return floor
    return 0.0


def sensitivity_multiplier(
    sensitivity: Sensitivity | str | None,
    multipliers: dict[str, float] | None = None,
) -> float:
    table = multipliers or _DEFAULT_MULTIPLIERS
    level = Sensitivity.parse(sensitivity)
    return float(table.get(level.value, _DEFAULT_MULTIPLIERS[level.value]))


def apply_bonus(score: float, bonus: float, behavior_weight: float, multiplier: float) -> float:
    """Subtract the weighted trust bonus, floored at 0."""
    if bonus <= 0:
        return score
    return max(0.0, score - bonus * behavior_weight * multiplier)


def classify_risk(score: float, thresholds: tuple[float, float] = (35.0, 60.0)) -> RiskLevel:
    """Map a 0-100 score to a risk level.

    Args:
        score: Final combined score.
        thresholds: (medium, high) lower bounds.

    Returns:
        LOW below ``medium``, MEDIUM below ``high``, otherwise HIGH.
    """
    medium, high = thresholds
    if score < medium:
        return RiskLevel.LOW
    if score < high:
        return RiskLevel.MEDIUM
    return RiskLevel.HIGH


def summary_for(level: RiskLevel) -> str:
    return _SUMMARIES[level]


def calculate_score(
    contributions: list[EngineContribution],
    *,
    bonus: float = 0.0,
    behavior_weight: float = 0.0,
    behavior_active: bool = False,
    sensitivity: Sensitivity | str | None = Sensitivity.BALANCED,
    multipliers: dict[str, float] | None = None,
    thresholds: tuple[float, float] = (35.0, 60.0),
    floor: float = 0.0,
) -> tuple[float, RiskLevel]:
    """Aggregate engine contributions into a final score and risk level.

    The pipeline is:
      1. Weighted average over active engines, raised to ``floor``.
      2. Sensitivity scaling.
      3. Trust bonus subtraction (behavior engine active only).
      4. Clamp to 0-100 and classify.

    Returns:
        Tuple of (score rounded to 1 decimal, risk level).
    """
    multiplier = sensitivity_multiplier(sensitivity, multipliers)
    combined = max(aggregate(contributions), floor) * multiplier

    if behavior_active:
        combined = apply_bonus(combined, bonus, behavior_weight, multiplier)

    combined = round(min(100.0, max(0.0, combined)), 1)
    return combined, classify_risk(combined, thresholds)
