"""Configuration loader for PhishSense."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

from phishsense.exceptions import ConfigError
from phishsense.models import Severity

logger = logging.getLogger(__name__)

# Mapping of environment variable names to (section, key) config entries.
_ENV_KEY_MAP: dict[str, tuple[str, str]] = {
    "PHISHSENSE_SENSITIVITY": ("analysis", "sensitivity"),
    "PHISHSENSE_ML_API_ENDPOINT": ("ml", "api_endpoint"),
    "PHISHSENSE_ML_MODEL_PATH": ("ml", "model_path"),
    "PHISHSENSE_REMOTE_SYNC_ENDPOINT": ("remote_sync", "endpoint"),
}

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "data" / "default.yaml"
LOCAL_CONFIG_PATH = Path.cwd() / "config" / "local.yaml"

# Used when scoring_weights is missing or incomplete.
DEFAULT_SCORING_WEIGHTS: dict[str, float] = {
    "heuristics": 0.4,
    "headers": 0.2,
    "reputation": 0.2,
    "behavior": 0.1,
    "ml": 0.1,
    "misc": 0.0,
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override dict into base dict."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_config(config_path: str | Path | None = None) -> dict[str, Any]:
    """Load configuration from YAML files.

    Loads the bundled default config, then merges a local override file
    (config/local.yaml in the working directory) and a user-specified
    config path, in that order.

    Args:
        config_path: Optional path to a config YAML file. If provided,
            it is merged on top of the default config.

    Returns:
        Merged configuration dictionary.
    """
    config = _read_yaml(DEFAULT_CONFIG_PATH)

    if LOCAL_CONFIG_PATH.exists():
        config = _deep_merge(config, _read_yaml(LOCAL_CONFIG_PATH))

    if config_path is not None:
        user_path = Path(config_path)
        if not user_path.exists():
            raise ConfigError(f"Config file not found: {user_path}")
        config = _deep_merge(config, _read_yaml(user_path))

    # Environment variables have the highest priority.
    for env_var, (section, key) in _ENV_KEY_MAP.items():
        value = os.getenv(env_var, "")
        if value:
            config.setdefault(section, {})[key] = value

    return config


@dataclass(frozen=True)
class KeywordCategory:
    """One keyword category of the rule engine."""

    name: str
    weight: float
    severity: Severity
    patterns: tuple[str, ...]


@dataclass(frozen=True)
class PatternConfig:
    """Typed, validated view of the pattern configuration.

    Built once per process from the raw YAML dict so the engines never
    do dynamic lookups into untyped config at analysis time.
    """

    keyword_categories: tuple[KeywordCategory, ...]
    suspicious_domains: tuple[str, ...]
    url_shorteners: tuple[str, ...]
    url_suspicious_keywords: tuple[str, ...]
    ip_patterns: tuple[str, ...]
    attachment_extensions: tuple[str, ...]
    html_indicators: tuple[tuple[str, tuple[str, ...]], ...]
    legitimate_domains: tuple[str, ...]
    trusted_domains: tuple[tuple[str, tuple[str, ...]], ...]
    trusted_url_prefixes: tuple[str, ...]
    phishing_templates: tuple[str, ...]
    uncommon_tlds: tuple[str, ...]
    scoring_weights: Mapping[str, float]
    threat_intel_sources: tuple[str, ...]
    threat_intel_timeout: float
    risk_thresholds: tuple[float, float]
    sensitivity_multipliers: Mapping[str, float]
    dormant_days: int
    max_behavior_bonus: float
    # Minimum combined score once two or more engines report high-severity findings
    corroboration_floor: float = 60.0
    corroboration_min_engines: int = 2

    @property
    def all_trusted_domains(self) -> frozenset[str]:
        """Legitimate and per-brand trusted domains, lower-cased."""
        domains = list(self.legitimate_domains)
        for _, brand_domains in self.trusted_domains:
            domains.extend(brand_domains)
        return frozenset(d.strip().lower() for d in domains if d.strip())

    @property
    def keyword_pattern_count(self) -> int:
        return sum(len(c.patterns) for c in self.keyword_categories)

    def weight_for(self, engine_key: str) -> float:
        return float(self.scoring_weights.get(engine_key, 0.0))

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "PatternConfig":
        """Validate the raw configuration and build the typed view.

        Raises:
            ConfigError: If a keyword category is malformed.
        """
        categories = []
        for name, raw in (config.get("phishing_keywords") or {}).items():
            if not isinstance(raw, Mapping):
                raise ConfigError(f"Keyword category '{name}' must be a mapping")
            try:
                severity = Severity(str(raw.get("severity", "medium")).lower())
            except ValueError as exc:
                raise ConfigError(
                    f"Keyword category '{name}' has invalid severity {raw.get('severity')!r}"
                ) from exc
            patterns = tuple(str(p).lower() for p in raw.get("patterns") or [] if str(p).strip())
            categories.append(
                KeywordCategory(
                    name=str(name),
                    weight=float(raw.get("weight", 10)),
                    severity=severity,
                    patterns=patterns,
                )
            )

        weights = dict(DEFAULT_SCORING_WEIGHTS)
        raw_weights = config.get("scoring_weights")
        if not raw_weights:
            logger.warning("scoring_weights missing from config, using defaults")
        else:
            for key, default in DEFAULT_SCORING_WEIGHTS.items():
                if key not in raw_weights:
                    logger.warning("scoring weight '%s' missing, defaulting to %s", key, default)
                    continue
                try:
                    weights[key] = max(0.0, float(raw_weights[key]))
                except (TypeError, ValueError):
                    logger.warning("scoring weight '%s' is not numeric, defaulting to %s", key, default)

        url_patterns = config.get("url_patterns") or {}
        scoring = config.get("scoring") or {}
        thresholds = scoring.get("thresholds") or {}
        multipliers = {"lenient": 0.8, "balanced": 1.0, "strict": 1.2}
        multipliers.update(scoring.get("sensitivity_multipliers") or {})
        behavior_cfg = scoring.get("behavior") or {}
        corroboration = scoring.get("corroboration") or {}
        threat_intel = config.get("threat_intel") or {}

        return cls(
            keyword_categories=tuple(categories),
            suspicious_domains=_lower_tuple(config.get("suspicious_domains")),
            url_shorteners=_lower_tuple(url_patterns.get("shorteners")),
            url_suspicious_keywords=_lower_tuple(url_patterns.get("suspicious")),
            ip_patterns=tuple(url_patterns.get("ip_patterns") or ()),
            attachment_extensions=_lower_tuple(
                (config.get("attachment_patterns") or {}).get("suspicious")
            ),
            html_indicators=tuple(
                (str(kind), _lower_tuple(tokens))
                for kind, tokens in (config.get("html_indicators") or {}).items()
            ),
            legitimate_domains=_lower_tuple(config.get("legitimate_domains")),
            trusted_domains=tuple(
                (str(brand).lower(), _lower_tuple(domains))
                for brand, domains in (config.get("trusted_domains") or {}).items()
            ),
            trusted_url_prefixes=_lower_tuple(config.get("trusted_url_prefixes")),
            phishing_templates=_lower_tuple(list((config.get("phishing_templates") or {}).keys())),
            uncommon_tlds=_lower_tuple(config.get("uncommon_tlds")),
            scoring_weights=weights,
            threat_intel_sources=tuple(threat_intel.get("sources") or ()),
            threat_intel_timeout=float(
                threat_intel.get("timeout", (config.get("requests") or {}).get("timeout", 10))
            ),
            risk_thresholds=(
                float(thresholds.get("medium", 35)),
                float(thresholds.get("high", 60)),
            ),
            sensitivity_multipliers={k: float(v) for k, v in multipliers.items()},
            dormant_days=int(behavior_cfg.get("dormant_days", 180)),
            max_behavior_bonus=float(behavior_cfg.get("max_bonus", 45)),
            corroboration_floor=float(corroboration.get("floor", 60)),
            corroboration_min_engines=int(corroboration.get("min_engines", 2)),
        )


def _lower_tuple(values: Any) -> tuple[str, ...]:
    return tuple(str(v).strip().lower() for v in values or () if str(v).strip())
