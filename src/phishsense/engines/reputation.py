"""Sender reputation engine: brand impersonation and lookalike domains."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from phishsense.config import PatternConfig
from phishsense.engines.base import BaseEngine, clamp_score
from phishsense.lexical import (
    base_label,
    contains_suspicious_unicode,
    domain_tld,
    extract_email_parts,
    has_numeric_lookalike,
    levenshtein,
    normalize_domain,
    parent_domains,
)
from phishsense.models import EmailContent, EngineResult, EngineStatus, Finding, Severity, ThreatIntelData
from phishsense.threat_intel import ThreatIntelCache

logger = logging.getLogger(__name__)

HIGH_SCORE = 40.0
MEDIUM_SCORE = 25.0

MAX_LOOKALIKE_DISTANCE = 2
# Brands and domain labels this short produce too many near-misses.
MIN_LOOKALIKE_LENGTH = 4

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")


@dataclass(frozen=True)
class BrandProfile:
    name: str
    variants: tuple[str, ...]


class ReputationEngine(BaseEngine):
    """Detect brand impersonation, lookalike domains and blocklisted senders.

    Brand profiles come from the trusted-domain lists and the names of
    known phishing-template targets. Once the sender domain is trusted,
    only the threat intel checks still apply.
    """

    name = "Reputation Engine"
    weight_key = "reputation"

    def __init__(self, patterns: PatternConfig, threat_intel: ThreatIntelCache | None = None) -> None:
        self.patterns = patterns
        self.threat_intel = threat_intel
        self.trusted_domains = patterns.all_trusted_domains
        self.brand_profiles = self._build_brand_profiles(patterns)

    @staticmethod
    def _build_brand_profiles(patterns: PatternConfig) -> list[BrandProfile]:
        core = [base_label(domain) for domain in sorted(patterns.all_trusted_domains)]
        # dict.fromkeys keeps a stable order across runs
        names = dict.fromkeys(b.lower() for b in [*patterns.phishing_templates, *core] if b)
        return [
            BrandProfile(name=name, variants=tuple(dict.fromkeys([name, _NON_ALNUM_RE.sub("", name)])))
            for name in names
        ]

    def is_domain_trusted(self, domain: str) -> bool:
        return any(candidate in self.trusted_domains for candidate in parent_domains(domain))

    def analyze(self, content: EmailContent) -> EngineResult:
        """Run reputation checks against the sender.

        Args:
            content: The email to analyze.

        Returns:
            EngineResult with sender details and matched brand.
        """
        try:
            return self._analyze(content)
        except Exception as exc:
            logger.warning("Reputation engine failed: %s", exc)
            return self.error_result(
                exc, "reputation-error", "Error checking sender reputation", "reputation",
            )

    def _load_intel(self) -> ThreatIntelData | None:
        if self.threat_intel is None:
            return None
        try:
            return self.threat_intel.get()
        except Exception as exc:
            logger.warning("Unable to load threat intel, continuing without it: %s", exc)
            return None

    def _analyze(self, content: EmailContent) -> EngineResult:
        display_name, address, raw_domain = extract_email_parts(content.sender)
        domain = normalize_domain(raw_domain)
        details = {
            "email_address": address,
            "domain": domain or None,
            "display_name": display_name,
            "matched_brand": None,
            "lookalike_distance": None,
            "trusted": False,
            "suspicious_tokens": [],
        }

        if not address or not domain:
            return EngineResult(self.name, EngineStatus.COMPLETED, 0.0, details=details)

        intel = self._load_intel()
        details["threat_intel_loaded"] = intel is not None
        findings: list[Finding] = []
        tokens: list[str] = details["suspicious_tokens"]

        if intel is not None and any(
            domain == bad or domain.endswith(f".{bad}") for bad in intel.malicious_domains
        ):
            findings.append(
                Finding(
                    id=f"threatintel-domain-{domain}",
                    severity=Severity.HIGH,
                    text=f"Domain {domain} appears in external threat intelligence feeds",
                    category="reputation",
                    meta={"indicator": domain},
                )
            )
            tokens.append("threat-intel-domain")

        trusted = self.is_domain_trusted(domain)
        details["trusted"] = trusted
        if not trusted:
            findings.extend(self._impersonation_checks(display_name, domain, details))

        if intel is not None and intel.malicious_urls:
            haystack = f"{content.subject} {content.body}".lower()
            match = next((u for u in sorted(intel.malicious_urls) if u.lower() in haystack), None)
            if match:
                findings.append(
                    Finding(
                        id=f"threatintel-url-{match}",
                        severity=Severity.HIGH,
                        text="Email references a URL flagged by external threat intelligence feeds",
                        category="reputation",
                        meta={"indicator": match},
                    )
                )
                tokens.append("threat-intel-url")

        score = sum(HIGH_SCORE if f.severity == Severity.HIGH else MEDIUM_SCORE for f in findings)
        return EngineResult(
            engine_name=self.name,
            status=EngineStatus.COMPLETED,
            score=clamp_score(score),
            findings=findings,
            details=details,
        )

    def _impersonation_checks(self, display_name: str | None, domain: str, details: dict) -> list[Finding]:
        findings: list[Finding] = []
        tokens: list[str] = details["suspicious_tokens"]
        base = base_label(domain)

        if display_name:
            lower_display = display_name.lower()
            for profile in self.brand_profiles:
                if any(v in lower_display for v in profile.variants):
                    details["matched_brand"] = profile.name
                    if profile.name not in domain:
                        findings.append(
                            Finding(
                                id=f"display-mismatch-{profile.name}",
                                severity=Severity.HIGH,
                                text=(
                                    f'Display name references "{profile.name}" '
                                    f"but domain ({domain}) differs"
                                ),
                                category="reputation",
                                meta={"brand": profile.name, "domain": domain},
                            )
                        )
                    break

        is_brand_label = any(base == p.name for p in self.brand_profiles)
        if len(base) >= MIN_LOOKALIKE_LENGTH and not is_brand_label:
            for profile in self.brand_profiles:
                if len(profile.name) < MIN_LOOKALIKE_LENGTH:
                    continue
                distance = levenshtein(base, profile.name)
                if 0 < distance <= MAX_LOOKALIKE_DISTANCE:
                    details["lookalike_distance"] = distance
                    details["matched_brand"] = details["matched_brand"] or profile.name
                    findings.append(
                        Finding(
                            id=f"lookalike-{profile.name}",
                            severity=Severity.HIGH if distance == 1 else Severity.MEDIUM,
                            text=f'Domain {domain} is similar to trusted brand "{profile.name}"',
                            category="reputation",
                            meta={"distance": distance, "domain": domain, "brand": profile.name},
                        )
                    )
                    break

        for profile in self.brand_profiles:
            if len(profile.name) < MIN_LOOKALIKE_LENGTH or profile.name not in domain:
                continue
            if _NON_ALNUM_RE.sub("", base) != profile.name:
                findings.append(
                    Finding(
                        id=f"embedded-brand-{profile.name}",
                        severity=Severity.HIGH,
                        text=(
                            f'Domain {domain} embeds trusted brand "{profile.name}" '
                            "with additional wording"
                        ),
                        category="reputation",
                        meta={"domain": domain, "brand": profile.name},
                    )
                )
                details["matched_brand"] = details["matched_brand"] or profile.name
                tokens.append("brand-embedding")
                break

        if contains_suspicious_unicode(domain) or contains_suspicious_unicode(display_name):
            findings.append(
                Finding(
                    id="unicode-domain",
                    severity=Severity.MEDIUM,
                    text="Domain or sender name uses non-ASCII characters",
                    category="reputation",
                    meta={"domain": domain, "display_name": display_name},
                )
            )
            tokens.append("unicode")

        if has_numeric_lookalike(domain):
            findings.append(
                Finding(
                    id="numeric-lookalike",
                    severity=Severity.MEDIUM,
                    text="Domain appears to use numeric substitutions to mimic letters",
                    category="reputation",
                    meta={"domain": domain},
                )
            )
            tokens.append("numeric-substitution")

        if display_name and "@" in display_name and domain not in display_name.lower():
            findings.append(
                Finding(
                    id="display-email-mismatch",
                    severity=Severity.MEDIUM,
                    text="Display name contains a different email address",
                    category="reputation",
                    meta={"display_name": display_name, "domain": domain},
                )
            )

        tld = domain_tld(domain)
        if tld and tld in self.patterns.uncommon_tlds:
            findings.append(
                Finding(
                    id=f"uncommon-tld-{tld}",
                    severity=Severity.MEDIUM,
                    text=f"Domain uses uncommon top-level domain {tld}",
                    category="reputation",
                    meta={"domain": domain, "tld": tld},
                )
            )

        return findings
