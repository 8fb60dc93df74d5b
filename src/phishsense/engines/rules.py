"""Heuristic rule engine: keywords, URLs, sender domains, attachments, HTML."""

from __future__ import annotations

import logging
import re
from urllib.parse import urlparse

from phishsense.config import PatternConfig
from phishsense.engines.base import BaseEngine, clamp_score
from phishsense.lexical import find_sender_addresses, parent_domains
from phishsense.models import EmailContent, EngineResult, EngineStatus, Finding, Severity

logger = logging.getLogger(__name__)

_URL_RE = re.compile(r"https?://[^\s)\"'<>]+", re.IGNORECASE)

# Share of each sub-score in the rule engine total.
_CATEGORY_BLEND = {
    "keywords": 0.30,
    "urls": 0.30,
    "domains": 0.20,
    "attachments": 0.15,
    "html": 0.05,
}

_KEYWORD_SEVERITY_FACTOR = {Severity.HIGH: 1.5, Severity.MEDIUM: 1.0, Severity.LOW: 0.5}
_URL_POINTS = {Severity.HIGH: 30.0, Severity.MEDIUM: 20.0, Severity.LOW: 10.0}
_DOMAIN_POINTS = {Severity.HIGH: 35.0, Severity.MEDIUM: 25.0, Severity.LOW: 15.0}
_ATTACHMENT_POINTS = 40.0
_HTML_POINTS = 5.0


class RuleEngine(BaseEngine):
    """Score an email against the declarative pattern configuration.

    Runs five independent checks (keywords, URLs, sender domain,
    attachment names, HTML tokens) and blends their sub-scores.
    Trusted URLs and trusted sender domains produce findings in the
    ``trusted`` category that never add to the score.
    """

    name = "Rule Engine"
    weight_key = "heuristics"

    def __init__(
        self,
        patterns: PatternConfig,
        *,
        enable_url_analysis: bool = True,
        enable_domain_analysis: bool = True,
        enable_attachment_analysis: bool = True,
    ) -> None:
        self.patterns = patterns
        self.enable_url_analysis = enable_url_analysis
        self.enable_domain_analysis = enable_domain_analysis
        self.enable_attachment_analysis = enable_attachment_analysis
        self._trusted_domains = patterns.all_trusted_domains
        self._ip_patterns = [re.compile(p) for p in patterns.ip_patterns]
        self._attachment_res = [
            (ext, re.compile(rf"\b[\w-]+{re.escape(ext)}(?:\b|$)", re.IGNORECASE))
            for ext in patterns.attachment_extensions
        ]

    def analyze(self, content: EmailContent) -> EngineResult:
        """Run all rule checks.

        Args:
            content: The email to analyze.

        Returns:
            EngineResult with per-category sub-scores in ``details``.
        """
        try:
            return self._analyze(content)
        except Exception as exc:
            logger.warning("Rule engine failed: %s", exc)
            return self.error_result(exc, "rules-error", "Error running rule checks", "keywords")

    def _analyze(self, content: EmailContent) -> EngineResult:
        # Offsets in keyword findings index into this string.
        full_text = f"{content.subject} {content.body}"

        keyword_findings, keyword_score = self.check_keywords(full_text)
        url_findings = self.check_urls(content.body) if self.enable_url_analysis else []
        domain_findings = self.check_domains(content.sender) if self.enable_domain_analysis else []
        attachment_findings = (
            self.check_attachments(content.body) if self.enable_attachment_analysis else []
        )
        html_findings = self.check_html(content.body)

        details = {
            "keyword_score": keyword_score,
            "url_score": _points(url_findings, _URL_POINTS),
            "domain_score": _points(domain_findings, _DOMAIN_POINTS),
            "attachment_score": _ATTACHMENT_POINTS * len(attachment_findings),
            "html_score": _HTML_POINTS * len(html_findings),
        }
        total = (
            details["keyword_score"] * _CATEGORY_BLEND["keywords"]
            + details["url_score"] * _CATEGORY_BLEND["urls"]
            + details["domain_score"] * _CATEGORY_BLEND["domains"]
            + details["attachment_score"] * _CATEGORY_BLEND["attachments"]
            + details["html_score"] * _CATEGORY_BLEND["html"]
        )

        return EngineResult(
            engine_name=self.name,
            status=EngineStatus.COMPLETED,
            score=clamp_score(total),
            findings=keyword_findings + url_findings + domain_findings
            + attachment_findings + html_findings,
            details=details,
        )

    def check_keywords(self, text: str) -> tuple[list[Finding], float]:
        """Find every occurrence of every configured keyword.

        Args:
            text: Subject and body joined by a single space.

        Returns:
            Tuple of (findings with character offsets, keyword sub-score).
        """
        findings: list[Finding] = []
        score = 0.0
        lower_text = text.lower()

        for category in self.patterns.keyword_categories:
            for pattern in category.patterns:
                index = lower_text.find(pattern)
                while index != -1:
                    findings.append(
                        Finding(
                            id=f"keyword-{category.name}-{pattern}-{index}",
                            severity=category.severity,
                            text=f'Suspicious {category.name} keyword found: "{pattern}"',
                            category="keywords",
                            start_index=index,
                            end_index=index + len(pattern),
                            meta={
                                "keyword_category": category.name,
                                "pattern": pattern,
                                "weight": category.weight,
                            },
                        )
                    )
                    score += category.weight * _KEYWORD_SEVERITY_FACTOR[category.severity]
                    index = lower_text.find(pattern, index + 1)

        return findings, score

    def check_urls(self, body: str) -> list[Finding]:
        """Flag links to suspicious domains, shorteners or with bait keywords."""
        findings: list[Finding] = []

        for index, url in enumerate(_URL_RE.findall(body)):
            lower_url = url.lower()
            if any(lower_url.startswith(prefix) for prefix in self.patterns.trusted_url_prefixes):
                findings.append(
                    Finding(
                        id=f"url-trusted-{index}",
                        severity=Severity.LOW,
                        text=f"Trusted URL detected: {url}",
                        category="trusted",
                        meta={"url": url},
                    )
                )
                continue

            host = (urlparse(lower_url).hostname or "").rstrip(".")
            if _host_matches(host, self.patterns.suspicious_domains):
                severity, reason = Severity.HIGH, "matches known suspicious domain"
            elif _host_matches(host, self.patterns.url_shorteners):
                severity, reason = Severity.MEDIUM, "uses URL shortener service"
            elif any(k in lower_url for k in self.patterns.url_suspicious_keywords):
                severity, reason = Severity.MEDIUM, "contains suspicious keywords in URL"
            else:
                continue

            findings.append(
                Finding(
                    id=f"url-suspicious-{index}",
                    severity=severity,
                    text=f"Suspicious URL detected: {url} ({reason})",
                    category="urls",
                    meta={"url": url, "host": host, "reason": reason},
                )
            )

        return findings

    def check_domains(self, sender: str) -> list[Finding]:
        """Check each sender address domain against trusted and suspicious lists."""
        findings: list[Finding] = []

        for index, address in enumerate(find_sender_addresses(sender)):
            domain = address.rsplit("@", 1)[1].strip("[]").lower()

            if self.is_trusted_domain(domain):
                findings.append(
                    Finding(
                        id=f"domain-trusted-{index}",
                        severity=Severity.LOW,
                        text=f"Trusted sender domain recognized: {domain}",
                        category="trusted",
                        meta={"domain": domain, "email": address},
                    )
                )
                continue

            if _host_matches(domain, self.patterns.suspicious_domains):
                findings.append(
                    Finding(
                        id=f"domain-suspicious-{index}",
                        severity=Severity.HIGH,
                        text=f"Suspicious sender domain detected: {domain}",
                        category="domains",
                        meta={"domain": domain, "email": address},
                    )
                )
            elif any(p.search(domain) for p in self._ip_patterns):
                findings.append(
                    Finding(
                        id=f"domain-ip-{index}",
                        severity=Severity.MEDIUM,
                        text=f"IP address in sender email: {address}",
                        category="domains",
                        meta={"domain": domain, "email": address},
                    )
                )

        return findings

    def check_attachments(self, body: str) -> list[Finding]:
        """Match suspicious file extensions as whole tokens, ignoring links."""
        sanitized = _URL_RE.sub(" ", body)
        return [
            Finding(
                id=f"attachment-{ext}",
                severity=Severity.HIGH,
                text=f"Suspicious attachment extension found: {ext}",
                category="attachments",
                meta={"extension": ext},
            )
            for ext, regex in self._attachment_res
            if regex.search(sanitized)
        ]

    def check_html(self, body: str) -> list[Finding]:
        lower_body = body.lower()
        return [
            Finding(
                id=f"html-{kind}-{token}",
                severity=Severity.LOW,
                text=f"HTML element detected: {token}",
                category="html",
                meta={"type": kind, "indicator": token},
            )
            for kind, tokens in self.patterns.html_indicators
            for token in tokens
            if token in lower_body
        ]

    def is_trusted_domain(self, domain: str) -> bool:
        """True when the domain or one of its parents is allow-listed."""
        return any(candidate in self._trusted_domains for candidate in parent_domains(domain))


def _host_matches(host: str, domains: tuple[str, ...]) -> bool:
    return any(host == d or host.endswith(f".{d}") for d in domains)


def _points(findings: list[Finding], table: dict[Severity, float]) -> float:
    return sum(table[f.severity] for f in findings if f.category != "trusted")
