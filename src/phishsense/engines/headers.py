"""Header analysis engine: authentication results, routing, sender consistency."""

from __future__ import annotations

import logging
import re

from phishsense.engines.base import BaseEngine, clamp_score
from phishsense.header_parser import find_header, interpret_headers, parse_headers
from phishsense.models import EmailContent, EngineResult, EngineStatus, Finding, Severity

logger = logging.getLogger(__name__)

_DOMAIN_RE = re.compile(r"@([a-zA-Z0-9.-]+\.[a-zA-Z]{2,})")

MAX_NORMAL_HOPS = 5


class HeaderEngine(BaseEngine):
    """Interpret SPF/DKIM/DMARC results and header anomalies.

    An empty header block yields a zero score and no findings. Parse
    failures are reported as a single ``header-error`` finding.
    """

    name = "Header Engine"
    weight_key = "headers"

    def analyze(self, content: EmailContent) -> EngineResult:
        if not content.has_headers:
            return EngineResult(
                engine_name=self.name,
                status=EngineStatus.SKIPPED,
                score=0.0,
                details=_empty_details(),
            )

        try:
            return self._analyze(content.headers)
        except Exception as exc:
            logger.warning("Error analyzing headers: %s", exc)
            result = self.error_result(exc, "header-error", "Error parsing email headers", "headers")
            result.details = _empty_details()
            return result

    def _analyze(self, headers_text: str) -> EngineResult:
        fields = parse_headers(headers_text)
        analysis = interpret_headers(fields)
        findings: list[Finding] = []
        score = 0.0

        if analysis.spf_status == "fail":
            findings.append(_auth_finding(
                "spf-fail", Severity.HIGH,
                "SPF authentication failed - email may be spoofed", "spf", "fail",
            ))
            score += 35
        elif analysis.spf_status == "softfail":
            findings.append(_auth_finding(
                "spf-softfail", Severity.MEDIUM,
                "SPF soft failure - email may be suspicious", "spf", "softfail",
            ))
            score += 20

        if analysis.dkim_status == "fail":
            findings.append(_auth_finding(
                "dkim-fail", Severity.HIGH,
                "DKIM signature verification failed", "dkim", "fail",
            ))
            score += 35

        if analysis.dmarc_status == "fail":
            findings.append(_auth_finding(
                "dmarc-fail", Severity.MEDIUM,
                "DMARC policy violation detected", "dmarc", "fail",
            ))
            score += 25

        if analysis.received_count > MAX_NORMAL_HOPS:
            findings.append(
                Finding(
                    id="too-many-hops",
                    severity=Severity.MEDIUM,
                    text=f"Email passed through {analysis.received_count} servers (unusual)",
                    category="routing",
                    meta={"hops": analysis.received_count},
                )
            )
            score += 15

        for suspicious in analysis.suspicious_headers:
            findings.append(
                Finding(
                    id=f"suspicious-header-{suspicious.header}",
                    severity=Severity.LOW,
                    text=f"Suspicious header detected: {suspicious.header} - {suspicious.reason}",
                    category="headers",
                    meta={"header": suspicious.header, "reason": suspicious.reason},
                )
            )
            score += 5

        from_header = find_header(fields, "from")
        return_path = find_header(fields, "return-path")
        if from_header and return_path:
            from_domain = extract_domain(from_header.value)
            return_domain = extract_domain(return_path.value)
            if from_domain and return_domain and from_domain != return_domain:
                findings.append(
                    Finding(
                        id="domain-mismatch",
                        severity=Severity.MEDIUM,
                        text=f"Domain mismatch: From ({from_domain}) vs Return-Path ({return_domain})",
                        category="domains",
                        meta={"from_domain": from_domain, "return_path_domain": return_domain},
                    )
                )
                score += 20

        return EngineResult(
            engine_name=self.name,
            status=EngineStatus.COMPLETED,
            score=clamp_score(score),
            findings=findings,
            details={
                "spf_status": analysis.spf_status,
                "dkim_status": analysis.dkim_status,
                "dmarc_status": analysis.dmarc_status,
                "received_count": analysis.received_count,
                "suspicious_headers": len(analysis.suspicious_headers),
                "overall": analysis.overall,
            },
        )


def extract_domain(value: str) -> str | None:
    """Lower-cased domain of the first address in a header value."""
    match = _DOMAIN_RE.search(value)
    return match.group(1).lower() if match else None


def _auth_finding(finding_id: str, severity: Severity, text: str, method: str, status: str) -> Finding:
    return Finding(
        id=finding_id,
        severity=severity,
        text=text,
        category="authentication",
        meta={"method": method, "status": status},
    )


def _empty_details() -> dict:
    return {
        "spf_status": None,
        "dkim_status": None,
        "dmarc_status": None,
        "received_count": 0,
        "suspicious_headers": 0,
    }
