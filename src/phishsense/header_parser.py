"""Raw email header parsing and authentication-result interpretation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import NamedTuple

# Header names associated with scripted or bulk senders.
SUSPICIOUS_HEADERS = (
    "x-mailer",
    "x-originating-ip",
    "x-source-ip",
    "x-sender-id",
    "x-authentication-results",
    "x-virus-scanned",
    "x-spam-score",
    "x-spam-status",
    "x-priority",
)

SUSPICIOUS_USER_AGENTS = (
    "php",
    "perl",
    "python",
    "spider",
    "bot",
    "crawler",
    "scraper",
    "harvest",
)

_HEADER_NAME_RE = re.compile(r"^[!-9;-~]+$")


class HeaderField(NamedTuple):
    """One parsed header, name lower-cased."""

    name: str
    value: str


@dataclass
class SuspiciousHeader:
    header: str
    reason: str


@dataclass
class HeaderAnalysis:
    """Interpretation of a parsed header block."""

    spf_status: str = "unknown"  # pass | fail | softfail | neutral | unknown
    dkim_status: str = "unknown"  # pass | fail | unknown
    dmarc_status: str = "unknown"  # pass | fail | unknown
    dkim_signature: str = ""
    received_hops: list[str] = field(default_factory=list)
    suspicious_headers: list[SuspiciousHeader] = field(default_factory=list)
    overall: str = "good"  # good | suspicious | bad

    @property
    def received_count(self) -> int:
        return len(self.received_hops)


def parse_headers(text: str) -> list[HeaderField]:
    """Parse raw header text into ordered (name, value) pairs.

    Lines that start with whitespace, or that carry no ``name:`` prefix,
    are folded into the previous header's value. Blank lines are skipped.

    Args:
        text: Raw header block as copied from a mail client.

    Returns:
        Header fields in their original order.
    """
    fields: list[HeaderField] = []
    name: str | None = None
    value_parts: list[str] = []

    for line in (text or "").replace("\r\n", "\n").split("\n"):
        if not line.strip():
            continue

        is_continuation = line[:1] in (" ", "\t")
        header_name, sep, rest = line.partition(":")
        if not is_continuation and sep and _HEADER_NAME_RE.match(header_name.strip()):
            if name is not None:
                fields.append(HeaderField(name, " ".join(value_parts).strip()))
            name = header_name.strip().lower()
            value_parts = [rest.strip()]
        elif name is not None:
            value_parts.append(line.strip())

    if name is not None:
        fields.append(HeaderField(name, " ".join(value_parts).strip()))

    return fields


def find_header(fields: list[HeaderField], name: str) -> HeaderField | None:
    """First header with the given (lower-case) name, or None."""
    return next((f for f in fields if f.name == name), None)


def _spf_status(value: str) -> str:
    lowered = value.lower()
    first = lowered.split(None, 1)[0] if lowered.split() else ""
    if first in ("pass", "fail", "softfail", "neutral"):
        return first
    # softfail before fail, "fail" is a substring of it
    for status in ("softfail", "fail", "pass"):
        if status in lowered:
            return status
    return "neutral"


def interpret_headers(fields: list[HeaderField]) -> HeaderAnalysis:
    """Derive SPF/DKIM/DMARC status, hops and suspicious headers."""
    analysis = HeaderAnalysis()

    spf = find_header(fields, "received-spf")
    if spf is not None:
        analysis.spf_status = _spf_status(spf.value)

    auth_results = [f.value.lower() for f in fields if f.name == "authentication-results"]

    dkim = find_header(fields, "dkim-signature")
    if dkim is not None:
        analysis.dkim_status = "pass"
        analysis.dkim_signature = dkim.value[:50]
    elif any("dkim=pass" in v for v in auth_results):
        analysis.dkim_status = "pass"
    elif any("dkim=fail" in v for v in auth_results):
        analysis.dkim_status = "fail"

    if any("dmarc=pass" in v for v in auth_results):
        analysis.dmarc_status = "pass"
    elif any("dmarc=fail" in v for v in auth_results):
        analysis.dmarc_status = "fail"

    analysis.received_hops = [
        (f.value.split() or [""])[0] for f in fields if f.name == "received"
    ]

    for f in fields:
        if f.name in SUSPICIOUS_HEADERS:
            analysis.suspicious_headers.append(
                SuspiciousHeader(
                    header=f.name,
                    reason="Unusual header that may indicate automated or suspicious email",
                )
            )
        if f.name == "user-agent" and f.value:
            agent = f.value.lower()
            if any(token in agent for token in SUSPICIOUS_USER_AGENTS):
                analysis.suspicious_headers.append(
                    SuspiciousHeader(
                        header="user-agent",
                        reason=f"Suspicious user agent detected: {f.value}",
                    )
                )
        if f.name == "return-path" and "@" not in f.value:
            analysis.suspicious_headers.append(
                SuspiciousHeader(header="return-path", reason="Invalid or missing return path")
            )

    security_score = 0
    if analysis.spf_status == "fail":
        security_score += 30
    if analysis.dkim_status == "fail":
        security_score += 30
    if analysis.dmarc_status == "fail":
        security_score += 20
    if analysis.received_count > 5:
        security_score += 10
    security_score += len(analysis.suspicious_headers) * 5

    if security_score >= 50:
        analysis.overall = "bad"
    elif security_score >= 20:
        analysis.overall = "suspicious"

    return analysis


def format_header_analysis(analysis: HeaderAnalysis) -> str:
    """One-line summary, e.g. ``SPF: FAIL | DKIM: PASS | Received Hops: 3``."""
    parts = [
        f"SPF: {analysis.spf_status.upper()}",
        f"DKIM: {analysis.dkim_status.upper()}",
        f"DMARC: {analysis.dmarc_status.upper()}",
        f"Received Hops: {analysis.received_count}",
    ]
    if analysis.suspicious_headers:
        parts.append(f"Suspicious Headers: {len(analysis.suspicious_headers)}")
    return " | ".join(parts)
