"""Lexical helpers for sender addresses and domains."""

from __future__ import annotations

import re
from typing import NamedTuple

import tldextract
from Levenshtein import distance as levenshtein_distance

# Offline extractor: only the public suffix snapshot bundled with tldextract.
_extract = tldextract.TLDExtract(suffix_list_urls=())

_DISPLAY_FORM_RE = re.compile(r"^(.*)<([^>]+)>$", re.DOTALL)
# Domain labels may hold any letter so homograph domains still parse.
_EMAIL_RE = re.compile(r"([\w.%+-]+@[\w.-]+\.[^\W\d_]{2,})")
_SENDER_ADDRESS_RE = re.compile(
    r"[\w.%+-]+@(?:\[?\d{1,3}(?:\.\d{1,3}){3}\]?|[\w.-]+\.[^\W\d_]{2,})"
)

# Digits commonly standing in for a visually similar letter.
HOMOGLYPH_DIGITS: dict[str, str] = {
    "0": "o",
    "1": "l",
    "3": "e",
    "4": "a",
    "5": "s",
    "7": "t",
    "8": "b",
}


class EmailParts(NamedTuple):
    """Components of a From value."""

    display_name: str | None
    address: str | None
    domain: str | None


def normalize_domain(domain: str | None) -> str:
    """Trim and lower-case a domain, dropping a trailing dot."""
    if not domain:
        return ""
    return domain.strip().lower().rstrip(".")


def strip_subdomain(domain: str | None) -> str:
    """Reduce a hostname to its registered domain (``mail.paypal.co.uk`` -> ``paypal.co.uk``)."""
    normalized = normalize_domain(domain)
    if not normalized:
        return ""
    extracted = _extract(normalized)
    if extracted.suffix and extracted.domain:
        return f"{extracted.domain}.{extracted.suffix}"
    return normalized


def base_label(domain: str | None) -> str:
    """Return the label left of the public suffix (``paypal`` for ``www.paypal.com``)."""
    normalized = normalize_domain(domain)
    if not normalized:
        return ""
    extracted = _extract(normalized)
    return extracted.domain or normalized.split(".")[0]


def domain_tld(domain: str | None) -> str:
    """Return the last label with a leading dot, e.g. ``.xyz``."""
    normalized = normalize_domain(domain)
    if "." not in normalized:
        return ""
    return normalized[normalized.rfind("."):]


def parent_domains(domain: str) -> list[str]:
    """Return ``domain`` followed by each parent with at least two labels."""
    parts = normalize_domain(domain).split(".")
    return [".".join(parts[i:]) for i in range(0, max(len(parts) - 1, 1))]


def extract_email_parts(raw: str | None) -> EmailParts:
    """Split a From value into display name, address and domain.

    Supports ``"Display Name" <addr@domain>`` and bare-address forms.
    The address and domain are lower-cased; the display name is kept
    as written, minus quotes.
    """
    if not raw:
        return EmailParts(None, None, None)

    trimmed = raw.strip()
    display_name = None
    address = trimmed

    match = _DISPLAY_FORM_RE.match(trimmed)
    if match:
        display_name = match.group(1).replace('"', "").strip() or None
        address = match.group(2).strip()

    email_match = _EMAIL_RE.search(address)
    if not email_match:
        return EmailParts(display_name, None, None)

    email_address = email_match.group(1).lower()
    return EmailParts(display_name, email_address, email_address.split("@", 1)[1])


def find_sender_addresses(text: str) -> list[str]:
    """Find every address in ``text``, including IP-literal domains."""
    return _SENDER_ADDRESS_RE.findall(text or "")


def normalize_sender(sender: str | None) -> tuple[str | None, str | None]:
    """Return the lower-cased address and its domain, or ``(None, None)``."""
    parts = extract_email_parts(sender)
    return parts.address, parts.domain


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings."""
    return levenshtein_distance(a, b)


def contains_suspicious_unicode(value: str | None) -> bool:
    """True when the value holds any non-ASCII character."""
    if not value:
        return False
    return any(ord(ch) > 127 for ch in value)


def has_numeric_lookalike(domain: str | None) -> bool:
    """Detect a digit standing in for a similar-looking letter.

    A label qualifies when it mixes letters with homoglyph digits and
    substituting those digits yields a purely alphabetic word, as in
    ``paypa1`` or ``micr0soft``.
    """
    label = base_label(domain)
    if not label or not any(ch.isalpha() for ch in label):
        return False
    if not any(ch in HOMOGLYPH_DIGITS for ch in label):
        return False
    substituted = "".join(HOMOGLYPH_DIGITS.get(ch, ch) for ch in label)
    return substituted.replace("-", "").isalpha()
