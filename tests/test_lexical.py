"""
Tests for sender and domain lexical helpers.
"""

from phishsense.lexical import (
    base_label,
    contains_suspicious_unicode,
    domain_tld,
    extract_email_parts,
    find_sender_addresses,
    has_numeric_lookalike,
    levenshtein,
    normalize_sender,
    parent_domains,
    strip_subdomain,
)


class TestEmailParts:
    """Tests for From-value parsing."""

    def test_display_name_form(self):
        parts = extract_email_parts('"PayPal Support" <Security@PayPa1.com>')

        assert parts.display_name == "PayPal Support"
        assert parts.address == "security@paypa1.com"
        assert parts.domain == "paypa1.com"

    def test_bare_address(self):
        parts = extract_email_parts("bob@example.org")

        assert parts.display_name is None
        assert parts.address == "bob@example.org"
        assert parts.domain == "example.org"

    def test_unparseable_values(self):
        assert extract_email_parts("not an address") == (None, None, None)
        assert extract_email_parts(None) == (None, None, None)
        assert extract_email_parts("") == (None, None, None)

    def test_display_name_without_address(self):
        parts = extract_email_parts("Someone <nobody>")

        assert parts.display_name == "Someone"
        assert parts.address is None

    def test_normalize_sender(self):
        assert normalize_sender("Bob <BOB@Example.ORG>") == ("bob@example.org", "example.org")
        assert normalize_sender(None) == (None, None)

    def test_non_ascii_domain(self):
        parts = extract_email_parts("Support <support@p\u0430ypal.com>")

        assert parts.address == "support@p\u0430ypal.com"
        assert parts.domain == "p\u0430ypal.com"
        assert find_sender_addresses("support@p\u0430ypal.com") == ["support@p\u0430ypal.com"]

    def test_ip_literal_addresses(self):
        assert find_sender_addresses("Admin <admin@[192.168.1.1]>") == ["admin@[192.168.1.1]"]


class TestDomains:
    """Tests for domain helpers."""

    def test_base_label(self):
        assert base_label("www.paypal.com") == "paypal"
        assert base_label("PAYPA1.COM.") == "paypa1"
        assert base_label("") == ""

    def test_strip_subdomain_multi_part_suffix(self):
        assert strip_subdomain("mail.paypal.co.uk") == "paypal.co.uk"

    def test_domain_tld(self):
        assert domain_tld("mail.example.xyz") == ".xyz"
        assert domain_tld("localhost") == ""

    def test_parent_domains(self):
        assert parent_domains("a.b.example.com") == [
            "a.b.example.com",
            "b.example.com",
            "example.com",
        ]
        assert parent_domains("example.com") == ["example.com"]


class TestSimilarity:
    """Tests for lookalike heuristics."""

    def test_levenshtein(self):
        assert levenshtein("paypa1", "paypal") == 1
        assert levenshtein("paypal", "paypal") == 0
        assert levenshtein("unrelatedsite", "paypal") > 2

    def test_numeric_lookalike(self):
        assert has_numeric_lookalike("paypa1.com")
        assert has_numeric_lookalike("micr0soft.com")
        assert not has_numeric_lookalike("example.com")
        assert not has_numeric_lookalike("365online.com")
        assert not has_numeric_lookalike(None)

    def test_suspicious_unicode(self):
        # Cyrillic "а" in place of the Latin letter
        assert contains_suspicious_unicode("p\u0430ypal.com")
        assert not contains_suspicious_unicode("paypal.com")
        assert not contains_suspicious_unicode(None)
