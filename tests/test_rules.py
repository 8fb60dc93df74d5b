"""
Tests for the heuristic rule engine.
"""

import pytest

from conftest import BENIGN_EMAIL, PHISHING_EMAIL

from phishsense.engines.rules import RuleEngine
from phishsense.models import EmailContent, EngineStatus, Severity


@pytest.fixture
def engine(patterns):
    return RuleEngine(patterns)


class TestKeywords:
    """Keyword matching and sub-score."""

    def test_phishing_example(self, engine):
        result = engine.analyze(EmailContent.from_mapping(PHISHING_EMAIL))

        assert result.status == EngineStatus.COMPLETED
        assert result.details["keyword_score"] == pytest.approx(265.0)
        assert result.score == pytest.approx(79.5)
        categories = {f.meta["keyword_category"] for f in result.findings if f.category == "keywords"}
        assert categories == {"urgency", "credentials", "account_threats", "call_to_action"}

    def test_every_occurrence_has_offsets(self, engine):
        content = EmailContent(subject="Urgent", body="act now please act now")

        findings, score = engine.check_keywords(f"{content.subject} {content.body}")

        act_now = [f for f in findings if f.meta["pattern"] == "act now"]
        assert [(f.start_index, f.end_index) for f in act_now] == [(7, 14), (22, 29)]
        assert [f.id for f in act_now] == ["keyword-urgency-act now-7", "keyword-urgency-act now-22"]
        assert score == pytest.approx(67.5)

    def test_offsets_index_joined_text(self, engine):
        result = engine.analyze(EmailContent(subject="Hello", body="Please click here"))

        finding = next(f for f in result.findings if f.category == "keywords")
        assert "hello please click here"[finding.start_index:finding.end_index] == "click here"

    def test_clean_text_scores_zero(self, engine):
        result = engine.analyze(EmailContent(subject="Lunch", body="See you at noon."))

        assert result.score == 0
        assert result.findings == []


class TestUrls:
    """URL classification."""

    BODY = (
        "Links: https://www.paypal.com/signin https://t.co/abc "
        "https://microsoft.com/about http://paypal-secure.com/x http://example.org/verify"
    )

    def test_url_classification(self, engine):
        findings = engine.check_urls(self.BODY)

        by_id = {f.id: f for f in findings}
        assert by_id["url-trusted-0"].category == "trusted"
        assert by_id["url-suspicious-1"].severity == Severity.MEDIUM
        assert "shortener" in by_id["url-suspicious-1"].text
        assert "url-suspicious-2" not in by_id
        assert by_id["url-suspicious-3"].severity == Severity.HIGH
        assert by_id["url-suspicious-4"].meta["reason"] == "contains suspicious keywords in URL"

    def test_host_match_is_label_aligned(self, engine):
        # "microsoft.com" ends with "t.co"-like text but is not that host
        assert engine.check_urls("https://microsoft.com/about") == []

    def test_trusted_urls_do_not_score(self, engine):
        result = engine.analyze(EmailContent(body=self.BODY))

        assert result.details["url_score"] == 70.0

    def test_url_analysis_toggle(self, patterns):
        engine = RuleEngine(patterns, enable_url_analysis=False)

        result = engine.analyze(EmailContent(body=self.BODY))

        assert not any(f.category == "urls" for f in result.findings)
        assert result.details["url_score"] == 0


class TestDomains:
    """Sender domain checks."""

    def test_trusted_sender_never_flagged(self, engine):
        result = engine.analyze(EmailContent.from_mapping(BENIGN_EMAIL))

        assert result.score == 0
        assert [f.id for f in result.findings] == ["domain-trusted-0"]
        assert result.findings[0].category == "trusted"

    def test_suspicious_domain_and_subdomain(self, engine):
        assert engine.check_domains("x@paypal-secure.com")[0].id == "domain-suspicious-0"
        assert engine.check_domains("x@mail.paypal-secure.com")[0].severity == Severity.HIGH

    def test_ip_literal_sender(self, engine):
        findings = engine.check_domains("Admin <admin@[192.168.1.1]>")

        assert [f.id for f in findings] == ["domain-ip-0"]
        assert findings[0].severity == Severity.MEDIUM

    def test_unknown_domain(self, engine):
        assert engine.check_domains("bob@example.org") == []
        assert engine.check_domains("") == []

    def test_domain_analysis_toggle(self, patterns):
        engine = RuleEngine(patterns, enable_domain_analysis=False)

        result = engine.analyze(EmailContent(sender="x@paypal-secure.com"))

        assert result.findings == []


class TestAttachmentsAndHtml:
    """Attachment names and HTML indicators."""

    def test_attachment_outside_urls(self, engine):
        findings = engine.check_attachments(
            "Please open invoice.exe, see http://files.example.com/setup.msi"
        )

        assert [f.id for f in findings] == ["attachment-.exe"]

    def test_extension_must_be_whole_token(self, engine):
        assert engine.check_attachments("The data.json file is attached") == []

    def test_attachment_score(self, engine):
        result = engine.analyze(EmailContent(body="run update.exe"))

        assert result.details["attachment_score"] == 40.0
        assert result.score == pytest.approx(6.0)

    def test_attachment_toggle(self, patterns):
        engine = RuleEngine(patterns, enable_attachment_analysis=False)

        result = engine.analyze(EmailContent(body="run update.exe"))

        assert result.findings == []

    def test_html_tokens(self, engine):
        findings = engine.check_html('<form action="x"><script>alert(1)</script>')

        assert {f.id for f in findings} == {"html-scripts-<script", "html-forms-<form"}
        assert all(f.severity == Severity.LOW for f in findings)


class TestErrors:
    """Failure handling."""

    def test_exception_becomes_error_finding(self, engine, monkeypatch):
        def boom(text):
            raise RuntimeError("broken pattern")

        monkeypatch.setattr(engine, "check_keywords", boom)

        result = engine.analyze(EmailContent(body="hello"))

        assert result.status == EngineStatus.ERROR
        assert result.score == 0
        assert result.findings[0].id == "rules-error"
        assert result.error_message == "broken pattern"
