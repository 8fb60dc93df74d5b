"""
Tests for the header analysis engine.
"""

import pytest

from conftest import FAILING_AUTH_HEADERS

from phishsense.engines import headers as headers_module
from phishsense.engines.headers import HeaderEngine, extract_domain
from phishsense.models import EmailContent, EngineStatus, Severity


@pytest.fixture
def engine():
    return HeaderEngine()


class TestHeaderEngine:
    """Tests for HeaderEngine.analyze."""

    def test_empty_headers_are_skipped(self, engine):
        result = engine.analyze(EmailContent(headers="  \n"))

        assert result.status == EngineStatus.SKIPPED
        assert result.score == 0
        assert result.findings == []
        assert result.details["received_count"] == 0

    def test_failing_authentication(self, engine):
        result = engine.analyze(EmailContent(headers=FAILING_AUTH_HEADERS))

        assert result.status == EngineStatus.COMPLETED
        assert result.score == 95
        severities = {f.id: f.severity for f in result.findings}
        assert severities == {
            "spf-fail": Severity.HIGH,
            "dkim-fail": Severity.HIGH,
            "dmarc-fail": Severity.MEDIUM,
        }
        assert result.details["spf_status"] == "fail"
        assert result.details["received_count"] == 1
        assert result.details["overall"] == "bad"

    def test_softfail(self, engine):
        result = engine.analyze(EmailContent(headers="Received-SPF: softfail (example.com)"))

        assert [f.id for f in result.findings] == ["spf-softfail"]
        assert result.score == 20

    def test_too_many_hops(self, engine):
        headers = "\n".join(f"Received: from relay{i}.example.com" for i in range(6))

        result = engine.analyze(EmailContent(headers=headers))

        assert [f.id for f in result.findings] == ["too-many-hops"]
        assert result.findings[0].meta["hops"] == 6
        assert result.score == 15

    def test_from_return_path_mismatch(self, engine):
        result = engine.analyze(EmailContent(headers=(
            "From: PayPal <service@paypal.com>\n"
            "Return-Path: <bounce@bulk-mailer.example>\n"
        )))

        finding = next(f for f in result.findings if f.id == "domain-mismatch")
        assert finding.meta == {
            "from_domain": "paypal.com",
            "return_path_domain": "bulk-mailer.example",
        }
        assert result.score == 20

    def test_passing_headers_score_zero(self, engine):
        result = engine.analyze(EmailContent(headers=(
            "Received-SPF: pass\n"
            "Authentication-Results: mx; dkim=pass; dmarc=pass\n"
            "From: a@example.com\n"
            "Return-Path: <a@example.com>\n"
        )))

        assert result.score == 0
        assert result.findings == []
        assert result.details["dkim_status"] == "pass"

    def test_parse_failure_is_reported(self, engine, monkeypatch):
        def boom(fields):
            raise ValueError("garbled")

        monkeypatch.setattr(headers_module, "interpret_headers", boom)

        result = engine.analyze(EmailContent(headers="From: a@b.com"))

        assert result.status == EngineStatus.ERROR
        assert result.findings[0].id == "header-error"
        assert result.score == 0


def test_extract_domain():
    assert extract_domain("Bob <BOB@Example.COM>") == "example.com"
    assert extract_domain("<>") is None
