"""
Tests for the threat intel cache and source parsing.
"""

import threading
import time

import requests

from conftest import FakeResponse, FakeSession

from phishsense.models import ThreatIntelData
from phishsense.threat_intel import (
    ThreatIntelCache,
    load_fallback,
    merge_intel,
    parse_json_intel,
    parse_text_intel,
)

EMPTY = ThreatIntelData(frozenset(), frozenset(), None)


class TestParsing:
    """Tests for JSON and text source parsing."""

    def test_json_recognized_fields(self):
        data = parse_json_intel({
            "blocklist": ["bad.example"],
            "maliciousUrls": ["http://bad.example/login"],
        })

        assert data.malicious_domains == {"bad.example"}
        assert data.malicious_urls == {"http://bad.example/login"}

    def test_json_bare_list(self):
        data = parse_json_intel(["one.example", "two.example", 3])

        assert data.malicious_domains == {"one.example", "two.example"}

    def test_json_without_known_fields(self):
        assert parse_json_intel({"status": "ok"}) is None
        assert parse_json_intel("just a string") is None

    def test_text_lines(self):
        data = parse_text_intel(
            "# OpenPhish feed\n"
            "\n"
            "evil.example,2026-01-01,phishing\n"
            "http://evil.example/verify\n"
            "0.0.0.0 tracker.example\n"
        )

        assert data.malicious_domains == {"evil.example", "tracker.example"}
        assert data.malicious_urls == {"http://evil.example/verify"}

    def test_text_only_comments(self):
        assert parse_text_intel("# nothing here\n\n") is None

    def test_merge_lowercases_domains(self):
        merged = merge_intel(EMPTY, [ThreatIntelData(frozenset({"EVIL.example"}), frozenset(), "t")])

        assert merged.malicious_domains == {"evil.example"}
        assert merged.last_updated == "t"

    def test_bundled_fallback(self):
        data = load_fallback()

        assert "secure-account-verify.com" in data.malicious_domains
        assert data.last_updated


class TestThreatIntelCache:
    """Tests for ThreatIntelCache."""

    def test_merges_sources_with_fallback(self):
        session = FakeSession({
            "https://feeds.example/json": FakeResponse(
                text='{"maliciousDomains": ["json-bad.example"]}'
            ),
            "https://feeds.example/txt": FakeResponse(text="text-bad.example\n"),
        })
        cache = ThreatIntelCache(
            ["https://feeds.example/json", "https://feeds.example/txt"],
            fallback=load_fallback(),
            session=session,
        )

        data = cache.get()

        assert {"json-bad.example", "text-bad.example", "secure-account-verify.com"} <= data.malicious_domains

    def test_failing_sources_are_skipped(self):
        session = FakeSession({
            "https://down.example/feed": requests.exceptions.ConnectionError("down"),
            "https://missing.example/feed": FakeResponse(status_code=503),
            "https://junk.example/feed": FakeResponse(text='{"unrelated": true}'),
        })
        cache = ThreatIntelCache(
            ["https://down.example/feed", "https://missing.example/feed", "https://junk.example/feed"],
            fallback=load_fallback(),
            session=session,
        )

        data = cache.get()

        assert data == load_fallback()

    def test_memoized_until_invalidated(self):
        session = FakeSession({"https://feeds.example/txt": FakeResponse(text="a.example\n")})
        cache = ThreatIntelCache(["https://feeds.example/txt"], fallback=EMPTY, session=session)

        first = cache.get()
        second = cache.get()

        assert first is second
        assert cache.fetch_count == 1
        assert cache.is_loaded

        cache.invalidate()
        assert not cache.is_loaded
        cache.get()
        assert cache.fetch_count == 2

    def test_single_fetch_in_flight(self):
        release = threading.Event()

        class SlowSession(FakeSession):
            def get(self, url, timeout=None):
                release.wait(5)
                return super().get(url, timeout)

        session = SlowSession({"https://feeds.example/txt": FakeResponse(text="slow.example\n")})
        cache = ThreatIntelCache(["https://feeds.example/txt"], fallback=EMPTY, session=session)
        results = []

        threads = [threading.Thread(target=lambda: results.append(cache.get())) for _ in range(5)]
        for t in threads:
            t.start()
        time.sleep(0.1)
        release.set()
        for t in threads:
            t.join(5)

        assert len(results) == 5
        assert all(r is results[0] for r in results)
        assert session.calls == ["https://feeds.example/txt"]
        assert cache.fetch_count == 1
