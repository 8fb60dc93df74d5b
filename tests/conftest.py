"""
PhishSense test configuration

Shared fixtures: bundled configuration with external feeds disabled,
in-memory sender store, a controllable clock and fake HTTP sessions.
"""

import copy
from datetime import datetime, timedelta, timezone

import pytest
import requests
import yaml

from phishsense.combiner import ScoreCombiner
from phishsense.config import DEFAULT_CONFIG_PATH, PatternConfig
from phishsense.store import InMemorySenderStore, SenderHistory
from phishsense.threat_intel import ThreatIntelCache, load_fallback


with open(DEFAULT_CONFIG_PATH, "r", encoding="utf-8") as _f:
    _DEFAULT_CONFIG = yaml.safe_load(_f)


PHISHING_EMAIL = {
    "from": "PayPal Support <security@paypa1.com>",
    "subject": "Urgent: Verify your account",
    "body": (
        "We detected unusual activity on your account. Please verify your identity "
        "immediately. Click here to confirm your password or your account will be "
        "permanently suspended."
    ),
}

BENIGN_EMAIL = {
    "from": "Alice Smith <alice.smith@microsoft.com>",
    "subject": "Weekly planning sync",
    "body": (
        "Hi team, a reminder that our weekly planning sync is tomorrow at 10am in "
        "room 4B. Agenda is in the shared doc. Thanks, Alice"
    ),
}

FAILING_AUTH_HEADERS = (
    "Received: from mail.paypa1.com (mail.paypa1.com [203.0.113.7])\n"
    "\tby mx.example.com with ESMTP id abc123\n"
    "Received-SPF: fail (example.com: domain of paypa1.com does not designate "
    "203.0.113.7 as permitted sender)\n"
    "Authentication-Results: mx.example.com; dkim=fail header.d=paypa1.com;\n"
    " spf=fail smtp.mailfrom=paypa1.com; dmarc=fail (p=REJECT) header.from=paypa1.com\n"
    "From: PayPal Support <security@paypa1.com>\n"
    "Subject: Urgent: Verify your account\n"
)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now=None):
        self.now = now or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeResponse:
    def __init__(self, status_code=200, text="", payload=None):
        self.status_code = status_code
        self.text = text
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")


class FakeSession:
    """Stand-in for requests.Session keyed by URL.

    A value in ``responses`` may be a FakeResponse or an exception
    instance, which is raised instead.
    """

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.calls = []

    def _respond(self, url):
        self.calls.append(url)
        response = self.responses.get(url, FakeResponse(404))
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, url, timeout=None):
        return self._respond(url)

    def post(self, url, json=None, timeout=None):
        return self._respond(url)


@pytest.fixture
def config():
    """Bundled configuration with external threat intel feeds disabled."""
    cfg = copy.deepcopy(_DEFAULT_CONFIG)
    cfg["threat_intel"] = {"sources": [], "timeout": 1}
    return cfg


@pytest.fixture
def patterns(config):
    return PatternConfig.from_config(config)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store():
    return InMemorySenderStore()


@pytest.fixture
def history(store, clock):
    return SenderHistory(store, clock=clock)


@pytest.fixture
def threat_intel():
    return ThreatIntelCache(sources=(), fallback=load_fallback(), session=FakeSession())


@pytest.fixture
def combiner(config, store, threat_intel, clock):
    return ScoreCombiner(config, store=store, threat_intel=threat_intel, clock=clock)
