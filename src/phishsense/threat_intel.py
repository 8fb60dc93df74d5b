"""Threat intel blocklist cache for PhishSense.

Fetches external domain/URL blocklists (JSON or line-delimited text),
merges them with a bundled fallback list and memoizes the result for the
lifetime of the cache object. Only one fetch is ever in flight; callers
arriving while it runs wait for the same result.
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

import requests

from phishsense.models import ThreatIntelData

logger = logging.getLogger(__name__)

FALLBACK_PATH = Path(__file__).resolve().parent / "data" / "threat_intel_fallback.json"

# JSON fields recognized as domain or URL lists.
_DOMAIN_FIELDS = ("maliciousDomains", "blacklist", "blocklist", "domains")
_URL_FIELDS = ("maliciousUrls", "urls")


def load_fallback(path: Path = FALLBACK_PATH) -> ThreatIntelData:
    """Load the bundled fallback blocklist."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as exc:
        logger.warning("Bundled threat intel unreadable (%s): %s", path, exc)
        return ThreatIntelData(frozenset(), frozenset(), None)

    return ThreatIntelData(
        malicious_domains=frozenset(d.lower() for d in _string_list(data.get("maliciousDomains"))),
        malicious_urls=frozenset(_string_list(data.get("maliciousUrls"))),
        last_updated=data.get("lastUpdated"),
    )


def _string_list(value: Any) -> list[str]:
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return value
    return []


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_json_intel(data: Any) -> ThreatIntelData | None:
    """Parse a JSON payload, either a bare list or an object with list fields."""
    if isinstance(data, list):
        entries = [item for item in data if isinstance(item, str)]
        if not entries:
            return None
        return ThreatIntelData(frozenset(entries), frozenset(), _now_iso())

    if not isinstance(data, dict):
        return None

    domains: set[str] = set()
    urls: set[str] = set()
    for key in _DOMAIN_FIELDS:
        domains.update(_string_list(data.get(key)))
    for key in _URL_FIELDS:
        urls.update(_string_list(data.get(key)))

    if not domains and not urls:
        return None
    return ThreatIntelData(frozenset(domains), frozenset(urls), _now_iso())


def _normalize_lines(text: str) -> list[str]:
    entries = []
    for line in text.splitlines():
        cleaned = line.strip()
        if not cleaned or cleaned.startswith("#"):
            continue
        base = cleaned.split(",", 1)[0].strip()
        if " " in base:
            # hosts-file style: "0.0.0.0 bad.example"
            base = base.split()[-1]
        if base:
            entries.append(base)
    return entries


def parse_text_intel(text: str) -> ThreatIntelData | None:
    """Parse a line-delimited list; entries with a scheme are URLs."""
    lines = _normalize_lines(text)
    if not lines:
        return None
    urls = {line for line in lines if "://" in line}
    domains = {line for line in lines if "://" not in line}
    return ThreatIntelData(frozenset(domains), frozenset(urls), _now_iso())


def merge_intel(base: ThreatIntelData, others: Iterable[ThreatIntelData]) -> ThreatIntelData:
    """Union of ``base`` and ``others``; domains lower-cased."""
    domains = set(base.malicious_domains)
    urls = set(base.malicious_urls)
    last_updated = base.last_updated
    for other in others:
        domains.update(d.lower() for d in other.malicious_domains)
        urls.update(other.malicious_urls)
        last_updated = other.last_updated or last_updated
    return ThreatIntelData(frozenset(domains), frozenset(urls), last_updated)


class ThreatIntelCache:
    """Loaded-once holder for merged threat intel.

    Args:
        sources: URLs of external blocklists.
        timeout: Per-source request timeout in seconds.
        fallback: Bundled data merged into every result. Loaded from the
            package when omitted.
        session: Optional ``requests.Session`` (or compatible) used for
            fetching; tests substitute a fake here.
    """

    def __init__(
        self,
        sources: Iterable[str] = (),
        timeout: float = 10.0,
        fallback: ThreatIntelData | None = None,
        session: Any = None,
    ) -> None:
        self.sources = list(sources)
        self.timeout = timeout
        self.fallback = fallback if fallback is not None else load_fallback()
        self._session = session or requests.Session()
        self._lock = threading.Lock()
        self._data: ThreatIntelData | None = None
        self._inflight: Future | None = None
        self.fetch_count = 0

    def get(self) -> ThreatIntelData:
        """Return cached intel, fetching it once if needed.

        Never raises: unreachable or unparseable sources are skipped and
        the bundled fallback is always part of the result.
        """
        with self._lock:
            if self._data is not None:
                return self._data
            owner = self._inflight is None
            if owner:
                self._inflight = Future()
            inflight = self._inflight

        if owner:
            try:
                data = self._resolve()
            except Exception as exc:
                logger.warning("Threat intel resolution failed, using bundled list: %s", exc)
                data = self.fallback
            with self._lock:
                self._data = data
                self._inflight = None
            inflight.set_result(data)

        return inflight.result()

    def invalidate(self) -> None:
        """Drop the cached data so the next ``get`` fetches again."""
        with self._lock:
            self._data = None

    @property
    def is_loaded(self) -> bool:
        return self._data is not None

    def _resolve(self) -> ThreatIntelData:
        self.fetch_count += 1
        fetched = []
        for source in self.sources:
            result = self.fetch_source(source)
            if result is not None:
                fetched.append(result)
        logger.info(
            "Threat intel loaded: %d/%d external sources succeeded",
            len(fetched), len(self.sources),
        )
        return merge_intel(self.fallback, fetched)

    def fetch_source(self, url: str) -> ThreatIntelData | None:
        """Fetch and parse one source, returning None on any failure.

        Args:
            url: Blocklist URL returning JSON or line-delimited text.

        Returns:
            Parsed ThreatIntelData, or None if unreachable or unparseable.
        """
        try:
            response = self._session.get(url, timeout=self.timeout)
            if response.status_code != 200:
                logger.warning("Threat intel source %s returned status %s", url, response.status_code)
                return None
            raw = response.text
        except requests.exceptions.RequestException as exc:
            logger.warning("Threat intel source fetch failed: %s (%s)", url, exc)
            return None

        try:
            payload = json.loads(raw)
        except ValueError:
            return parse_text_intel(raw)
        return parse_json_intel(payload)
