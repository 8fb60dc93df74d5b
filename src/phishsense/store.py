"""Sender behavior and trusted-sender persistence.

Business rules live in pure functions (``apply_interaction``,
``apply_confirmation``, ``signals_from_record``) that turn a prior record
plus an event into a new record. Stores only read and write records.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import requests

from phishsense.lexical import normalize_sender
from phishsense.models import (
    AnalysisResult,
    AuthSnapshot,
    BehaviorRecord,
    BehaviorSignals,
    RiskLevel,
    TrustedRecord,
    Verdict,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Pure state transitions
# ---------------------------------------------------------------------------

def apply_interaction(
    prior: BehaviorRecord | None,
    sender: str,
    domain: str,
    verdict: Verdict,
    user_id: str | None,
    now: datetime,
) -> BehaviorRecord:
    """Return the record after one more interaction with ``sender``.

    Counters only ever grow; ``first_seen`` is kept from the prior record.
    """
    if prior is None:
        return BehaviorRecord(
            sender=sender,
            domain=domain,
            user_id=user_id,
            total_interactions=1,
            phishing_interactions=int(verdict == Verdict.PHISHING),
            safe_interactions=int(verdict == Verdict.SAFE),
            suspicious_interactions=int(verdict == Verdict.SUSPICIOUS),
            first_seen=now,
            last_seen=now,
        )
    return replace(
        prior,
        total_interactions=prior.total_interactions + 1,
        phishing_interactions=prior.phishing_interactions + int(verdict == Verdict.PHISHING),
        safe_interactions=prior.safe_interactions + int(verdict == Verdict.SAFE),
        suspicious_interactions=prior.suspicious_interactions + int(verdict == Verdict.SUSPICIOUS),
        last_seen=max(prior.last_seen, now),
    )


def apply_confirmation(
    prior: TrustedRecord | None,
    sender: str,
    domain: str,
    user_id: str | None,
    now: datetime,
    *,
    subject: str | None = None,
    notes: str | None = None,
    auth_snapshot: AuthSnapshot | None = None,
) -> TrustedRecord:
    """Return the trusted record after the user confirms ``sender`` again."""
    if prior is None:
        return TrustedRecord(
            id=uuid.uuid4().hex,
            sender=sender,
            domain=domain,
            user_id=user_id,
            created_at=now,
            last_confirmed_at=now,
            confirmation_count=1,
            subject=subject,
            notes=notes,
            auth_snapshot=auth_snapshot,
        )
    return replace(
        prior,
        last_confirmed_at=now,
        confirmation_count=prior.confirmation_count + 1,
        subject=subject or prior.subject,
        notes=notes or prior.notes,
        auth_snapshot=auth_snapshot or prior.auth_snapshot,
    )


def signals_from_record(record: BehaviorRecord | None, now: datetime) -> BehaviorSignals:
    """Summarize a behavior record as of ``now``."""
    if record is None:
        return BehaviorSignals()
    days = round((now - record.last_seen).total_seconds() / 86400)
    return BehaviorSignals(
        total_interactions=record.total_interactions,
        phishing_interactions=record.phishing_interactions,
        safe_interactions=record.safe_interactions,
        suspicious_interactions=record.suspicious_interactions,
        days_since_last_interaction=days,
        is_first_interaction=record.total_interactions <= 1,
        first_seen=record.first_seen,
        last_seen=record.last_seen,
    )


def verdict_for(result: AnalysisResult) -> Verdict:
    """Map a final risk level to the verdict recorded for the sender."""
    return {
        RiskLevel.HIGH: Verdict.PHISHING,
        RiskLevel.MEDIUM: Verdict.SUSPICIOUS,
        RiskLevel.LOW: Verdict.SAFE,
    }[result.risk_level]


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class SenderStore(ABC):
    """Persistence interface for behavior and trusted-sender records.

    Records are keyed by (normalized sender address, user id); a user id
    of None is the anonymous scope.
    """

    @abstractmethod
    def get_behavior(self, sender: str, user_id: str | None) -> BehaviorRecord | None: ...

    @abstractmethod
    def find_behavior_by_domain(self, domain: str, user_id: str | None) -> BehaviorRecord | None: ...

    @abstractmethod
    def upsert_behavior(self, record: BehaviorRecord) -> None: ...

    @abstractmethod
    def get_trusted(self, sender: str, user_id: str | None) -> TrustedRecord | None: ...

    @abstractmethod
    def list_trusted(self, user_id: str | None = None) -> list[TrustedRecord]:
        """Trusted records visible to ``user_id``: their own plus anonymous ones.

        With ``user_id`` None every record is returned.
        """
        ...

    @abstractmethod
    def upsert_trusted(self, record: TrustedRecord) -> None: ...

    @abstractmethod
    def remove_trusted(self, record_id: str) -> None: ...


class InMemorySenderStore(SenderStore):
    """Thread-safe dict-backed store, used by default and in tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._behavior: dict[tuple[str, str | None], BehaviorRecord] = {}
        self._trusted: dict[tuple[str, str | None], TrustedRecord] = {}

    def get_behavior(self, sender: str, user_id: str | None) -> BehaviorRecord | None:
        with self._lock:
            return self._behavior.get((sender, user_id))

    def find_behavior_by_domain(self, domain: str, user_id: str | None) -> BehaviorRecord | None:
        with self._lock:
            matches = [
                r for r in self._behavior.values()
                if r.domain == domain and r.user_id == user_id
            ]
        return max(matches, key=lambda r: r.last_seen, default=None)

    def upsert_behavior(self, record: BehaviorRecord) -> None:
        with self._lock:
            self._behavior[(record.sender, record.user_id)] = record

    def get_trusted(self, sender: str, user_id: str | None) -> TrustedRecord | None:
        with self._lock:
            return self._trusted.get((sender, user_id))

    def list_trusted(self, user_id: str | None = None) -> list[TrustedRecord]:
        with self._lock:
            records = list(self._trusted.values())
        if user_id is None:
            return records
        return [r for r in records if r.user_id is None or r.user_id == user_id]

    def upsert_trusted(self, record: TrustedRecord) -> None:
        with self._lock:
            self._trusted[(record.sender, record.user_id)] = record

    def remove_trusted(self, record_id: str) -> None:
        with self._lock:
            self._trusted = {k: r for k, r in self._trusted.items() if r.id != record_id}


class SQLiteSenderStore(SenderStore):
    """SQLite-backed store.

    The anonymous scope is stored as an empty ``user_id`` so it can take
    part in the primary key.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS sender_behavior (
                    sender TEXT NOT NULL,
                    user_id TEXT NOT NULL DEFAULT '',
                    domain TEXT NOT NULL,
                    total_interactions INTEGER NOT NULL DEFAULT 0,
                    phishing_interactions INTEGER NOT NULL DEFAULT 0,
                    safe_interactions INTEGER NOT NULL DEFAULT 0,
                    suspicious_interactions INTEGER NOT NULL DEFAULT 0,
                    first_seen TEXT NOT NULL,
                    last_seen TEXT NOT NULL,
                    PRIMARY KEY (sender, user_id)
                );
                CREATE INDEX IF NOT EXISTS idx_behavior_domain ON sender_behavior(domain, user_id);

                CREATE TABLE IF NOT EXISTS trusted_senders (
                    id TEXT NOT NULL UNIQUE,
                    sender TEXT NOT NULL,
                    user_id TEXT NOT NULL DEFAULT '',
                    domain TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    last_confirmed_at TEXT NOT NULL,
                    confirmation_count INTEGER NOT NULL DEFAULT 1,
                    subject TEXT,
                    notes TEXT,
                    spf_passed INTEGER,
                    dkim_passed INTEGER,
                    dmarc_passed INTEGER,
                    PRIMARY KEY (sender, user_id)
                );
            """)
            conn.commit()
            logger.debug("SQLite sender store initialized at %s", self.db_path)
        finally:
            conn.close()

    def _query_one(self, sql: str, params: tuple) -> sqlite3.Row | None:
        with self._lock:
            conn = self._connect()
            try:
                return conn.execute(sql, params).fetchone()
            finally:
                conn.close()

    def _execute(self, sql: str, params: tuple) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(sql, params)
                conn.commit()
            finally:
                conn.close()

    def get_behavior(self, sender: str, user_id: str | None) -> BehaviorRecord | None:
        row = self._query_one(
            "SELECT * FROM sender_behavior WHERE sender = ? AND user_id = ?",
            (sender, user_id or ""),
        )
        return _behavior_from_row(row) if row else None

    def find_behavior_by_domain(self, domain: str, user_id: str | None) -> BehaviorRecord | None:
        row = self._query_one(
            "SELECT * FROM sender_behavior WHERE domain = ? AND user_id = ? "
            "ORDER BY last_seen DESC LIMIT 1",
            (domain, user_id or ""),
        )
        return _behavior_from_row(row) if row else None

    def upsert_behavior(self, record: BehaviorRecord) -> None:
        self._execute(
            """
            INSERT INTO sender_behavior (
                sender, user_id, domain, total_interactions, phishing_interactions,
                safe_interactions, suspicious_interactions, first_seen, last_seen
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(sender, user_id) DO UPDATE SET
                domain = excluded.domain,
                total_interactions = excluded.total_interactions,
                phishing_interactions = excluded.phishing_interactions,
                safe_interactions = excluded.safe_interactions,
                suspicious_interactions = excluded.suspicious_interactions,
                last_seen = excluded.last_seen
            """,
            (
                record.sender, record.user_id or "", record.domain,
                record.total_interactions, record.phishing_interactions,
                record.safe_interactions, record.suspicious_interactions,
                record.first_seen.isoformat(), record.last_seen.isoformat(),
            ),
        )

    def get_trusted(self, sender: str, user_id: str | None) -> TrustedRecord | None:
        row = self._query_one(
            "SELECT * FROM trusted_senders WHERE sender = ? AND user_id = ?",
            (sender, user_id or ""),
        )
        return _trusted_from_row(row) if row else None

    def list_trusted(self, user_id: str | None = None) -> list[TrustedRecord]:
        with self._lock:
            conn = self._connect()
            try:
                if user_id is None:
                    rows = conn.execute("SELECT * FROM trusted_senders").fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM trusted_senders WHERE user_id IN ('', ?)", (user_id,),
                    ).fetchall()
            finally:
                conn.close()
        return [_trusted_from_row(r) for r in rows]

    def upsert_trusted(self, record: TrustedRecord) -> None:
        snap = record.auth_snapshot or AuthSnapshot()
        self._execute(
            """
            INSERT INTO trusted_senders (
                id, sender, user_id, domain, created_at, last_confirmed_at,
                confirmation_count, subject, notes, spf_passed, dkim_passed, dmarc_passed
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(sender, user_id) DO UPDATE SET
                last_confirmed_at = excluded.last_confirmed_at,
                confirmation_count = excluded.confirmation_count,
                subject = excluded.subject,
                notes = excluded.notes,
                spf_passed = excluded.spf_passed,
                dkim_passed = excluded.dkim_passed,
                dmarc_passed = excluded.dmarc_passed
            """,
            (
                record.id, record.sender, record.user_id or "", record.domain,
                record.created_at.isoformat(), record.last_confirmed_at.isoformat(),
                record.confirmation_count, record.subject, record.notes,
                _flag_to_db(snap.spf_passed), _flag_to_db(snap.dkim_passed),
                _flag_to_db(snap.dmarc_passed),
            ),
        )

    def remove_trusted(self, record_id: str) -> None:
        self._execute("DELETE FROM trusted_senders WHERE id = ?", (record_id,))


def _flag_to_db(value: bool | None) -> int | None:
    return None if value is None else int(value)


def _flag_from_db(value: Any) -> bool | None:
    return None if value is None else bool(value)


def _behavior_from_row(row: sqlite3.Row) -> BehaviorRecord:
    return BehaviorRecord(
        sender=row["sender"],
        domain=row["domain"],
        user_id=row["user_id"] or None,
        total_interactions=row["total_interactions"],
        phishing_interactions=row["phishing_interactions"],
        safe_interactions=row["safe_interactions"],
        suspicious_interactions=row["suspicious_interactions"],
        first_seen=datetime.fromisoformat(row["first_seen"]),
        last_seen=datetime.fromisoformat(row["last_seen"]),
    )


def _trusted_from_row(row: sqlite3.Row) -> TrustedRecord:
    flags = (row["spf_passed"], row["dkim_passed"], row["dmarc_passed"])
    snapshot = None
    if any(flag is not None for flag in flags):
        snapshot = AuthSnapshot(*(_flag_from_db(flag) for flag in flags))
    return TrustedRecord(
        id=row["id"],
        sender=row["sender"],
        domain=row["domain"],
        user_id=row["user_id"] or None,
        created_at=datetime.fromisoformat(row["created_at"]),
        last_confirmed_at=datetime.fromisoformat(row["last_confirmed_at"]),
        confirmation_count=row["confirmation_count"],
        subject=row["subject"],
        notes=row["notes"],
        auth_snapshot=snapshot,
    )


# ---------------------------------------------------------------------------
# Remote replication
# ---------------------------------------------------------------------------

class RemoteSync:
    """Best-effort replication of upserts to an HTTP endpoint.

    Requests run on a small background pool; failures are logged and
    never reach the caller. Only records that belong to a user are sent.
    """

    def __init__(self, endpoint: str, timeout: float = 5.0, session: Any = None) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="phishsense-sync")

    def push_behavior(self, record: BehaviorRecord) -> Future | None:
        return self._submit("sender_behavior", record.user_id, record.sender, _jsonable(asdict(record)))

    def push_trusted(self, record: TrustedRecord) -> Future | None:
        return self._submit("trusted_senders", record.user_id, record.sender, _jsonable(asdict(record)))

    def _submit(self, table: str, user_id: str | None, sender: str, payload: dict) -> Future | None:
        if not user_id:
            return None
        payload = {"id": f"{user_id}_{sender}", **payload, "updated_at": utcnow().isoformat()}
        return self._executor.submit(self._post, table, payload)

    def _post(self, table: str, payload: dict) -> bool:
        try:
            response = self._session.post(
                f"{self.endpoint}/{table}", json=payload, timeout=self.timeout,
            )
            if response.status_code >= 400:
                logger.warning("Remote %s upsert returned status %s", table, response.status_code)
                return False
            return True
        except requests.exceptions.RequestException as exc:
            logger.warning("Remote %s upsert failed: %s", table, exc)
            return False

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def _jsonable(data: dict) -> dict:
    out = {}
    for key, value in data.items():
        if isinstance(value, datetime):
            out[key] = value.isoformat()
        elif isinstance(value, dict):
            out[key] = _jsonable(value)
        else:
            out[key] = value
    return out


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class SenderHistory:
    """Reads and records sender behavior and trust for the engines and callers."""

    def __init__(
        self,
        store: SenderStore | None = None,
        remote_sync: RemoteSync | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.store = store or InMemorySenderStore()
        self.remote_sync = remote_sync
        self.clock = clock or utcnow
        self._write_lock = threading.Lock()

    def record_interaction(
        self, sender: str | None, verdict: Verdict | str, user_id: str | None = None,
    ) -> BehaviorRecord | None:
        """Count one analysis of ``sender`` with the given verdict.

        Returns None when the sender has no usable address.
        """
        address, domain = normalize_sender(sender)
        if not address or not domain:
            return None
        verdict = Verdict(verdict)

        with self._write_lock:
            prior = self.store.get_behavior(address, user_id)
            record = apply_interaction(prior, address, domain, verdict, user_id, self.clock())
            self.store.upsert_behavior(record)

        if self.remote_sync is not None:
            self.remote_sync.push_behavior(record)
        return record

    def record_trusted_sender(
        self,
        sender: str | None,
        user_id: str | None = None,
        *,
        subject: str | None = None,
        notes: str | None = None,
        auth_snapshot: AuthSnapshot | None = None,
    ) -> TrustedRecord | None:
        """Mark ``sender`` as legitimate, or bump its confirmation count."""
        address, domain = normalize_sender(sender)
        if not address or not domain:
            return None

        with self._write_lock:
            prior = self.store.get_trusted(address, user_id)
            record = apply_confirmation(
                prior, address, domain, user_id, self.clock(),
                subject=subject, notes=notes, auth_snapshot=auth_snapshot,
            )
            self.store.upsert_trusted(record)

        if self.remote_sync is not None:
            self.remote_sync.push_trusted(record)
        return record

    def remove_trusted(self, record_id: str) -> None:
        self.store.remove_trusted(record_id)

    def trusted_records(self, user_id: str | None = None) -> list[TrustedRecord]:
        return self.store.list_trusted(user_id)

    def is_sender_trusted(self, sender: str | None, user_id: str | None = None) -> bool:
        """True when the address, or any address at its domain, was confirmed."""
        address, domain = normalize_sender(sender)
        if not domain:
            return False
        records = self.store.list_trusted(user_id)
        if user_id is None:
            # list_trusted(None) spans every user; anonymous callers only see anonymous trust
            records = [r for r in records if r.user_id is None]
        return any(r.sender == address or r.domain == domain for r in records)

    def behavior_signals(self, sender: str | None, user_id: str | None = None) -> BehaviorSignals:
        """Signals for the exact sender, falling back to its domain."""
        address, domain = normalize_sender(sender)
        if not address:
            return BehaviorSignals()
        record = self.store.get_behavior(address, user_id)
        if record is None and domain:
            record = self.store.find_behavior_by_domain(domain, user_id)
        return signals_from_record(record, self.clock())

    def legitimacy_snapshot(
        self, sender: str | None, analysis: AnalysisResult | None, user_id: str | None = None,
    ) -> dict[str, Any]:
        """Summarize why a sender looks legitimate, for confirmation prompts."""
        _, domain = normalize_sender(sender)
        trusted_by_user = self.is_sender_trusted(sender, user_id)

        auth_strong = False
        ml_supports = False
        if analysis is not None:
            headers = analysis.breakdown.get("headers")
            auth = headers.details if headers else {}
            auth_strong = all(
                auth.get(key) == "pass"
                for key in ("spf_status", "dkim_status", "dmarc_status")
            )
            ml = analysis.breakdown.get("ml")
            if ml is not None:
                ml_supports = ml.score < 40 and ml.details.get("confidence", 0) >= 0.5

        return {
            "domain": domain,
            "trusted_by_user": trusted_by_user,
            "auth_strong": auth_strong,
            "ml_supports": ml_supports,
            "score": analysis.score if analysis else 0,
            "verdict": analysis.summary if analysis else "",
            "recommendation": "likely-safe" if trusted_by_user or auth_strong else "review",
        }
