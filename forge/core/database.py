"""forge.core.database

The leg ledger is the journal: append-only legs with a hash chain.
Donations, balances and forges are state derived from it.

Every write runs inside ``transaction()``: one lock, one ``BEGIN IMMEDIATE``,
commit or roll back as a unit.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from forge.core.events import LegType, canonical_json, payload_hash
from forge.core.exceptions import DedupeConflictError, StorageUnavailableError, StoreError
from forge.core.models import Donation, LegRecord, compute_leg_hash
from forge.core.time import dt_to_iso, iso_to_dt, utc_now

SCHEMA = """
-- ============================================================
-- Schema Version Tracking
-- ============================================================
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT DEFAULT (datetime('now'))
);

-- ============================================================
-- Donations (one per correlated pair of legs, never deleted)
-- ============================================================
CREATE TABLE IF NOT EXISTS donations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    galaxy_id TEXT NOT NULL,
    counter INTEGER NOT NULL CHECK(counter >= 0),
    initiate_tx_id TEXT,
    hyperpay_tx_id TEXT,
    sunshines_amount REAL,
    spend_usd_amount REAL,
    memo TEXT,
    issue_id TEXT,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    expired_at TEXT,
    reward_applied_at TEXT,
    CHECK(initiate_tx_id IS NOT NULL OR hyperpay_tx_id IS NOT NULL)
);

-- At most one live donation per (user, galaxy, counter).
CREATE UNIQUE INDEX IF NOT EXISTS idx_donations_live_triple
    ON donations(user_id, galaxy_id, counter)
    WHERE expired_at IS NULL AND (initiate_tx_id IS NULL OR hyperpay_tx_id IS NULL);

CREATE INDEX IF NOT EXISTS idx_donations_triple ON donations(user_id, galaxy_id, counter);
CREATE INDEX IF NOT EXISTS idx_donations_galaxy ON donations(galaxy_id, created_at);
CREATE INDEX IF NOT EXISTS idx_donations_issue ON donations(issue_id);
CREATE INDEX IF NOT EXISTS idx_donations_created ON donations(created_at);

-- ============================================================
-- Leg Events (hash chain, append-only)
-- ============================================================
CREATE TABLE IF NOT EXISTS leg_events (
    id TEXT PRIMARY KEY,
    leg_type TEXT NOT NULL CHECK(leg_type IN ('initiate', 'processor')),
    leg_tx_id TEXT NOT NULL UNIQUE,
    counter INTEGER NOT NULL,
    user_id TEXT NOT NULL,
    galaxy_id TEXT NOT NULL,
    received_at TEXT NOT NULL,
    payload TEXT NOT NULL,
    payload_hash TEXT NOT NULL,
    donation_id TEXT REFERENCES donations(id),
    rejection TEXT,
    prev_hash TEXT,
    hash TEXT NOT NULL UNIQUE,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_leg_events_triple ON leg_events(user_id, galaxy_id, counter);
CREATE INDEX IF NOT EXISTS idx_leg_events_donation ON leg_events(donation_id);

-- ============================================================
-- Balances
-- ============================================================
CREATE TABLE IF NOT EXISTS user_balances (
    user_id TEXT PRIMARY KEY,
    sunshines REAL NOT NULL DEFAULT 0,
    stars REAL NOT NULL DEFAULT 0,
    donations INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS galaxy_balances (
    galaxy_id TEXT PRIMARY KEY,
    sunshines REAL NOT NULL DEFAULT 0,
    stars REAL NOT NULL DEFAULT 0,
    donations INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

-- ============================================================
-- Solar Forges (per-issue reward aggregate)
-- ============================================================
CREATE TABLE IF NOT EXISTS solar_forges (
    id TEXT PRIMARY KEY,
    solar_forge_type TEXT NOT NULL DEFAULT 'issue' CHECK(solar_forge_type IN ('issue')),
    issue_id TEXT NOT NULL UNIQUE,
    sunshines REAL NOT NULL DEFAULT 0,
    created_time INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS solar_forge_users (
    issue_id TEXT NOT NULL REFERENCES solar_forges(issue_id),
    user_id TEXT NOT NULL,
    sunshines REAL NOT NULL DEFAULT 0,
    joined_at TEXT NOT NULL,
    PRIMARY KEY (issue_id, user_id)
);

-- ============================================================
-- Versions (patch-completion facts, owned by the roadmap)
-- ============================================================
CREATE TABLE IF NOT EXISTS versions (
    id TEXT PRIMARY KEY,
    galaxy_id TEXT NOT NULL,
    tag TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'planned' CHECK(status IN ('completed', 'active', 'planned')),
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS version_patches (
    version_id TEXT NOT NULL REFERENCES versions(id),
    patch_id TEXT NOT NULL,
    completed INTEGER NOT NULL DEFAULT 0,
    title TEXT NOT NULL DEFAULT '',
    position INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (version_id, patch_id)
);

-- ============================================================
-- Notifications (outbox)
-- ============================================================
CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL,
    dispatched_at TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_notifications_pending ON notifications(dispatched_at);

-- ============================================================
-- Audit Log
-- ============================================================
CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    ts TEXT DEFAULT (datetime('now')),
    action TEXT NOT NULL,
    actor TEXT,
    component TEXT,
    details TEXT
);

CREATE INDEX IF NOT EXISTS idx_audit_ts ON audit_log(ts);
CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_log(action);
"""

SCHEMA_VERSION = 1

DONATION_COLUMNS = (
    "id, user_id, galaxy_id, counter, initiate_tx_id, hyperpay_tx_id, sunshines_amount, "
    "spend_usd_amount, memo, issue_id, created_at, completed_at, expired_at, reward_applied_at"
)


def row_to_leg(row: sqlite3.Row) -> LegRecord:
    return LegRecord(
        id=str(row["id"]),
        leg_type=LegType(str(row["leg_type"])),
        leg_tx_id=str(row["leg_tx_id"]),
        counter=int(row["counter"]),
        user_id=str(row["user_id"]),
        galaxy_id=str(row["galaxy_id"]),
        received_at=iso_to_dt(str(row["received_at"])) or utc_now(),
        payload=json.loads(str(row["payload"])),
        payload_hash=str(row["payload_hash"]),
        donation_id=row["donation_id"],
        rejection=row["rejection"],
        prev_hash=row["prev_hash"],
        hash=str(row["hash"]),
    )


def row_to_donation(row: sqlite3.Row) -> Donation:
    return Donation(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        galaxy_id=str(row["galaxy_id"]),
        counter=int(row["counter"]),
        initiate_tx_id=row["initiate_tx_id"],
        hyperpay_tx_id=row["hyperpay_tx_id"],
        sunshines_amount=row["sunshines_amount"],
        spend_usd_amount=row["spend_usd_amount"],
        memo=row["memo"],
        issue_id=row["issue_id"],
        created_at=iso_to_dt(str(row["created_at"])) or utc_now(),
        completed_at=iso_to_dt(row["completed_at"]),
        expired_at=iso_to_dt(row["expired_at"]),
        reward_applied_at=iso_to_dt(row["reward_applied_at"]),
    )


@dataclass
class Database:
    """SQLite store: hash-chained leg ledger plus derived donation state."""

    db_path: Path
    busy_timeout_s: float = 5.0

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(
            self.db_path, timeout=self.busy_timeout_s, check_same_thread=False
        )
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._init_schema()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def _init_schema(self) -> None:
        with self._lock, self.conn:
            self.conn.executescript(SCHEMA)
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=FULL")
            self.conn.execute("PRAGMA foreign_keys=ON")
            self.conn.execute(
                "INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
            )

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction.

        Takes the write lock up front (``BEGIN IMMEDIATE``) so that a
        read-check-write sequence inside the block cannot interleave with
        another writer, in this process or another.
        """

        with self._lock:
            if self._depth:
                # Nested: join the outer transaction.
                self._depth += 1
                try:
                    yield self.conn
                finally:
                    self._depth -= 1
                return

            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                raise StorageUnavailableError(str(e)) from e
            self._depth = 1
            try:
                yield self.conn
            except sqlite3.OperationalError as e:
                self.conn.rollback()
                raise StorageUnavailableError(str(e)) from e
            except BaseException:
                self.conn.rollback()
                raise
            else:
                try:
                    self.conn.commit()
                except sqlite3.OperationalError as e:
                    self.conn.rollback()
                    raise StorageUnavailableError(str(e)) from e
            finally:
                self._depth = 0

    @contextmanager
    def snapshot(self) -> Iterator[sqlite3.Connection]:
        """Read transaction. Every SELECT inside sees the same committed state."""

        with self._lock:
            if self._depth:
                yield self.conn
                return

            try:
                self.conn.execute("BEGIN")
            except sqlite3.OperationalError as e:
                raise StorageUnavailableError(str(e)) from e
            self._depth = 1
            try:
                yield self.conn
            except sqlite3.OperationalError as e:
                raise StorageUnavailableError(str(e)) from e
            finally:
                self._depth = 0
                self.conn.rollback()

    def execute(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        """Single read statement under the lock."""

        with self._lock:
            try:
                return self.conn.execute(sql, params).fetchall()
            except sqlite3.OperationalError as e:
                raise StorageUnavailableError(str(e)) from e

    @staticmethod
    def _last_hash(conn: sqlite3.Connection) -> str | None:
        row = conn.execute("SELECT hash FROM leg_events ORDER BY rowid DESC LIMIT 1").fetchone()
        return None if row is None else str(row[0])

    def append_leg(
        self,
        *,
        leg_type: LegType,
        leg_tx_id: str,
        counter: int,
        user_id: str,
        galaxy_id: str,
        payload: dict[str, Any],
        received_at: datetime | None = None,
    ) -> tuple[LegRecord, bool]:
        """Append a single leg. Returns ``(record, created)``.

        Dedup semantics:
        - If leg_tx_id is new: insert.
        - If leg_tx_id exists with same payload_hash: idempotent (return existing leg).
        - If leg_tx_id exists with different payload_hash: conflict.
        """

        payload_canon = json.loads(canonical_json(payload))
        p_hash = payload_hash(payload_canon)
        ts = iso_to_dt(dt_to_iso(received_at or utc_now()))
        assert ts is not None

        with self.transaction() as conn:
            existing = conn.execute(
                "SELECT * FROM leg_events WHERE leg_tx_id = ?", (leg_tx_id,)
            ).fetchone()
            if existing is not None:
                if str(existing["payload_hash"]) != p_hash:
                    raise DedupeConflictError(
                        f"leg_tx_id conflict for {leg_tx_id}: payload changed"
                    )
                return row_to_leg(existing), False

            lid = str(uuid.uuid4())
            prev = self._last_hash(conn)
            h = compute_leg_hash(
                prev_hash=prev,
                leg_type=leg_type,
                leg_tx_id=leg_tx_id,
                payload=payload_canon,
                received_at=ts,
                leg_id=lid,
            )
            try:
                conn.execute(
                    """
                    INSERT INTO leg_events (
                        id, leg_type, leg_tx_id, counter, user_id, galaxy_id, received_at,
                        payload, payload_hash, donation_id, prev_hash, hash
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)
                    """,
                    (
                        lid,
                        str(leg_type),
                        leg_tx_id,
                        int(counter),
                        user_id,
                        galaxy_id,
                        dt_to_iso(ts),
                        canonical_json(payload_canon),
                        p_hash,
                        prev,
                        h,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise StoreError(str(e)) from e

        return (
            LegRecord(
                id=lid,
                leg_type=leg_type,
                leg_tx_id=leg_tx_id,
                counter=int(counter),
                user_id=user_id,
                galaxy_id=galaxy_id,
                received_at=ts,
                payload=payload_canon,
                payload_hash=p_hash,
                donation_id=None,
                prev_hash=prev,
                hash=h,
            ),
            True,
        )

    def verify_hash_chain(self, *, fast: bool = False, last_n: int = 2000) -> bool:
        """Verify the leg hash chain.

        fast=True verifies only the last N legs.
        """

        rows = self.execute(
            "SELECT id, leg_type, leg_tx_id, received_at, payload, prev_hash, hash "
            "FROM leg_events ORDER BY rowid ASC"
        )
        if fast and len(rows) > last_n:
            rows = rows[-last_n:]
            # For partial verification we trust the first row's prev_hash.
            prev = str(rows[0]["prev_hash"]) if rows[0]["prev_hash"] is not None else None
        else:
            prev = None

        for row in rows:
            received_at = iso_to_dt(str(row["received_at"]))
            assert received_at is not None
            expected = compute_leg_hash(
                prev_hash=prev,
                leg_type=LegType(str(row["leg_type"])),
                leg_tx_id=str(row["leg_tx_id"]),
                payload=json.loads(str(row["payload"])),
                received_at=received_at,
                leg_id=str(row["id"]),
            )
            if expected != str(row["hash"]) or (row["prev_hash"] or None) != prev:
                return False
            prev = expected
        return True
