"""forge.donations.registry

Correlation Key Registry.

``(user_id, galaxy_id, counter)`` maps to at most one live donation. The
partial unique index on ``donations`` is the persisted guarantee; the keyed
locks here serialize merge work for one triple inside this process.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from forge.core.database import DONATION_COLUMNS, Database, row_to_donation
from forge.core.events import InitiateLeg, LegType, ProcessorLeg
from forge.core.exceptions import CorrelationConflictError, StoreError
from forge.core.models import Donation
from forge.core.time import dt_to_iso

logger = logging.getLogger(__name__)

Triple = tuple[str, str, int]

_LIVE = "expired_at IS NULL AND (initiate_tx_id IS NULL OR hyperpay_tx_id IS NULL)"
_COMPLETED = "expired_at IS NULL AND initiate_tx_id IS NOT NULL AND hyperpay_tx_id IS NOT NULL"


@dataclass(frozen=True, slots=True)
class Reservation:
    donation: Donation
    created: bool


class KeyedLocks:
    """One lock per key, dropped when nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Triple, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: Triple) -> Iterator[None]:
        with self._guard:
            lock, refs = self._locks.get(key, (threading.Lock(), 0))
            self._locks[key] = (lock, refs + 1)
        try:
            with lock:
                yield
        finally:
            with self._guard:
                lock, refs = self._locks[key]
                if refs <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, refs - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class CorrelationRegistry:
    def __init__(self, db: Database) -> None:
        self._db = db
        self._locks = KeyedLocks()

    def lock_for(self, user_id: str, galaxy_id: str, counter: int):
        """Serialization point for every merge or expiry on the triple."""

        return self._locks.hold((user_id, galaxy_id, int(counter)))

    @staticmethod
    def get(conn: sqlite3.Connection, donation_id: str) -> Donation | None:
        row = conn.execute(
            f"SELECT {DONATION_COLUMNS} FROM donations WHERE id = ?", (donation_id,)
        ).fetchone()
        return None if row is None else row_to_donation(row)

    @staticmethod
    def find_live(conn: sqlite3.Connection, user_id: str, galaxy_id: str, counter: int) -> Donation | None:
        row = conn.execute(
            f"SELECT {DONATION_COLUMNS} FROM donations "
            f"WHERE user_id = ? AND galaxy_id = ? AND counter = ? AND {_LIVE}",
            (user_id, galaxy_id, int(counter)),
        ).fetchone()
        return None if row is None else row_to_donation(row)

    @staticmethod
    def find_completed(conn: sqlite3.Connection, user_id: str, galaxy_id: str, counter: int) -> Donation | None:
        row = conn.execute(
            f"SELECT {DONATION_COLUMNS} FROM donations "
            f"WHERE user_id = ? AND galaxy_id = ? AND counter = ? AND {_COMPLETED} "
            "ORDER BY rowid DESC LIMIT 1",
            (user_id, galaxy_id, int(counter)),
        ).fetchone()
        return None if row is None else row_to_donation(row)

    def reserve(self, conn: sqlite3.Connection, leg: InitiateLeg | ProcessorLeg) -> Reservation:
        """Bind the leg's triple to a live donation, opening one if none exists.

        Raises:
            CorrelationConflictError: the live donation already holds a
                different transaction for this leg type.
        """

        user_id, galaxy_id, counter = leg.triple
        live = self.find_live(conn, user_id, galaxy_id, counter)
        if live is not None:
            recorded = live.tx_id_for(LegType(leg.leg_type))
            if recorded is not None and recorded != leg.leg_tx_id:
                raise CorrelationConflictError(
                    f"counter {counter} already bound to donation {live.id}",
                    user_id=user_id,
                    galaxy_id=galaxy_id,
                    counter=counter,
                    donation_id=live.id,
                )
            return Reservation(donation=live, created=False)

        donation_id = str(uuid.uuid4())
        is_initiate = leg.leg_type == LegType.INITIATE
        try:
            conn.execute(
                """
                INSERT INTO donations (
                    id, user_id, galaxy_id, counter, initiate_tx_id, hyperpay_tx_id, issue_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    donation_id,
                    user_id,
                    galaxy_id,
                    int(counter),
                    leg.leg_tx_id if is_initiate else None,
                    None if is_initiate else leg.leg_tx_id,
                    leg.issue_id,
                    dt_to_iso(leg.received_at),
                ),
            )
        except sqlite3.IntegrityError as e:
            raise StoreError(f"live triple insert failed: {e}") from e

        created = self.get(conn, donation_id)
        if created is None:
            raise StoreError("inserted donation not visible")
        logger.debug(
            "donation_reserved",
            extra={"donation_id": donation_id, "user_id": user_id, "galaxy_id": galaxy_id, "counter": counter},
        )
        return Reservation(donation=created, created=True)
