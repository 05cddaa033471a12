"""forge.donations.ledger

Leg Ledger.

Every inbound leg is written here, durably, before any donation state moves.
``leg_tx_id`` is the dedupe key; the same id with a different payload is an
integrity anomaly, not a retry.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from enum import StrEnum

from forge.core.audit import AuditLogger
from forge.core.database import Database, row_to_leg
from forge.core.events import (
    CorrelationAnomalyPayload,
    EventType,
    InitiateLeg,
    LegType,
    ProcessorLeg,
    validate_leg,
)
from forge.core.exceptions import CorrelationAnomalyError, DedupeConflictError
from forge.core.metrics import CORRELATION_ANOMALIES, LEGS_APPENDED, LEGS_DUPLICATE, REGISTRY
from forge.core.models import LegRecord
from forge.core.notifications import enqueue
from forge.core.time import dt_to_iso

logger = logging.getLogger(__name__)


class AppendStatus(StrEnum):
    APPENDED = "appended"
    DUPLICATE = "duplicate"


@dataclass(frozen=True, slots=True)
class AppendResult:
    status: AppendStatus
    leg: LegRecord

    @property
    def duplicate(self) -> bool:
        return self.status == AppendStatus.DUPLICATE


class LegLedger:
    def __init__(self, db: Database, audit: AuditLogger | None = None) -> None:
        self._db = db
        self._audit = audit or AuditLogger(db)

    def append_leg(self, event: InitiateLeg | ProcessorLeg) -> AppendResult:
        """Durably record one delivery of a leg.

        Raises:
            CorrelationAnomalyError: ``leg_tx_id`` already recorded with a
                different payload.
        """

        user_id, galaxy_id, counter = event.triple
        try:
            record, created = self._db.append_leg(
                leg_type=LegType(event.leg_type),
                leg_tx_id=event.leg_tx_id,
                counter=counter,
                user_id=user_id,
                galaxy_id=galaxy_id,
                payload=event.content(),
                received_at=event.received_at,
            )
        except DedupeConflictError as e:
            self._record_payload_anomaly(event, str(e))
            raise CorrelationAnomalyError(
                str(e), kind="payload_mismatch", leg_tx_id=event.leg_tx_id
            ) from e

        if not created:
            REGISTRY.counter(LEGS_DUPLICATE).inc()
            logger.info(
                "leg_duplicate",
                extra={"leg_type": str(event.leg_type), "leg_tx_id": event.leg_tx_id},
            )
            return AppendResult(status=AppendStatus.DUPLICATE, leg=record)

        REGISTRY.counter(LEGS_APPENDED).inc()
        logger.debug(
            "leg_appended",
            extra={"leg_type": str(event.leg_type), "leg_tx_id": event.leg_tx_id, "hash": record.hash},
        )
        return AppendResult(status=AppendStatus.APPENDED, leg=record)

    def _record_payload_anomaly(self, event: InitiateLeg | ProcessorLeg, detail: str) -> None:
        user_id, galaxy_id, counter = event.triple
        payload = CorrelationAnomalyPayload(
            kind="payload_mismatch",
            leg_type=LegType(event.leg_type),
            leg_tx_id=event.leg_tx_id,
            user_id=user_id,
            galaxy_id=galaxy_id,
            counter=counter,
            detail=detail,
        )
        with self._db.transaction() as conn:
            self._audit.log_action(
                "correlation_anomaly", "ledger", payload.model_dump(mode="json"), conn=conn
            )
            enqueue(conn, EventType.CORRELATION_ANOMALY_V1, payload)
        REGISTRY.counter(CORRELATION_ANOMALIES).inc()
        logger.error(
            "correlation_anomaly",
            extra={"kind": "payload_mismatch", "leg_tx_id": event.leg_tx_id},
        )

    # -----------------
    # Merge bookkeeping
    # -----------------

    @staticmethod
    def get(conn: sqlite3.Connection, leg_tx_id: str) -> LegRecord | None:
        row = conn.execute("SELECT * FROM leg_events WHERE leg_tx_id = ?", (leg_tx_id,)).fetchone()
        return None if row is None else row_to_leg(row)

    @staticmethod
    def mark_reconciled(conn: sqlite3.Connection, leg_tx_id: str, donation_id: str) -> None:
        conn.execute(
            "UPDATE leg_events SET donation_id = ? WHERE leg_tx_id = ? AND donation_id IS NULL",
            (donation_id, leg_tx_id),
        )

    @staticmethod
    def mark_rejected(conn: sqlite3.Connection, leg_tx_id: str, reason: str) -> None:
        conn.execute(
            "UPDATE leg_events SET rejection = ? WHERE leg_tx_id = ? AND donation_id IS NULL",
            (reason, leg_tx_id),
        )

    @staticmethod
    def legs_for_donation(conn: sqlite3.Connection, donation_id: str) -> list[LegRecord]:
        rows = conn.execute(
            "SELECT * FROM leg_events WHERE donation_id = ? ORDER BY rowid ASC", (donation_id,)
        ).fetchall()
        return [row_to_leg(r) for r in rows]

    def unreconciled(self, limit: int = 1000) -> list[LegRecord]:
        """Legs appended but never merged or rejected, oldest first."""

        rows = self._db.execute(
            "SELECT * FROM leg_events WHERE donation_id IS NULL AND rejection IS NULL "
            "ORDER BY rowid ASC LIMIT ?",
            (int(limit),),
        )
        return [row_to_leg(r) for r in rows]

    def verify_chain(self, *, fast: bool = False) -> bool:
        return self._db.verify_hash_chain(fast=fast)

    @staticmethod
    def to_event(record: LegRecord) -> InitiateLeg | ProcessorLeg:
        """Rebuild the leg variant a record was appended from."""

        return validate_leg({**record.payload, "received_at": dt_to_iso(record.received_at)})
