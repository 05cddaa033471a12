"""forge.donations.reconciler

Donation Reconciler: the state machine.

    (none) --initiate--> pending-processor --processor--> completed
    (none) --processor--> pending-initiate --initiate--> completed
    pending-* --window elapsed--> expired

Every transition for a triple happens under that triple's lock, inside one
``BEGIN IMMEDIATE`` transaction, as a compare-and-swap ``UPDATE``. Completion,
reward, ledger bookkeeping and the outbox row commit together.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum

from forge.core.audit import AuditLogger
from forge.core.config import ReconcilerConfig
from forge.core.database import Database
from forge.core.events import (
    CorrelationAnomalyPayload,
    DonationCompletedPayload,
    DonationExpiredPayload,
    DonationPendingPayload,
    EventType,
    InitiateLeg,
    LegType,
    ProcessorLeg,
)
from forge.core.exceptions import CorrelationAnomalyError, CorrelationConflictError, StoreError
from forge.core.metrics import (
    CORRELATION_ANOMALIES,
    CORRELATION_CONFLICTS,
    DONATIONS_COMPLETED,
    DONATIONS_EXPIRED,
    REGISTRY,
)
from forge.core.models import Donation, DonationStatus
from forge.core.notifications import enqueue
from forge.core.time import dt_to_iso, parse_dt, utc_now
from forge.donations.ledger import LegLedger
from forge.donations.registry import CorrelationRegistry
from forge.donations.rewards import RewardApplication, RewardConverter

logger = logging.getLogger(__name__)

# Column each leg type fills on the donation row.
_TX_COLUMN = {LegType.INITIATE: "initiate_tx_id", LegType.PROCESSOR: "hyperpay_tx_id"}

REJECTED_CONFLICT = "correlation_conflict"
REJECTED_TX_MISMATCH = "tx_mismatch"


class Transition(StrEnum):
    CREATED = "created"
    COMPLETED = "completed"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class ReconcileOutcome:
    donation: Donation | None
    transition: Transition
    reward: RewardApplication | None = None
    anomalies: tuple[str, ...] = ()
    error: CorrelationConflictError | CorrelationAnomalyError | None = field(default=None, compare=False)


class DonationReconciler:
    def __init__(
        self,
        *,
        db: Database,
        config: ReconcilerConfig,
        ledger: LegLedger,
        registry: CorrelationRegistry,
        rewards: RewardConverter,
        audit: AuditLogger | None = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db = db
        self._config = config
        self._ledger = ledger
        self._registry = registry
        self._rewards = rewards
        self._audit = audit or AuditLogger(db)
        self._now = now_fn

    @property
    def expiry_window(self) -> timedelta:
        return timedelta(seconds=self._config.expiry_window_seconds)

    # -----------------
    # Merge
    # -----------------

    def reconcile(self, leg: InitiateLeg | ProcessorLeg) -> ReconcileOutcome:
        """Merge an appended leg into donation state.

        Raises:
            CorrelationConflictError: live donation holds another tx for this leg type.
            CorrelationAnomalyError: completed donation holds another tx for this leg type.
            StoreError: the leg was never appended, or the store failed.
        """

        with self._registry.lock_for(*leg.triple):
            with self._db.transaction() as conn:
                outcome = self._merge(conn, leg)

        if outcome.error is not None:
            raise outcome.error
        if outcome.transition == Transition.COMPLETED:
            REGISTRY.counter(DONATIONS_COMPLETED).inc()
            assert outcome.donation is not None
            logger.info(
                "donation_completed",
                extra={
                    "donation_id": outcome.donation.id,
                    "user_id": outcome.donation.user_id,
                    "galaxy_id": outcome.donation.galaxy_id,
                    "counter": outcome.donation.counter,
                },
            )
        return outcome

    def _merge(self, conn: sqlite3.Connection, leg: InitiateLeg | ProcessorLeg) -> ReconcileOutcome:
        record = self._ledger.get(conn, leg.leg_tx_id)
        if record is None:
            raise StoreError(f"leg {leg.leg_tx_id} must be appended before it is merged")

        if record.rejection is not None:
            return ReconcileOutcome(
                donation=None,
                transition=Transition.REJECTED,
                error=self._rejection_error(leg, record.rejection),
            )
        if record.donation_id is not None:
            return ReconcileOutcome(
                donation=self._registry.get(conn, record.donation_id),
                transition=Transition.DUPLICATE,
            )

        user_id, galaxy_id, counter = leg.triple
        leg_type = LegType(leg.leg_type)

        # Completed counters stay bound; only expiry frees one.
        if self._registry.find_live(conn, user_id, galaxy_id, counter) is None:
            completed = self._registry.find_completed(conn, user_id, galaxy_id, counter)
            if completed is not None:
                if completed.tx_id_for(leg_type) == leg.leg_tx_id:
                    self._ledger.mark_reconciled(conn, leg.leg_tx_id, completed.id)
                    return ReconcileOutcome(donation=completed, transition=Transition.DUPLICATE)
                return self._reject_tx_mismatch(conn, leg, completed)

        try:
            reservation = self._registry.reserve(conn, leg)
        except CorrelationConflictError as e:
            return self._reject_conflict(conn, leg, e)

        donation = reservation.donation
        if reservation.created:
            self._ledger.mark_reconciled(conn, leg.leg_tx_id, donation.id)
            self._note_leg_after_expiry(conn, leg, donation)
            enqueue(
                conn,
                EventType.DONATION_PENDING_V1,
                DonationPendingPayload(
                    donation_id=donation.id,
                    user_id=user_id,
                    galaxy_id=galaxy_id,
                    counter=counter,
                    status=str(donation.status),
                ),
            )
            logger.info(
                "donation_pending",
                extra={"donation_id": donation.id, "status": str(donation.status), "leg_tx_id": leg.leg_tx_id},
            )
            return ReconcileOutcome(donation=donation, transition=Transition.CREATED)

        if donation.tx_id_for(leg_type) == leg.leg_tx_id:
            self._ledger.mark_reconciled(conn, leg.leg_tx_id, donation.id)
            return ReconcileOutcome(donation=donation, transition=Transition.DUPLICATE)

        return self._complete(conn, leg, donation)

    def _complete(
        self, conn: sqlite3.Connection, leg: InitiateLeg | ProcessorLeg, pending: Donation
    ) -> ReconcileOutcome:
        # The first leg is already linked to the pending row.
        linked = [self._ledger.to_event(r) for r in self._ledger.legs_for_donation(conn, pending.id)]
        legs = [*linked, leg]
        initiate = next((x for x in legs if isinstance(x, InitiateLeg)), None)
        processor = next((x for x in legs if isinstance(x, ProcessorLeg)), None)
        if initiate is None or processor is None:
            raise StoreError(f"donation {pending.id} cannot complete without both legs")

        anomalies: list[str] = []
        if initiate.spend_usd_amount is not None and initiate.spend_usd_amount != processor.spend_usd_amount:
            anomalies.append("amount_mismatch")
            self._record_anomaly(
                conn,
                CorrelationAnomalyPayload(
                    kind="amount_mismatch",
                    leg_type=LegType.INITIATE,
                    leg_tx_id=initiate.leg_tx_id,
                    user_id=pending.user_id,
                    galaxy_id=pending.galaxy_id,
                    counter=pending.counter,
                    donation_id=pending.id,
                    detail=(
                        f"initiate spend_usd_amount={initiate.spend_usd_amount} "
                        f"processor spend_usd_amount={processor.spend_usd_amount}"
                    ),
                ),
            )

        column = _TX_COLUMN[LegType(leg.leg_type)]
        cur = conn.execute(
            f"""
            UPDATE donations SET
                {column} = ?,
                sunshines_amount = ?,
                spend_usd_amount = ?,
                memo = ?,
                issue_id = ?,
                completed_at = ?
            WHERE id = ? AND {column} IS NULL AND expired_at IS NULL
            """,
            (
                leg.leg_tx_id,
                processor.sunshines_amount,
                processor.spend_usd_amount,
                processor.memo,
                processor.issue_id or initiate.issue_id,
                dt_to_iso(self._now()),
                pending.id,
            ),
        )
        if cur.rowcount != 1:
            # Lost the swap: whoever won already finished the job.
            current = self._registry.get(conn, pending.id)
            if current is not None and current.status == DonationStatus.COMPLETED:
                return ReconcileOutcome(donation=current, transition=Transition.DUPLICATE)
            raise StoreError(f"donation {pending.id} changed state during merge")

        self._ledger.mark_reconciled(conn, leg.leg_tx_id, pending.id)
        completed = self._registry.get(conn, pending.id)
        assert completed is not None

        enqueue(
            conn,
            EventType.DONATION_COMPLETED_V1,
            DonationCompletedPayload(
                donation_id=completed.id,
                user_id=completed.user_id,
                galaxy_id=completed.galaxy_id,
                counter=completed.counter,
                initiate_tx_id=str(completed.initiate_tx_id),
                hyperpay_tx_id=str(completed.hyperpay_tx_id),
                sunshines_amount=float(completed.sunshines_amount or 0.0),
                spend_usd_amount=float(completed.spend_usd_amount or 0.0),
                issue_id=completed.issue_id,
            ),
        )
        reward = self._rewards.apply(conn, completed)
        completed = self._registry.get(conn, pending.id) or completed
        return ReconcileOutcome(
            donation=completed,
            transition=Transition.COMPLETED,
            reward=reward,
            anomalies=tuple(anomalies),
        )

    # -----------------
    # Rejections and anomalies
    # -----------------

    def _reject_conflict(
        self, conn: sqlite3.Connection, leg: InitiateLeg | ProcessorLeg, error: CorrelationConflictError
    ) -> ReconcileOutcome:
        self._ledger.mark_rejected(conn, leg.leg_tx_id, REJECTED_CONFLICT)
        self._audit.log_action(
            "correlation_conflict",
            "reconciler",
            {
                "leg_type": str(leg.leg_type),
                "leg_tx_id": leg.leg_tx_id,
                "user_id": error.user_id,
                "galaxy_id": error.galaxy_id,
                "counter": error.counter,
                "donation_id": error.donation_id,
            },
            conn=conn,
        )
        REGISTRY.counter(CORRELATION_CONFLICTS).inc()
        logger.warning(
            "correlation_conflict",
            extra={"leg_tx_id": leg.leg_tx_id, "counter": error.counter, "donation_id": error.donation_id},
        )
        return ReconcileOutcome(donation=None, transition=Transition.REJECTED, error=error)

    def _reject_tx_mismatch(
        self, conn: sqlite3.Connection, leg: InitiateLeg | ProcessorLeg, completed: Donation
    ) -> ReconcileOutcome:
        leg_type = LegType(leg.leg_type)
        self._ledger.mark_rejected(conn, leg.leg_tx_id, REJECTED_TX_MISMATCH)
        self._record_anomaly(
            conn,
            CorrelationAnomalyPayload(
                kind="tx_mismatch",
                leg_type=leg_type,
                leg_tx_id=leg.leg_tx_id,
                user_id=completed.user_id,
                galaxy_id=completed.galaxy_id,
                counter=completed.counter,
                donation_id=completed.id,
                detail=f"completed with {leg_type} tx {completed.tx_id_for(leg_type)}",
            ),
        )
        return ReconcileOutcome(
            donation=None,
            transition=Transition.REJECTED,
            error=self._rejection_error(leg, REJECTED_TX_MISMATCH, donation_id=completed.id),
        )

    def _record_anomaly(self, conn: sqlite3.Connection, payload: CorrelationAnomalyPayload) -> None:
        self._audit.log_action("correlation_anomaly", "reconciler", payload.model_dump(mode="json"), conn=conn)
        enqueue(conn, EventType.CORRELATION_ANOMALY_V1, payload)
        REGISTRY.counter(CORRELATION_ANOMALIES).inc()
        logger.error(
            "correlation_anomaly",
            extra={"kind": payload.kind, "leg_tx_id": payload.leg_tx_id, "donation_id": payload.donation_id},
        )

    @staticmethod
    def _rejection_error(
        leg: InitiateLeg | ProcessorLeg, reason: str, *, donation_id: str | None = None
    ) -> CorrelationConflictError | CorrelationAnomalyError:
        user_id, galaxy_id, counter = leg.triple
        if reason == REJECTED_CONFLICT:
            return CorrelationConflictError(
                f"counter {counter} already bound to another {leg.leg_type} transaction",
                user_id=user_id,
                galaxy_id=galaxy_id,
                counter=counter,
                donation_id=donation_id,
            )
        return CorrelationAnomalyError(
            f"counter {counter} already completed with a different {leg.leg_type} transaction",
            kind=reason,
            leg_tx_id=leg.leg_tx_id,
            donation_id=donation_id,
        )

    def _note_leg_after_expiry(
        self, conn: sqlite3.Connection, leg: InitiateLeg | ProcessorLeg, created: Donation
    ) -> None:
        expired = conn.execute(
            "SELECT id FROM donations WHERE user_id = ? AND galaxy_id = ? AND counter = ? "
            "AND expired_at IS NOT NULL AND id != ? ORDER BY rowid DESC LIMIT 1",
            (created.user_id, created.galaxy_id, created.counter, created.id),
        ).fetchone()
        if expired is None:
            return
        details = {
            "leg_type": str(leg.leg_type),
            "leg_tx_id": leg.leg_tx_id,
            "expired_donation_id": str(expired["id"]),
            "donation_id": created.id,
        }
        self._audit.log_action("leg_after_expiry", "reconciler", details, conn=conn)
        logger.warning("leg_after_expiry", extra=details)

    # -----------------
    # Expiry
    # -----------------

    def expire_stale(self, now: datetime | None = None) -> list[str]:
        """Expire pending donations older than the window. Returns expired ids."""

        now = now or self._now()
        cutoff = now - self.expiry_window
        rows = self._db.execute(
            "SELECT id, user_id, galaxy_id, counter, created_at FROM donations "
            "WHERE expired_at IS NULL AND (initiate_tx_id IS NULL OR hyperpay_tx_id IS NULL) "
            "ORDER BY created_at ASC"
        )

        expired: list[str] = []
        for row in rows:
            if parse_dt(str(row["created_at"])) >= cutoff:
                continue
            with self._registry.lock_for(str(row["user_id"]), str(row["galaxy_id"]), int(row["counter"])):
                with self._db.transaction() as conn:
                    before = self._registry.get(conn, str(row["id"]))
                    if before is None or before.status.terminal:
                        continue
                    cur = conn.execute(
                        "UPDATE donations SET expired_at = ? "
                        "WHERE id = ? AND expired_at IS NULL "
                        "AND (initiate_tx_id IS NULL OR hyperpay_tx_id IS NULL)",
                        (dt_to_iso(now), before.id),
                    )
                    if cur.rowcount != 1:
                        continue
                    enqueue(
                        conn,
                        EventType.DONATION_EXPIRED_V1,
                        DonationExpiredPayload(
                            donation_id=before.id,
                            user_id=before.user_id,
                            galaxy_id=before.galaxy_id,
                            counter=before.counter,
                            status_before=str(before.status),
                        ),
                    )
            expired.append(before.id)
            REGISTRY.counter(DONATIONS_EXPIRED).inc()
            logger.info(
                "donation_expired",
                extra={"donation_id": before.id, "status_before": str(before.status)},
            )
        return expired

    # -----------------
    # Recovery
    # -----------------

    def recover(self) -> int:
        """Merge legs appended but never reconciled. Returns how many were merged."""

        merged = 0
        for record in self._ledger.unreconciled():
            try:
                self.reconcile(self._ledger.to_event(record))
            except (CorrelationConflictError, CorrelationAnomalyError) as e:
                logger.warning("recover_leg_rejected", extra={"leg_tx_id": record.leg_tx_id, "error": str(e)})
                continue
            merged += 1
        if merged:
            logger.info("recover_complete", extra={"merged": merged})
        return merged
