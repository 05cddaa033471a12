"""forge.service

The donation service.

This class wires the components and owns the inbound contract. It is a
coordinator, not an implementor.

Pipeline per leg:
1) Validate the leg at the boundary
2) Append to the leg ledger (committed)
3) Merge under the triple's lock; completion applies the reward
4) Outbox rows ride along in the same transaction
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from forge.core.audit import AuditLogger
from forge.core.config import Config
from forge.core.database import Database
from forge.core.events import InitiateLeg, ProcessorLeg, validate_leg
from forge.core.models import Donation
from forge.core.notifications import NotificationDispatcher
from forge.core.time import utc_now
from forge.donations.ledger import AppendStatus, LegLedger
from forge.donations.queries import DonationQueries
from forge.donations.reconciler import DonationReconciler, Transition
from forge.donations.registry import CorrelationRegistry
from forge.donations.rewards import RewardConverter
from forge.donations.views import AggregationViews, UserDirectory, VersionSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LegOutcome:
    result: AppendStatus
    transition: Transition
    donation: Donation | None
    anomalies: tuple[str, ...] = ()

    @property
    def duplicate(self) -> bool:
        return self.result == AppendStatus.DUPLICATE


class DonationService:
    def __init__(
        self,
        config: Config,
        db: Database,
        *,
        user_directory: UserDirectory | None = None,
        version_source: VersionSource | None = None,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.db = db

        self.audit = AuditLogger(db)
        self.ledger = LegLedger(db, audit=self.audit)
        self.registry = CorrelationRegistry(db)
        self.rewards = RewardConverter(now_fn=now_fn)
        self.reconciler = DonationReconciler(
            db=db,
            config=config.reconciler,
            ledger=self.ledger,
            registry=self.registry,
            rewards=self.rewards,
            audit=self.audit,
            now_fn=now_fn,
        )
        self.views = AggregationViews(db, user_directory=user_directory, version_source=version_source)
        self.queries = DonationQueries(db, self.views)
        self.dispatcher = NotificationDispatcher(db, config.notifications)
        self._now = now_fn

    def notify_initiate_leg(
        self,
        user_id: str,
        galaxy_id: str,
        counter: int,
        tx_id: str,
        *,
        issue_id: str | None = None,
        spend_usd_amount: float | None = None,
        received_at: datetime | None = None,
    ) -> LegOutcome:
        return self.deliver(
            {
                "leg_type": "initiate",
                "leg_tx_id": tx_id,
                "user_id": user_id,
                "galaxy_id": galaxy_id,
                "counter": counter,
                "issue_id": issue_id,
                "spend_usd_amount": spend_usd_amount,
                "received_at": received_at or self._now(),
            }
        )

    def notify_processor_leg(
        self,
        user_id: str,
        galaxy_id: str,
        counter: int,
        tx_id: str,
        spend_usd_amount: float,
        sunshines_amount: float,
        memo: str | None = None,
        *,
        issue_id: str | None = None,
        received_at: datetime | None = None,
    ) -> LegOutcome:
        return self.deliver(
            {
                "leg_type": "processor",
                "leg_tx_id": tx_id,
                "user_id": user_id,
                "galaxy_id": galaxy_id,
                "counter": counter,
                "issue_id": issue_id,
                "spend_usd_amount": spend_usd_amount,
                "sunshines_amount": sunshines_amount,
                "memo": memo,
                "received_at": received_at or self._now(),
            }
        )

    def deliver(self, raw: InitiateLeg | ProcessorLeg | dict[str, Any]) -> LegOutcome:
        """Append then merge one leg delivery.

        Raises:
            MalformedLegError: the payload failed validation.
            CorrelationConflictError: counter bound to another live donation.
            CorrelationAnomalyError: the leg contradicts recorded state.
            StorageUnavailableError: nothing is assumed done; redeliver.
        """

        leg = raw if isinstance(raw, InitiateLeg | ProcessorLeg) else validate_leg(raw)
        appended = self.ledger.append_leg(leg)
        outcome = self.reconciler.reconcile(leg)
        return LegOutcome(
            result=appended.status,
            transition=outcome.transition,
            donation=outcome.donation,
            anomalies=outcome.anomalies,
        )

    def expire_stale(self, now: datetime | None = None) -> list[str]:
        return self.reconciler.expire_stale(now)

    def recover(self) -> int:
        return self.reconciler.recover()

    def dispatch_notifications(self) -> int:
        return self.dispatcher.dispatch_pending()

    def run_maintenance(self) -> dict[str, int]:
        """One background pass: expire, then push the outbox."""

        expired = self.expire_stale()
        dispatched = self.dispatch_notifications()
        if expired or dispatched:
            logger.info("maintenance_pass", extra={"expired": len(expired), "dispatched": dispatched})
        return {"expired": len(expired), "dispatched": dispatched}
