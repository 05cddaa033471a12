"""forge.donations.rewards

Reward Converter: sunshines to stars, and the balance and forge writes that
follow a completed donation.

``reward_applied_at`` on the donation row is the at-most-once marker. The
check-and-set and every increment share the caller's transaction.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from forge import SUNSHINES_PER_STAR
from forge.core.events import EventType, RewardAppliedPayload
from forge.core.exceptions import DonationError
from forge.core.metrics import REGISTRY, REWARDS_APPLIED
from forge.core.models import Balance, Donation, DonationStatus
from forge.core.notifications import enqueue
from forge.core.time import dt_to_iso, iso_to_dt, unix_seconds, utc_now

logger = logging.getLogger(__name__)


def to_stars(sunshines: float) -> float:
    """Convert sunshines to stars. No rounding; precision is the caller's concern."""

    return float(sunshines) / SUNSHINES_PER_STAR


@dataclass(frozen=True, slots=True)
class RewardApplication:
    donation_id: str
    sunshines: float
    stars: float
    issue_id: str | None
    user_balance: Balance
    galaxy_balance: Balance


def read_balance(conn: sqlite3.Connection, owner_type: str, owner_id: str) -> Balance:
    table, key = ("user_balances", "user_id") if owner_type == "user" else ("galaxy_balances", "galaxy_id")
    row = conn.execute(
        f"SELECT sunshines, stars, donations, updated_at FROM {table} WHERE {key} = ?", (owner_id,)
    ).fetchone()
    if row is None:
        return Balance(owner_type=owner_type, owner_id=owner_id)  # type: ignore[arg-type]
    return Balance(
        owner_type=owner_type,  # type: ignore[arg-type]
        owner_id=owner_id,
        sunshines=float(row["sunshines"]),
        stars=float(row["stars"]),
        donations=int(row["donations"]),
        updated_at=iso_to_dt(row["updated_at"]),
    )


class RewardConverter:
    def __init__(self, *, now_fn: Callable[[], datetime] = utc_now) -> None:
        self._now = now_fn

    def apply(self, conn: sqlite3.Connection, donation: Donation) -> RewardApplication | None:
        """Credit a completed donation exactly once.

        Returns None when the reward was already applied.
        """

        if donation.status != DonationStatus.COMPLETED:
            raise DonationError(f"donation {donation.id} is {donation.status}, not completed")

        now = self._now()
        now_iso = dt_to_iso(now)
        cur = conn.execute(
            "UPDATE donations SET reward_applied_at = ? "
            "WHERE id = ? AND reward_applied_at IS NULL AND expired_at IS NULL "
            "AND initiate_tx_id IS NOT NULL AND hyperpay_tx_id IS NOT NULL",
            (now_iso, donation.id),
        )
        if cur.rowcount != 1:
            logger.debug("reward_already_applied", extra={"donation_id": donation.id})
            return None

        sunshines = float(donation.sunshines_amount or 0.0)
        stars = to_stars(sunshines)

        for table, key, owner_id in (
            ("user_balances", "user_id", donation.user_id),
            ("galaxy_balances", "galaxy_id", donation.galaxy_id),
        ):
            conn.execute(
                f"""
                INSERT INTO {table} ({key}, sunshines, stars, donations, updated_at)
                VALUES (?, ?, ?, 1, ?)
                ON CONFLICT({key}) DO UPDATE SET
                    sunshines = sunshines + excluded.sunshines,
                    stars = stars + excluded.stars,
                    donations = donations + 1,
                    updated_at = excluded.updated_at
                """,
                (owner_id, sunshines, stars, now_iso),
            )

        if donation.issue_id:
            self._credit_forge(conn, donation.issue_id, donation.user_id, sunshines, now)

        user_balance = read_balance(conn, "user", donation.user_id)
        galaxy_balance = read_balance(conn, "galaxy", donation.galaxy_id)

        enqueue(
            conn,
            EventType.REWARD_APPLIED_V1,
            RewardAppliedPayload(
                donation_id=donation.id,
                user_id=donation.user_id,
                galaxy_id=donation.galaxy_id,
                sunshines=sunshines,
                stars=stars,
                issue_id=donation.issue_id,
                user_sunshines_total=user_balance.sunshines,
                user_stars_total=user_balance.stars,
                galaxy_sunshines_total=galaxy_balance.sunshines,
                galaxy_stars_total=galaxy_balance.stars,
            ),
        )

        REGISTRY.counter(REWARDS_APPLIED).inc()
        logger.info(
            "reward_applied",
            extra={
                "donation_id": donation.id,
                "user_id": donation.user_id,
                "galaxy_id": donation.galaxy_id,
                "sunshines": sunshines,
                "stars": stars,
            },
        )
        return RewardApplication(
            donation_id=donation.id,
            sunshines=sunshines,
            stars=stars,
            issue_id=donation.issue_id,
            user_balance=user_balance,
            galaxy_balance=galaxy_balance,
        )

    @staticmethod
    def _credit_forge(
        conn: sqlite3.Connection, issue_id: str, user_id: str, sunshines: float, now: datetime
    ) -> None:
        conn.execute(
            """
            INSERT INTO solar_forges (id, solar_forge_type, issue_id, sunshines, created_time)
            VALUES (?, 'issue', ?, ?, ?)
            ON CONFLICT(issue_id) DO UPDATE SET sunshines = sunshines + excluded.sunshines
            """,
            (str(uuid.uuid4()), issue_id, sunshines, unix_seconds(now)),
        )
        # Membership is a set: one row per (issue, user), contributions accumulate.
        conn.execute(
            """
            INSERT INTO solar_forge_users (issue_id, user_id, sunshines, joined_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(issue_id, user_id) DO UPDATE SET sunshines = sunshines + excluded.sunshines
            """,
            (issue_id, user_id, sunshines, dt_to_iso(now)),
        )
