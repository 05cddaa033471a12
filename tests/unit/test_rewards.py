from __future__ import annotations

from datetime import UTC, datetime

import pytest

from forge.core.config import Config
from forge.core.database import Database
from forge.core.exceptions import DonationError
from forge.core.models import Donation
from forge.core.notifications import list_notifications
from forge.core.time import utc_now
from forge.donations.rewards import RewardConverter, to_stars
from forge.service import DonationService


def test_stars_are_sunshines_over_180_without_rounding() -> None:
    assert to_stars(1800) == 10.0
    assert to_stars(90) == 0.5
    assert to_stars(1) == 1 / 180
    assert to_stars(0) == 0.0


def _donate(svc: DonationService, user: str, counter: int, sunshines: float, issue_id: str | None = None) -> None:
    svc.notify_initiate_leg(user, "g1", counter, f"init-{user}-{counter}")
    svc.notify_processor_leg(user, "g1", counter, f"proc-{user}-{counter}", 1.0, sunshines, issue_id=issue_id)


def test_aggregate_stars_equal_sum_of_conversions(service: DonationService) -> None:
    amounts = [100.0, 250.0, 7.0]
    for i, amount in enumerate(amounts):
        _donate(service, "u1", i, amount)

    bal = service.queries.get_user_balance("u1")
    assert bal.sunshines == sum(amounts)
    assert bal.stars == pytest.approx(sum(to_stars(a) for a in amounts))
    assert bal.donations == 3
    assert service.queries.get_galaxy_balance("g1").stars == pytest.approx(bal.stars)


def test_forge_membership_is_a_set(service: DonationService, db: Database) -> None:
    _donate(service, "u1", 1, 360.0, issue_id="iss-1")
    _donate(service, "u1", 2, 540.0, issue_id="iss-1")

    members = db.execute("SELECT user_id, sunshines FROM solar_forge_users WHERE issue_id = 'iss-1'")
    assert service.queries.get_solar_forge("iss-1").sunshines == 900.0
    assert [(m["user_id"], m["sunshines"]) for m in members] == [("u1", 900.0)]


def test_no_issue_means_no_forge_row(service: DonationService, db: Database) -> None:
    _donate(service, "u1", 1, 360.0)
    assert db.execute("SELECT COUNT(*) AS n FROM solar_forges")[0]["n"] == 0


def test_reward_notification_carries_running_totals(service: DonationService) -> None:
    _donate(service, "u1", 1, 180.0)
    _donate(service, "u1", 2, 360.0)

    rewards = [n for n in list_notifications(service.db) if n.type == "reward.applied.v1"]
    assert [n.payload["stars"] for n in rewards] == [1.0, 2.0]
    assert rewards[-1].payload["user_stars_total"] == 3.0
    assert rewards[-1].payload["galaxy_sunshines_total"] == 540.0


def test_apply_refuses_incomplete_donation(db: Database) -> None:
    pending = Donation(id="d1", user_id="u1", galaxy_id="g1", counter=1, initiate_tx_id="txA", created_at=utc_now())
    with pytest.raises(DonationError), db.transaction() as conn:
        RewardConverter().apply(conn, pending)


def test_reward_uses_the_service_clock(test_config: Config, db: Database) -> None:
    frozen = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
    svc = DonationService(test_config, db, now_fn=lambda: frozen)
    svc.notify_initiate_leg("u1", "g1", 1, "a1")
    done = svc.notify_processor_leg("u1", "g1", 1, "b1", 1.0, 180.0, issue_id="iss-1").donation

    assert done.completed_at == frozen
    assert done.reward_applied_at == frozen
    assert svc.queries.get_user_balance("u1").updated_at == frozen
    assert svc.queries.get_solar_forge("iss-1").created_time == int(frozen.timestamp())
