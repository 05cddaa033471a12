from __future__ import annotations

import threading
from datetime import timedelta
from pathlib import Path

import pytest

from forge.core.config import Config
from forge.core.database import Database
from forge.core.events import InitiateLeg, ProcessorLeg
from forge.core.exceptions import CorrelationAnomalyError, CorrelationConflictError, StoreError
from forge.core.models import DonationStatus
from forge.core.time import utc_now
from forge.donations.ledger import AppendStatus
from forge.donations.reconciler import Transition
from forge.service import DonationService


def _initiate(svc: DonationService, counter: int = 42, tx: str = "txA", **kw):
    return svc.notify_initiate_leg("u1", "g1", counter, tx, **kw)


def _processor(svc: DonationService, counter: int = 42, tx: str = "txB", sunshines: float = 1800.0, **kw):
    return svc.notify_processor_leg("u1", "g1", counter, tx, 1000.0, sunshines, kw.pop("memo", None), **kw)


def _donation_count(db: Database) -> int:
    return int(db.execute("SELECT COUNT(*) AS n FROM donations")[0]["n"])


def test_initiate_then_processor_completes(service: DonationService) -> None:
    first = _initiate(service)
    assert first.result == AppendStatus.APPENDED
    assert first.transition == Transition.CREATED
    assert first.donation.status == DonationStatus.PENDING_PROCESSOR

    done = _processor(service)
    assert done.transition == Transition.COMPLETED
    d = done.donation
    assert d.id == first.donation.id
    assert d.status == DonationStatus.COMPLETED
    assert (d.initiate_tx_id, d.hyperpay_tx_id) == ("txA", "txB")
    assert d.sunshines_amount == 1800.0
    assert d.spend_usd_amount == 1000.0
    assert d.completed_at is not None
    assert d.reward_applied_at is not None

    bal = service.queries.get_user_balance("u1")
    assert bal.sunshines == 1800.0
    assert bal.stars == 10.0
    assert service.queries.get_galaxy_balance("g1").stars == 10.0


def _completed_content(svc: DonationService, order: str) -> tuple:
    legs = [
        lambda: _initiate(svc, issue_id="iss-9"),
        lambda: _processor(svc, memo="hi", issue_id="iss-9"),
    ]
    if order == "processor-first":
        legs.reverse()
    outcome = [leg() for leg in legs][-1]
    d = outcome.donation
    return (d.sunshines_amount, d.spend_usd_amount, d.initiate_tx_id, d.hyperpay_tx_id, d.memo, d.issue_id, d.status)


def test_arrival_order_does_not_change_completed_content(test_config: Config, temp_dir: Path) -> None:
    results = []
    for order in ("initiate-first", "processor-first"):
        db = Database(temp_dir / f"{order}.db")
        try:
            results.append(_completed_content(DonationService(test_config, db), order))
        finally:
            db.close()

    assert results[0] == results[1]
    assert results[0][-1] == DonationStatus.COMPLETED


def test_repeated_initiate_keeps_single_pending_row(service: DonationService, db: Database) -> None:
    a = _initiate(service, counter=7)
    b = _initiate(service, counter=7)

    assert b.duplicate is True
    assert b.transition == Transition.DUPLICATE
    assert b.donation.id == a.donation.id
    assert _donation_count(db) == 1


def test_redelivery_after_completion_leaves_balances_unchanged(service: DonationService) -> None:
    _initiate(service)
    _processor(service)

    for _ in range(3):
        assert _initiate(service).duplicate is True
        assert _processor(service).duplicate is True

    bal = service.queries.get_user_balance("u1")
    assert bal.sunshines == 1800.0
    assert bal.donations == 1


def test_counter_reuse_while_pending_is_a_conflict(service: DonationService) -> None:
    first = _initiate(service, counter=5, tx="txA")

    with pytest.raises(CorrelationConflictError) as ei:
        _initiate(service, counter=5, tx="txOther")
    assert ei.value.donation_id == first.donation.id

    # Rejected legs stay rejected on redelivery and are not replayed.
    with pytest.raises(CorrelationConflictError):
        _initiate(service, counter=5, tx="txOther")
    assert service.recover() == 0
    assert service.audit.query(action_type="correlation_conflict")[0]["details"]["leg_tx_id"] == "txOther"


def test_mismatched_tx_on_completed_counter_is_an_anomaly(service: DonationService) -> None:
    _initiate(service, counter=9)
    _processor(service, counter=9)

    with pytest.raises(CorrelationAnomalyError) as ei:
        _processor(service, counter=9, tx="txReplay")
    assert ei.value.kind == "tx_mismatch"

    with pytest.raises(CorrelationAnomalyError):
        _initiate(service, counter=9, tx="txReplayInit")

    assert service.queries.get_user_balance("u1").sunshines == 1800.0
    kinds = [r["details"]["kind"] for r in service.audit.query(action_type="correlation_anomaly")]
    assert kinds.count("tx_mismatch") == 2
    assert service.queries.get_donations_by_galaxy_id("g1")[0].hyperpay_tx_id == "txB"


def test_initiate_amount_mismatch_keeps_processor_amount(service: DonationService) -> None:
    _initiate(service, spend_usd_amount=5.0)
    done = _processor(service)

    assert done.transition == Transition.COMPLETED
    assert done.anomalies == ("amount_mismatch",)
    assert done.donation.spend_usd_amount == 1000.0
    assert service.audit.query(action_type="correlation_anomaly")[0]["details"]["kind"] == "amount_mismatch"


def test_stale_pending_expires_without_balance_effect(service: DonationService) -> None:
    old = utc_now() - timedelta(days=2)
    pending = _initiate(service, received_at=old)
    fresh = _initiate(service, counter=43, tx="txFresh")

    expired = service.expire_stale()

    assert expired == [pending.donation.id]
    assert service.views.get_donation(pending.donation.id).status == DonationStatus.EXPIRED
    assert service.views.get_donation(fresh.donation.id).status == DonationStatus.PENDING_PROCESSOR
    assert service.queries.get_user_balance("u1").sunshines == 0.0
    assert service.expire_stale() == []


def test_expiry_frees_the_counter(service: DonationService) -> None:
    old = utc_now() - timedelta(days=2)
    first = _initiate(service, received_at=old)
    service.expire_stale()

    late = _processor(service)
    assert late.transition == Transition.CREATED
    assert late.donation.id != first.donation.id
    assert late.donation.status == DonationStatus.PENDING_INITIATE
    assert service.audit.query(action_type="leg_after_expiry")[0]["details"]["expired_donation_id"] == first.donation.id

    done = _initiate(service, tx="txA2")
    assert done.transition == Transition.COMPLETED
    assert service.queries.get_user_balance("u1").sunshines == 1800.0


def test_completion_beats_expiry(service: DonationService) -> None:
    old = utc_now() - timedelta(days=2)
    pending = _initiate(service, received_at=old)
    _processor(service)

    assert service.expire_stale(now=utc_now() + timedelta(days=30)) == []
    assert service.views.get_donation(pending.donation.id).status == DonationStatus.COMPLETED


def test_recover_merges_legs_appended_before_a_crash(service: DonationService) -> None:
    # Appended, then the process died before the merge.
    service.ledger.append_leg(InitiateLeg(leg_tx_id="txA", counter=42, user_id="u1", galaxy_id="g1"))
    assert service.recover() == 1
    assert service.recover() == 0

    proc = ProcessorLeg(
        leg_tx_id="txB", counter=42, user_id="u1", galaxy_id="g1", spend_usd_amount=1000.0, sunshines_amount=1800.0
    )
    service.ledger.append_leg(proc)

    # Redelivery of an appended-but-unmerged leg still merges it.
    outcome = _processor(service)
    assert outcome.duplicate is True
    assert outcome.transition == Transition.COMPLETED
    assert service.queries.get_user_balance("u1").sunshines == 1800.0


def test_merge_requires_a_ledger_record(service: DonationService) -> None:
    with pytest.raises(StoreError):
        service.reconciler.reconcile(InitiateLeg(leg_tx_id="ghost", counter=1, user_id="u1", galaxy_id="g1"))


def test_retried_reward_apply_is_a_no_op(service: DonationService, db: Database) -> None:
    _initiate(service)
    done = _processor(service)

    with db.transaction() as conn:
        assert service.rewards.apply(conn, done.donation) is None
    assert service.queries.get_user_balance("u1").sunshines == 1800.0


def _run_all(targets) -> list[BaseException]:
    barrier = threading.Barrier(len(targets))
    errors: list[BaseException] = []

    def run(fn) -> None:
        try:
            barrier.wait()
            fn()
        except BaseException as e:  # noqa: BLE001
            errors.append(e)

    threads = [threading.Thread(target=run, args=(fn,)) for fn in targets]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return errors


def test_concurrent_complementary_legs_reward_exactly_once(service: DonationService) -> None:
    n = 15
    targets = []
    for c in range(n):
        targets.append(lambda c=c: service.notify_initiate_leg("u1", "g1", c, f"init-{c}"))
        # The processor leg is delivered three times at once.
        for _ in range(3):
            targets.append(lambda c=c: service.notify_processor_leg("u1", "g1", c, f"proc-{c}", 1.0, 180.0))

    assert _run_all(targets) == []

    bal = service.queries.get_user_balance("u1")
    assert bal.donations == n
    assert bal.sunshines == 180.0 * n
    assert bal.stars == pytest.approx(float(n))
    assert len(service.queries.get_donations_by_galaxy_id("g1")) == n


def test_sweep_racing_second_leg_never_loses_a_payment(service: DonationService, db: Database) -> None:
    n = 10
    old = utc_now() - timedelta(days=2)
    for c in range(n):
        service.notify_initiate_leg("u1", "g1", c, f"init-{c}", received_at=old)

    targets = [lambda: service.expire_stale() for _ in range(3)]
    targets += [lambda c=c: service.notify_processor_leg("u1", "g1", c, f"proc-{c}", 1.0, 180.0) for c in range(n)]
    assert _run_all(targets) == []

    completed = 0
    for c in range(n):
        rows = db.execute(
            "SELECT initiate_tx_id, hyperpay_tx_id, expired_at FROM donations WHERE counter = ?", (c,)
        )
        holders = [r for r in rows if r["hyperpay_tx_id"] == f"proc-{c}"]
        assert len(holders) == 1
        assert holders[0]["expired_at"] is None
        if holders[0]["initiate_tx_id"] is not None:
            completed += 1

    assert service.queries.get_user_balance("u1").sunshines == 180.0 * completed
    assert service.ledger.unreconciled() == []
