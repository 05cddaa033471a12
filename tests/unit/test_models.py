from __future__ import annotations

import pytest

from forge.core.models import Donation, DonationStatus, derive_status
from forge.core.time import utc_now


@pytest.mark.parametrize(
    ("initiate", "hyperpay", "expired", "status"),
    [
        ("txA", None, None, DonationStatus.PENDING_PROCESSOR),
        (None, "txB", None, DonationStatus.PENDING_INITIATE),
        ("txA", "txB", None, DonationStatus.COMPLETED),
        ("txA", None, "2026-01-01T00:00:00+00:00", DonationStatus.EXPIRED),
    ],
)
def test_status_is_derived(initiate, hyperpay, expired, status) -> None:
    assert derive_status(initiate_tx_id=initiate, hyperpay_tx_id=hyperpay, expired_at=expired) == status


def test_status_is_serialized_with_donation() -> None:
    d = Donation(id="d1", user_id="u1", galaxy_id="g1", counter=1, initiate_tx_id="txA", created_at=utc_now())
    body = d.model_dump(mode="json")
    assert body["status"] == "pending-processor"
    assert DonationStatus.COMPLETED.terminal is True
    assert DonationStatus.PENDING_INITIATE.terminal is False
