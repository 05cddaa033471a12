from __future__ import annotations

import pytest

from forge.core.events import MAX_COUNTER
from forge.core.exceptions import MalformedLegError, StorageUnavailableError
from forge.service import DonationService
from tests.unit._api_test_client import AUTH, make_app, make_client

INIT = {"user_id": "u1", "galaxy_id": "g1", "counter": 42, "tx_id": "txA"}
PROC = {
    "user_id": "u1",
    "galaxy_id": "g1",
    "counter": 42,
    "tx_id": "txB",
    "spend_usd_amount": 1000.0,
    "sunshines_amount": 1800.0,
    "memo": "go team",
    "issue_id": "iss-1",
}


@pytest.mark.anyio
async def test_two_legs_complete_a_donation(test_config, db):
    app = make_app(test_config, db)

    async with make_client(app) as ac:
        r = await ac.post("/api/v1/legs/initiate", json=INIT, headers=AUTH)
        assert r.status_code == 200
        body = r.json()
        assert body["result"] == "appended"
        assert body["transition"] == "created"
        assert body["donation"]["status"] == "pending-processor"

        r = await ac.post("/api/v1/legs/processor", json=PROC, headers=AUTH)
        body = r.json()
        assert body["transition"] == "completed"
        assert body["donation"]["status"] == "completed"
        assert body["donation"]["sunshines_amount"] == 1800.0

        r = await ac.post("/api/v1/legs/processor", json=PROC, headers=AUTH)
        assert r.json()["result"] == "duplicate"

        r = await ac.get("/api/v1/users/u1/balance", headers=AUTH)
        assert r.json()["stars"] == 10.0
        assert r.json()["sunshines"] == 1800.0


@pytest.mark.anyio
async def test_conflict_and_anomaly_map_to_409(test_config, db):
    app = make_app(test_config, db)

    async with make_client(app) as ac:
        await ac.post("/api/v1/legs/initiate", json=INIT, headers=AUTH)
        r = await ac.post("/api/v1/legs/initiate", json={**INIT, "tx_id": "txOther"}, headers=AUTH)
        assert r.status_code == 409
        err = r.json()["error"]
        assert err["code"] == "donation.correlation_conflict"
        assert err["counter"] == 42

        await ac.post("/api/v1/legs/processor", json=PROC, headers=AUTH)
        r = await ac.post("/api/v1/legs/processor", json={**PROC, "tx_id": "txReplay"}, headers=AUTH)
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "donation.correlation_anomaly"
        assert r.json()["error"]["kind"] == "tx_mismatch"


@pytest.mark.anyio
async def test_malformed_leg_is_422(test_config, db):
    app = make_app(test_config, db)

    async with make_client(app) as ac:
        r = await ac.post("/api/v1/legs/initiate", json={**INIT, "counter": -1}, headers=AUTH)
        assert r.status_code == 422
        r = await ac.post("/api/v1/legs/processor", json={**PROC, "sunshines_amount": None}, headers=AUTH)
        assert r.status_code == 422


@pytest.mark.anyio
async def test_storage_unavailable_is_503(test_config, db, monkeypatch):
    app = make_app(test_config, db)
    app.state.service = DonationService(test_config, db)

    def unavailable(*args, **kwargs):
        raise StorageUnavailableError("database is locked")

    monkeypatch.setattr(app.state.service, "notify_initiate_leg", unavailable)

    async with make_client(app) as ac:
        r = await ac.post("/api/v1/legs/initiate", json=INIT, headers=AUTH)
        assert r.status_code == 503
        assert r.json()["error"]["code"] == "storage.unavailable"


@pytest.mark.anyio
async def test_counter_beyond_sqlite_range_is_422(test_config, db):
    app = make_app(test_config, db)

    async with make_client(app) as ac:
        r = await ac.post("/api/v1/legs/initiate", json={**INIT, "counter": MAX_COUNTER + 1}, headers=AUTH)
        assert r.status_code == 422
        r = await ac.post("/api/v1/legs/processor", json={**PROC, "counter": MAX_COUNTER + 1}, headers=AUTH)
        assert r.status_code == 422

        r = await ac.post("/api/v1/legs/initiate", json={**INIT, "counter": MAX_COUNTER}, headers=AUTH)
        assert r.status_code == 200
        assert r.json()["donation"]["counter"] == MAX_COUNTER


def test_service_rejects_oversized_counter_before_the_ledger(service: DonationService, db) -> None:
    with pytest.raises(MalformedLegError):
        service.notify_initiate_leg("u1", "g1", MAX_COUNTER + 1, "txHuge")
    assert db.execute("SELECT COUNT(*) AS n FROM leg_events")[0]["n"] == 0
