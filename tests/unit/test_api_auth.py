from __future__ import annotations

import pytest

from tests.unit._api_test_client import AUTH, make_app, make_client


@pytest.mark.anyio
async def test_protected_routes_require_auth(test_config, db):
    app = make_app(test_config, db)

    async with make_client(app) as ac:
        r = await ac.get("/api/v1/stats")
        assert r.status_code == 401
        assert r.json()["error"]["code"] == "auth.missing_token"

        r = await ac.get("/api/v1/stats", headers={"Authorization": "Token nope"})
        assert r.json()["error"]["code"] == "auth.invalid_header"

        r = await ac.get("/api/v1/stats", headers={"Authorization": "Bearer nope"})
        assert r.json()["error"]["code"] == "auth.invalid_token"

        r = await ac.get("/api/v1/stats", headers=AUTH)
        assert r.status_code == 200

        r = await ac.get("/api/v1/health")
        assert r.status_code == 200
