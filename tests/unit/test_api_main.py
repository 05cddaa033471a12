from __future__ import annotations

import asyncio
import contextlib

import pytest
from fastapi import FastAPI

from api.main import _maintenance_loop
from forge.core.exceptions import StorageUnavailableError


class _FlakyService:
    def __init__(self, failures: list[Exception]) -> None:
        self.failures = failures
        self.calls = 0

    def run_maintenance(self) -> dict[str, int]:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return {"expired": 0, "dispatched": 0}


@pytest.mark.anyio
async def test_maintenance_loop_keeps_running_after_errors():
    app = FastAPI()
    service = _FlakyService([RuntimeError("boom"), StorageUnavailableError("database is locked")])
    app.state.service = service

    task = asyncio.create_task(_maintenance_loop(app, 0.01))
    try:
        for _ in range(500):
            await asyncio.sleep(0.01)
            if service.calls >= 3:
                break
        assert service.calls >= 3
        assert not task.done()
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
