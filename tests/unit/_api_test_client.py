from __future__ import annotations

from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from api.main import create_app
from forge.core.config import Config
from forge.core.database import Database

TOKEN = "secret"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


def make_client(app: FastAPI) -> AsyncClient:
    transport = ASGITransport(app=app)
    return AsyncClient(transport=transport, base_url="http://test")


def make_app(test_config: Config, db: Database, *, auth_token: str = TOKEN) -> FastAPI:
    cfg = test_config.model_copy(update={"api": test_config.api.model_copy(update={"auth_token": auth_token})})
    app = create_app(cfg)
    app.state.config = cfg
    app.state.db = db
    return app
