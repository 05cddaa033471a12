from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from fastapi import Request

from forge.core.config import Config
from forge.core.database import Database
from forge.donations.queries import DonationQueries
from forge.service import DonationService


@lru_cache
def _repo_root() -> Path:
    # Assume running from repo root (uvicorn started there). Fallback to parent of this file.
    here = Path(__file__).resolve()
    for p in [Path.cwd(), here.parent.parent]:
        if (p / "config" / "default.yaml").exists():
            return p
    return Path.cwd()


@lru_cache
def _load_config() -> Config:
    return Config.from_repo_defaults(_repo_root())


def get_config(request: Request) -> Config:
    cfg = getattr(request.app.state, "config", None)
    return cfg or _load_config()


def get_db(request: Request) -> Database:
    db = getattr(request.app.state, "db", None)
    if db is not None:
        return db
    db = Database(get_config(request).db_path)
    request.app.state.db = db
    return db


def get_service(request: Request) -> DonationService:
    svc = getattr(request.app.state, "service", None)
    if svc is not None:
        return svc
    svc = DonationService(get_config(request), get_db(request))
    request.app.state.service = svc
    return svc


def get_queries(request: Request) -> DonationQueries:
    return get_service(request).queries
