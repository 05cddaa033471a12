from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.errors import ApiError, api_error_handler, solar_forge_error_handler
from api.routes import get_api_router
from forge import __version__
from forge.core.config import Config
from forge.core.exceptions import ConfigError, SolarForgeError
from forge.core.logging import configure_logging

logger = logging.getLogger("forge.api")


async def _maintenance_loop(app: FastAPI, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        service = getattr(app.state, "service", None)
        if service is None:
            continue
        try:
            await asyncio.to_thread(service.run_maintenance)
        except SolarForgeError as e:
            # Next pass retries; a failed sweep must not kill the loop.
            logger.warning("maintenance_failed", extra={"error": str(e)})
        except Exception:
            logger.exception("maintenance_crashed")


def create_app(config: Config | None = None) -> FastAPI:
    start = time.monotonic()

    if config is None:
        from pathlib import Path

        config = Config.from_repo_defaults(Path.cwd())

    # Security check: refuse to start with empty auth_token unless explicitly overridden
    auth_token = str(config.api.auth_token or "")
    insecure_ok = os.environ.get("SOLARFORGE_INSECURE_OK", "").lower() in ("1", "true", "yes")

    if not auth_token and not insecure_ok:
        msg = (
            "SECURITY ERROR: API auth_token is empty\n"
            "\n"
            "Set SOLARFORGE_API__AUTH_TOKEN environment variable or add to config/user.yaml:\n"
            "  api:\n"
            "    auth_token: your-secret-token\n"
            "\n"
            "To run without auth (dev/test only), set SOLARFORGE_INSECURE_OK=1"
        )
        raise RuntimeError(msg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.started_at = start

        # Expose config/db/service in app state for dependency injection + tests.
        app.state.config = getattr(app.state, "config", None) or config
        configure_logging(app.state.config)

        from forge.core.database import Database
        from forge.service import DonationService

        created_db = False
        if getattr(app.state, "db", None) is None:
            app.state.db = Database(app.state.config.db_path)
            created_db = True
        if getattr(app.state, "service", None) is None:
            app.state.service = DonationService(app.state.config, app.state.db)

        # Legs appended before a crash but never merged.
        recovered = await asyncio.to_thread(app.state.service.recover)
        if recovered:
            logger.info("startup_recovered", extra={"merged": recovered})

        sweeper = asyncio.create_task(
            _maintenance_loop(app, float(app.state.config.reconciler.sweep_interval_seconds))
        )

        yield

        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper

        # Close DB if we created it in this lifespan.
        db = getattr(app.state, "db", None)
        if created_db and db is not None:
            db.close()

    openapi_tags = [
        {"name": "health", "description": "Liveness, ledger integrity and counters."},
        {"name": "legs", "description": "Inbound payment-leg confirmations."},
        {"name": "donations", "description": "Read-only access to completed donations."},
        {"name": "balances", "description": "User and galaxy balances, global all-star stats."},
        {"name": "solar-forge", "description": "Per-issue and per-version reward aggregates."},
        {"name": "notifications", "description": "Outbox polling for presentation layers."},
    ]

    app = FastAPI(
        title="solar-forge API",
        description="Donation reconciliation and the reward ledger",
        version=__version__,
        openapi_tags=openapi_tags,
        lifespan=lifespan,
    )

    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(SolarForgeError, solar_forge_error_handler)

    # CORS: only enable if origins explicitly configured
    if config.api.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.api.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(get_api_router(), prefix="/api/v1")
    return app


# Module-level app for uvicorn (e.g. `uvicorn api.main:app`).
# Guarded so test imports don't crash when auth_token isn't configured.
try:
    app = create_app()
except (RuntimeError, ConfigError):
    app = None


def serve(config: Config | None = None) -> None:
    import uvicorn

    from pathlib import Path

    cfg = config or Config.from_repo_defaults(Path.cwd())
    uvicorn.run(create_app(cfg), host=cfg.api.host, port=cfg.api.port)


if __name__ == "__main__":
    serve()
