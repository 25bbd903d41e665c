"""HealthStack Sync — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from src.config import Settings, get_settings
from src.healthsync.acquisition import AppleHealthExportSource, HealthDataSource, get_source
from src.healthsync.config_loader import SyncConfig, get_sync_config
from src.healthsync.delivery import GatewayClient, RetryQueue
from src.healthsync.ledger import Ledger, MemoryLedger, PostgresLedger
from src.healthsync.preferences import SyncPreferences
from src.healthsync.sync import (
    AsyncioBackgroundScheduler,
    ConnectivityMonitor,
    DataCleanupScheduler,
    SyncOrchestrator,
)
from src.routers import health, sync
from src.services.database import close_pool, init_pool

# ---------- Logging ----------

logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("healthstack")


# ---------- Component construction ----------

def build_source(settings: Settings) -> HealthDataSource:
    source_cls = get_source(settings.acquisition_source)
    if source_cls is AppleHealthExportSource:
        return AppleHealthExportSource(settings.apple_health_export_path)
    return source_cls()


async def build_ledger(settings: Settings) -> Ledger:
    if settings.ledger_backend == "postgres":
        ledger = PostgresLedger(await init_pool(settings))
        await ledger.ensure_schema()
        return ledger
    if settings.ledger_backend != "memory":
        raise ValueError(f"Unknown ledger backend: {settings.ledger_backend!r}")
    return MemoryLedger()


# ---------- App factory ----------

def create_app(
    settings: Settings | None = None,
    *,
    source: HealthDataSource | None = None,
    ledger: Ledger | None = None,
    gateway: GatewayClient | None = None,
    sync_config: SyncConfig | None = None,
) -> FastAPI:
    """Build the app; every engine component is created in the lifespan.

    Components passed in are used as-is instead of being built from
    settings (tests inject in-memory collaborators this way).
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Startup / shutdown hooks."""
        logger.info(
            "Starting %s v%s [%s]",
            settings.app_name, settings.app_version, settings.environment,
        )
        config = sync_config or get_sync_config()
        app_ledger = ledger or await build_ledger(settings)
        app_source = source or build_source(settings)
        app_gateway = gateway or GatewayClient(
            device_id=settings.device_id,
            app_version=settings.app_version,
            retry=config.inner_retry,
            batch_size=config.batching.batch_size,
            timeout=settings.request_timeout_seconds,
        )
        prefs = SyncPreferences.from_settings(settings)

        monitor: ConnectivityMonitor | None = None
        background = AsyncioBackgroundScheduler(
            execution_window=config.background.execution_window_seconds,
            expiration_grace=config.background.expiration_grace_seconds,
            probe_interval=config.connectivity.probe_interval_seconds,
            is_online=lambda: monitor.is_online if monitor else True,
        )
        orchestrator = SyncOrchestrator(
            source=app_source,
            ledger=app_ledger,
            gateway=app_gateway,
            retry_queue=RetryQueue(),
            preferences=prefs,
            background=background,
            config=config,
        )
        monitor = ConnectivityMonitor(
            probe=orchestrator.check_connectivity,
            on_restored=orchestrator.notify_network_restored,
            interval=config.connectivity.probe_interval_seconds,
        )
        cleanup = DataCleanupScheduler(app_ledger, config.retention)

        await orchestrator.start()
        cleanup.start()
        monitor.start()
        if settings.auto_start:
            await orchestrator.start_auto_sync()

        app.state.settings = settings
        app.state.orchestrator = orchestrator
        app.state.cleanup = cleanup
        app.state.monitor = monitor

        yield

        await monitor.stop()
        cleanup.stop()
        await orchestrator.shutdown()
        await background.aclose()
        await app_gateway.aclose()
        await app_ledger.close()
        await close_pool()
        logger.info("%s shut down", settings.app_name)

    app = FastAPI(
        title="HealthStack Sync API",
        description=(
            "Sync engine control surface: trigger passes, watch progress, "
            "manage auto sync and inspect history."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(sync.router, prefix=v1_prefix)

    return app


app = create_app()
