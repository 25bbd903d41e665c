"""Health check endpoint (public, no auth required)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from src.services.database import get_pool, pool_initialized

router = APIRouter(tags=["system"])
logger = logging.getLogger("healthstack.health")


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    With the Postgres ledger it also performs a lightweight DB check.
    """
    settings = request.app.state.settings
    ledger_ok = True
    if settings.ledger_backend == "postgres":
        ledger_ok = False
        try:
            if pool_initialized():
                async with get_pool().acquire() as conn:
                    await conn.fetchval("SELECT 1")
                ledger_ok = True
        except Exception as exc:
            logger.warning("Health check DB probe failed: %s", exc)

    orchestrator = getattr(request.app.state, "orchestrator", None)
    return {
        "status": "healthy" if ledger_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "ledger": settings.ledger_backend if ledger_ok else "unreachable",
        "syncing": orchestrator.is_syncing if orchestrator else False,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
