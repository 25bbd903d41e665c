"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.healthsync.sync.orchestrator import SyncOrchestrator


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """Return the orchestrator built by the app lifespan.

    Components are constructed once in ``create_app`` and stored on
    ``app.state``; routes never build their own.
    """
    orchestrator: SyncOrchestrator | None = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return orchestrator


# Annotated shortcut for route signatures
Orchestrator = Annotated[SyncOrchestrator, Depends(get_orchestrator)]
