"""Sync control endpoints: manual passes, status, history, auto sync, preferences."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import JSONResponse, StreamingResponse

from src.dependencies import Orchestrator
from src.healthsync.base import AutoSyncMode, GatewayConfig
from src.healthsync.errors import (
    DeliveryError,
    ErrorInfo,
    HealthStackError,
    InvalidConfigurationError,
    SyncInProgressError,
)
from src.models.sync import (
    ConnectionTestRead,
    ErrorInfoRead,
    RetryQueueProcessed,
    RetryQueueRead,
    SyncPreferencesRead,
    SyncPreferencesUpdate,
    SyncRecordRead,
    SyncStatusRead,
)

router = APIRouter(prefix="/sync", tags=["sync"])
logger = logging.getLogger("healthstack.routers.sync")


def _preferences_read(orchestrator: Orchestrator) -> SyncPreferencesRead:
    prefs = orchestrator.preferences
    gateway = prefs.get_gateway_config()
    return SyncPreferencesRead(
        frequency=prefs.frequency,
        enabled_data_types=prefs.enabled_types(),
        user_id=prefs.user_id,
        gateway_configured=gateway is not None,
        gateway_url=gateway.base_url if gateway else None,
    )


# ---------- Passes ----------

@router.post("", response_model=SyncRecordRead)
async def trigger_sync(orchestrator: Orchestrator) -> Any:
    try:
        record = await orchestrator.perform_manual_sync()
    except SyncInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except HealthStackError as exc:
        info = ErrorInfo.from_exception(exc)
        status_code = 400 if info.needs_settings else 502
        return JSONResponse(status_code=status_code, content={"error": info.to_dict()})
    return SyncRecordRead.from_record(record)


@router.get("/status", response_model=SyncStatusRead)
async def get_status(orchestrator: Orchestrator) -> Any:
    """Current status plus the time of the last successful pass, if any."""
    last_synced_at = None
    try:
        last = await orchestrator.last_successful_sync()
        last_synced_at = last.timestamp if last else None
    except HealthStackError as exc:
        logger.warning("Could not read last successful sync: %s", exc)
    return SyncStatusRead.from_status(
        orchestrator.current_status, orchestrator.auto_sync_mode, last_synced_at
    )


@router.get("/status/stream")
async def stream_status(orchestrator: Orchestrator) -> StreamingResponse:
    """Server-Sent Events: the current status, then every transition."""

    async def events() -> AsyncIterator[str]:
        async for status in orchestrator.status.subscribe():
            payload = SyncStatusRead.from_status(status, orchestrator.auto_sync_mode)
            yield f"data: {json.dumps(payload.model_dump(mode='json'))}\n\n"

    return StreamingResponse(events(), media_type="text/event-stream")


@router.get("/history", response_model=list[SyncRecordRead])
async def get_history(
    orchestrator: Orchestrator,
    limit: int = Query(default=50, ge=1, le=500),
) -> Any:
    records = await orchestrator.get_sync_history(limit)
    return [SyncRecordRead.from_record(r) for r in records]


# ---------- Auto sync ----------

@router.post("/auto/start", response_model=SyncStatusRead)
async def start_auto_sync(orchestrator: Orchestrator) -> Any:
    await orchestrator.start_auto_sync()
    return SyncStatusRead.from_status(orchestrator.current_status, orchestrator.auto_sync_mode)


@router.post("/auto/stop", response_model=SyncStatusRead)
async def stop_auto_sync(orchestrator: Orchestrator) -> Any:
    await orchestrator.stop_auto_sync()
    return SyncStatusRead.from_status(orchestrator.current_status, orchestrator.auto_sync_mode)


# ---------- Preferences ----------

@router.get("/preferences", response_model=SyncPreferencesRead)
async def get_preferences(orchestrator: Orchestrator) -> Any:
    return _preferences_read(orchestrator)


@router.put("/preferences", response_model=SyncPreferencesRead)
async def update_preferences(orchestrator: Orchestrator, body: SyncPreferencesUpdate) -> Any:
    prefs = orchestrator.preferences
    if body.clear_gateway:
        prefs.set_gateway_config(None)
    elif body.gateway is not None:
        try:
            prefs.set_gateway_config(GatewayConfig(**body.gateway.model_dump()))
        except InvalidConfigurationError as exc:
            raise HTTPException(status_code=422, detail=str(exc))
    if body.data_types is not None:
        prefs.set_data_type_preferences(body.data_types)
    if body.user_id is not None:
        prefs.user_id = body.user_id or None
    if body.frequency is not None and body.frequency is not prefs.frequency:
        prefs.frequency = body.frequency
        # auto sync picks up the new frequency on restart
        if orchestrator.auto_sync_mode is not AutoSyncMode.STOPPED:
            await orchestrator.stop_auto_sync()
            await orchestrator.start_auto_sync()
    return _preferences_read(orchestrator)


# ---------- Connectivity / retry queue ----------

@router.post("/connection-test", response_model=ConnectionTestRead)
async def connection_test(orchestrator: Orchestrator) -> Any:
    try:
        ok = await orchestrator.test_connection()
    except DeliveryError as exc:
        return ConnectionTestRead(
            success=False, error=ErrorInfoRead.from_info(ErrorInfo.from_exception(exc))
        )
    return ConnectionTestRead(success=ok)


@router.get("/queue", response_model=RetryQueueRead)
async def get_queue(orchestrator: Orchestrator) -> Any:
    return RetryQueueRead(queued_samples=await orchestrator.retry_queue.count())


@router.post("/network-restored", response_model=RetryQueueProcessed)
async def network_restored(orchestrator: Orchestrator) -> Any:
    """Drain the Retry Queue now, as a restored-connectivity signal would."""
    logger.info("Network restored signal received via API")
    acknowledged = await orchestrator.process_retry_queue()
    return RetryQueueProcessed(acknowledged=acknowledged)
