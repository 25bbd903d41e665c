"""Sync orchestration: passes, triggers, background work and housekeeping."""

from src.healthsync.sync.cleanup import DataCleanupScheduler
from src.healthsync.sync.connectivity import ConnectivityMonitor
from src.healthsync.sync.orchestrator import SyncOrchestrator
from src.healthsync.sync.scheduler import (
    AsyncioBackgroundScheduler,
    BackgroundScheduler,
    ExpirationSignal,
)
from src.healthsync.sync.status import SyncStatusPublisher

__all__ = [
    "AsyncioBackgroundScheduler",
    "BackgroundScheduler",
    "ConnectivityMonitor",
    "DataCleanupScheduler",
    "ExpirationSignal",
    "SyncOrchestrator",
    "SyncStatusPublisher",
]
