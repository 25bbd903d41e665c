"""Ledger backends: durable samples plus sync history.

    MemoryLedger   — dict-backed, for development and tests
    PostgresLedger — asyncpg-backed, for real deployments
"""

from src.healthsync.ledger.base import Ledger
from src.healthsync.ledger.memory import MemoryLedger
from src.healthsync.ledger.postgres import PostgresLedger

__all__ = ["Ledger", "MemoryLedger", "PostgresLedger"]
