"""Sample sources for the HealthStack sync engine.

Each source implements the HealthDataSource ABC and handles:
- Authorization for the requested data types
- Fetching samples for a type within a time window
- Push observation of new data

Available sources:
    MemoryHealthSource      — in-memory samples (development, tests)
    AppleHealthExportSource — Apple Health export.xml on disk
"""

from src.healthsync.acquisition.apple_health import AppleHealthExportSource
from src.healthsync.acquisition.base import HealthDataSource, stable_sample_id
from src.healthsync.acquisition.memory import MemoryHealthSource

__all__ = [
    "HealthDataSource",
    "MemoryHealthSource",
    "AppleHealthExportSource",
    "stable_sample_id",
]

# Registry: source_id → source class
SOURCE_REGISTRY: dict[str, type[HealthDataSource]] = {
    MemoryHealthSource.SOURCE_ID: MemoryHealthSource,
    AppleHealthExportSource.SOURCE_ID: AppleHealthExportSource,
}


def get_source(source_id: str) -> type[HealthDataSource]:
    """Return the source class for a given slug.

    Raises:
        KeyError: If the source_id is not registered.
    """
    if source_id not in SOURCE_REGISTRY:
        raise KeyError(
            f"No source registered for '{source_id}'. "
            f"Available: {list(SOURCE_REGISTRY)}"
        )
    return SOURCE_REGISTRY[source_id]
