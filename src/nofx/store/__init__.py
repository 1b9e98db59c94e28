"""Persistence drivers for runs, steps, events, gates and the inbox/outbox."""

from __future__ import annotations

from pathlib import Path

from nofx.config import settings
from nofx.store.base import StoreDriver


def create_store(driver: str | None = None) -> StoreDriver:
    """Build the store selected by ``settings.data_driver`` ("db" or "fs")."""
    driver = (driver or settings.data_driver).lower()
    if driver == "fs":
        from nofx.store.filesystem import FileSystemStore

        return FileSystemStore(str(Path(settings.data_dir) / "store"))
    if driver == "db":
        from nofx.store.database import DatabaseStore

        return DatabaseStore()
    raise ValueError(f"Unknown data driver: {driver!r}")
