"""Shared test fixtures - stores on temp files, a recording queue.

IMPORTANT: DATABASE_URL is set at module level, BEFORE any nofx
module is imported during test collection.
"""

import os

# Force in-memory SQLite for the module-level engine
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from nofx.queue.backends import BaseQueue  # noqa: E402


class RecordingQueue(BaseQueue):
    """Queue that only records what was enqueued."""

    def __init__(self) -> None:
        super().__init__(backoff_ms=[0, 0])
        self.sent: list[tuple[str, dict, int]] = []
        self.dead: dict[str, list[dict]] = {}

    async def enqueue(self, topic: str, message: dict, delay_ms: int = 0) -> None:
        self.sent.append((topic, message, delay_ms))

    async def _dead_letter(self, dlq: str, message: dict) -> None:
        self.dead.setdefault(dlq, []).append(message)

    async def list_dlq(self, topic: str) -> list[dict]:
        return list(self.dead.get(topic, []))

    async def rehydrate_dlq(self, topic: str, max_items: int = 50) -> int:
        return 0

    def topics(self) -> list[str]:
        return [topic for topic, _, _ in self.sent]


@pytest.fixture
def queue():
    return RecordingQueue()


async def _open_db_store(path):
    from sqlalchemy.ext.asyncio import async_sessionmaker

    from nofx.models.db import build_engine, init_db
    from nofx.store.database import DatabaseStore

    engine = build_engine(f"sqlite+aiosqlite:///{path}")
    await init_db(engine)
    return DatabaseStore(async_sessionmaker(engine, expire_on_commit=False)), engine


@pytest_asyncio.fixture
async def db_store(tmp_path):
    """DatabaseStore on a fresh SQLite file."""
    store, engine = await _open_db_store(tmp_path / "nofx-test.db")
    yield store
    await engine.dispose()


@pytest.fixture
def fs_store(tmp_path):
    from nofx.store.filesystem import FileSystemStore

    return FileSystemStore(str(tmp_path / "store"))


@pytest_asyncio.fixture(params=["db", "fs"])
async def any_store(request, tmp_path):
    """Run a test against both persistence drivers."""
    if request.param == "fs":
        from nofx.store.filesystem import FileSystemStore

        yield FileSystemStore(str(tmp_path / "store"))
        return
    store, engine = await _open_db_store(tmp_path / "nofx-test.db")
    yield store
    await engine.dispose()


async def make_run(store, *steps):
    """Create a run with ``(name, tool, inputs)`` steps; returns (run, [steps])."""
    run = await store.create_run(goal="test")
    rows = []
    for name, tool, inputs in steps:
        rows.append(await store.create_step(run.id, name, tool, inputs=inputs))
    return run, rows


async def event_types(store, run_id: str) -> list[str]:
    return [e.type for e in await store.list_events(run_id)]
