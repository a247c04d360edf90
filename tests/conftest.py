"""Pytest configuration and fixtures for portalsync tests."""

import asyncio
import shutil
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Generator, Optional

import pytest
import pytest_asyncio

from portalsync.core.database import Database
from portalsync.sync.records import SyncRecordStore
from portalsync.tasks import (
    AdapterRegistry,
    DetachedTaskSet,
    RunningTaskRegistry,
    TaskDefinition,
    TaskExecutor,
    TaskKind,
    TaskStore,
)


# Monday 2 March 2026, 08:00
START_TIME = datetime(2026, 3, 2, 8, 0, 0)


class FakeClock:
    """Deterministic, manually advanced clock."""

    def __init__(self, start: datetime = START_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeAdapter:
    """Adapter double that records calls and can block, fail, or succeed."""

    def __init__(
        self,
        result: Optional[dict[str, Any]] = None,
        error: Optional[Exception] = None,
        gate: Optional[asyncio.Event] = None,
        clock: Optional[FakeClock] = None,
        elapsed_seconds: float = 0,
    ) -> None:
        self.result = result if result is not None else {"records_processed": 0}
        self.error = error
        self.gate = gate
        self.clock = clock
        self.elapsed_seconds = elapsed_seconds
        self.calls: list[Any] = []
        self.started = asyncio.Event()

    async def __call__(self, config: Any, on_progress: Callable[..., None]) -> dict[str, Any]:
        self.calls.append(config)
        on_progress("Working", 1, 2)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.clock is not None and self.elapsed_seconds:
            self.clock.advance(seconds=self.elapsed_seconds)
        if self.error is not None:
            raise self.error
        return dict(self.result)


class RecordingAlerts:
    """Alert sink double that records every alert."""

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self.sent: list[tuple[str, str, Optional[int]]] = []

    async def send_sync_error_alert(
        self,
        task_name: str,
        error_message: str,
        duration_seconds: Optional[int] = None,
    ) -> None:
        self.sent.append((task_name, error_message, duration_seconds))


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def clock() -> FakeClock:
    """Clock fixed at Monday 2 March 2026, 08:00."""
    return FakeClock()


@pytest.fixture
def make_adapter() -> Callable[..., FakeAdapter]:
    """Factory for adapter doubles."""
    return FakeAdapter


@pytest.fixture
def alerts() -> RecordingAlerts:
    """Enabled alert sink that records alerts."""
    return RecordingAlerts()


@pytest_asyncio.fixture
async def db(temp_dir: Path):
    """Connected database in a temporary directory."""
    database = Database(temp_dir / "portalsync.db")
    await database.connect()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def task_store(db: Database) -> TaskStore:
    """Initialized task store."""
    store = TaskStore(db)
    await store.initialize()
    return store


@pytest_asyncio.fixture
async def records(db: Database, clock: FakeClock) -> SyncRecordStore:
    """Initialized sync record store."""
    store = SyncRecordStore(db, clock=clock)
    await store.initialize()
    return store


@pytest.fixture
def define_task(task_store: TaskStore, clock: FakeClock):
    """Insert a task definition and return the stored row."""

    async def _define(
        task_type: str = TaskKind.SYNC_USERS.value,
        task_name: Optional[str] = None,
        interval_minutes: int = 120,
        enabled: bool = True,
        config: Optional[dict[str, Any]] = None,
        schedule_day: Optional[int] = None,
        schedule_time: Optional[str] = None,
    ) -> TaskDefinition:
        await task_store.upsert_task(
            TaskDefinition(
                task_type=task_type,
                task_name=task_name or task_type.replace("_", " ").title(),
                interval_minutes=interval_minutes,
                enabled=enabled,
                config=config or {},
                schedule_day=schedule_day,
                schedule_time=schedule_time,
            ),
            now=clock(),
        )
        return await task_store.require_task(task_type)

    return _define


@pytest.fixture
def running_registry(clock: FakeClock) -> RunningTaskRegistry:
    """Empty running task registry."""
    return RunningTaskRegistry(clock=clock)


@pytest.fixture
def adapter_registry() -> AdapterRegistry:
    """Empty adapter registry."""
    return AdapterRegistry()


@pytest.fixture
def detached() -> DetachedTaskSet:
    """Background task set."""
    return DetachedTaskSet()


@pytest.fixture
def executor(
    task_store: TaskStore,
    running_registry: RunningTaskRegistry,
    adapter_registry: AdapterRegistry,
    alerts: RecordingAlerts,
    detached: DetachedTaskSet,
    clock: FakeClock,
) -> TaskExecutor:
    """Executor wired to the test store, registries and alert sink."""
    return TaskExecutor(
        task_store,
        running_registry,
        adapter_registry,
        alerts=alerts,
        detached=detached,
        clock=clock,
    )
