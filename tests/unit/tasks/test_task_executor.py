"""Tests for the task executor lifecycle."""

import asyncio
from datetime import datetime, timedelta

import pytest

from portalsync.core.exceptions import (
    MutexViolationError,
    StoreError,
    TaskConfigError,
    TaskExecutionError,
    UnknownTaskKindError,
)
from portalsync.tasks import (
    AdapterRegistry,
    EntitySyncConfig,
    RunStatus,
    RunningTaskRegistry,
    SyncMode,
    TaskExecutor,
    TaskKind,
    TaskStatus,
    TaskStore,
)


class TestRunTaskSuccess:
    """Tests for successful runs."""

    @pytest.mark.asyncio
    async def test_success_records_everything(
        self,
        executor: TaskExecutor,
        task_store: TaskStore,
        adapter_registry: AdapterRegistry,
        define_task,
        make_adapter,
        clock,
    ) -> None:
        """Test the success path end to end."""
        adapter = make_adapter(result={"records_processed": 12, "created": 2}, clock=clock, elapsed_seconds=42)
        adapter_registry.register(TaskKind.SYNC_USERS, adapter)
        task = await define_task("sync_users", interval_minutes=120, config={"mode": "full"})
        started = clock()

        result = await executor.run_task(task)

        assert result == {"records_processed": 12, "created": 2}
        assert isinstance(adapter.calls[0], EntitySyncConfig)
        assert adapter.calls[0].mode == SyncMode.FULL

        stored = await task_store.require_task("sync_users")
        assert stored.last_status == TaskStatus.SUCCESS
        assert stored.last_duration_seconds == 42
        assert stored.run_count == 1
        assert stored.last_run_at == started
        assert stored.next_run_at == clock() + timedelta(minutes=120)

        history = await task_store.get_task_history("sync_users")
        assert len(history) == 1
        assert history[0].status == RunStatus.SUCCESS
        assert history[0].records_processed == 12
        assert history[0].duration_seconds == 42

    @pytest.mark.asyncio
    async def test_calendar_task_next_run(
        self,
        executor: TaskExecutor,
        task_store: TaskStore,
        adapter_registry: AdapterRegistry,
        define_task,
        make_adapter,
    ) -> None:
        """Test that calendar tasks schedule the next weekly slot."""
        adapter_registry.register(TaskKind.SYNC_USERS_FULL, make_adapter())
        task = await define_task(
            "sync_users_full",
            interval_minutes=10080,
            schedule_day=3,
            schedule_time="09:00",
        )

        await executor.run_task(task)

        stored = await task_store.require_task("sync_users_full")
        assert stored.next_run_at == datetime(2026, 3, 4, 9, 0, 0)

    @pytest.mark.asyncio
    async def test_registry_released(
        self,
        executor: TaskExecutor,
        running_registry: RunningTaskRegistry,
        adapter_registry: AdapterRegistry,
        define_task,
        make_adapter,
    ) -> None:
        """Test that the mutex is held during the run and released after."""
        gate = asyncio.Event()
        adapter = make_adapter(gate=gate)
        adapter_registry.register(TaskKind.SYNC_USERS, adapter)
        task = await define_task("sync_users")

        run = asyncio.create_task(executor.run_task(task))
        await adapter.started.wait()

        assert running_registry.is_running("sync_users")
        assert running_registry.get("sync_users").progress.stage == "Working"

        gate.set()
        await run
        assert not running_registry.is_running("sync_users")


class TestRunTaskFailure:
    """Tests for failed runs."""

    @pytest.mark.asyncio
    async def test_failure_records_and_raises(
        self,
        executor: TaskExecutor,
        task_store: TaskStore,
        running_registry: RunningTaskRegistry,
        adapter_registry: AdapterRegistry,
        define_task,
        make_adapter,
        clock,
    ) -> None:
        """Test that a failing adapter leaves a consistent failed record."""
        adapter_registry.register(
            TaskKind.CLEANUP,
            make_adapter(error=RuntimeError("disk full"), clock=clock, elapsed_seconds=3),
        )
        task = await define_task("cleanup", interval_minutes=1440)

        with pytest.raises(TaskExecutionError) as exc_info:
            await executor.run_task(task)

        assert exc_info.value.error_message == "disk full"
        assert exc_info.value.duration_seconds == 3
        assert isinstance(exc_info.value.__cause__, RuntimeError)

        stored = await task_store.require_task("cleanup")
        assert stored.last_status == TaskStatus.FAILED
        assert stored.last_error == "disk full"
        assert stored.fail_count == 1
        assert stored.run_count == 0
        # Long intervals retry on the capped delay
        assert stored.next_run_at == clock() + timedelta(minutes=30)

        history = await task_store.get_task_history("cleanup")
        assert history[0].status == RunStatus.FAILED
        assert history[0].error_message == "disk full"
        assert not running_registry.is_running("cleanup")

    @pytest.mark.asyncio
    async def test_short_interval_retry(
        self,
        executor: TaskExecutor,
        task_store: TaskStore,
        adapter_registry: AdapterRegistry,
        define_task,
        make_adapter,
        clock,
    ) -> None:
        """Test that intervals under the cap retry after the interval."""
        adapter_registry.register(TaskKind.SYNC_USERS, make_adapter(error=RuntimeError("x")))
        task = await define_task("sync_users", interval_minutes=10)

        with pytest.raises(TaskExecutionError):
            await executor.run_task(task)

        stored = await task_store.require_task("sync_users")
        assert stored.next_run_at == clock() + timedelta(minutes=10)

    @pytest.mark.asyncio
    async def test_failure_sends_alert(
        self,
        executor: TaskExecutor,
        adapter_registry: AdapterRegistry,
        define_task,
        make_adapter,
        alerts,
        detached,
    ) -> None:
        """Test that failures spawn an alert in the background."""
        adapter_registry.register(TaskKind.SYNC_USERS, make_adapter(error=RuntimeError("401")))
        task = await define_task("sync_users", task_name="LMS Users Sync")

        with pytest.raises(TaskExecutionError):
            await executor.run_task(task)
        await detached.wait()

        assert alerts.sent == [("LMS Users Sync", "401", 0)]

    @pytest.mark.asyncio
    async def test_disabled_alerts_not_sent(
        self,
        executor: TaskExecutor,
        adapter_registry: AdapterRegistry,
        define_task,
        make_adapter,
        alerts,
        detached,
    ) -> None:
        """Test that a disabled alert sink is skipped."""
        alerts.enabled = False
        adapter_registry.register(TaskKind.SYNC_USERS, make_adapter(error=RuntimeError("x")))
        task = await define_task("sync_users")

        with pytest.raises(TaskExecutionError):
            await executor.run_task(task)

        assert len(detached) == 0
        assert alerts.sent == []

    @pytest.mark.asyncio
    async def test_unknown_kind_is_a_failed_run(
        self,
        executor: TaskExecutor,
        task_store: TaskStore,
        define_task,
    ) -> None:
        """Test that a type with no adapter is recorded as a failure."""
        task = await define_task("sync_everything")

        with pytest.raises(TaskExecutionError) as exc_info:
            await executor.run_task(task)

        assert isinstance(exc_info.value.__cause__, UnknownTaskKindError)
        stored = await task_store.require_task("sync_everything")
        assert stored.last_status == TaskStatus.FAILED
        assert "Unknown task type" in stored.last_error

    @pytest.mark.asyncio
    async def test_invalid_config_is_a_failed_run(
        self,
        executor: TaskExecutor,
        task_store: TaskStore,
        adapter_registry: AdapterRegistry,
        define_task,
        make_adapter,
    ) -> None:
        """Test that config validation happens before the adapter runs."""
        adapter = make_adapter()
        adapter_registry.register(TaskKind.CLEANUP, adapter)
        task = await define_task("cleanup", config={"keep_logs_days": "forever"})

        with pytest.raises(TaskExecutionError) as exc_info:
            await executor.run_task(task)

        assert isinstance(exc_info.value.__cause__, TaskConfigError)
        assert adapter.calls == []

    @pytest.mark.asyncio
    async def test_history_closed_when_status_write_fails(
        self,
        executor: TaskExecutor,
        task_store: TaskStore,
        running_registry: RunningTaskRegistry,
        adapter_registry: AdapterRegistry,
        define_task,
        make_adapter,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that the run still ends failed and keeps the adapter error."""
        adapter_registry.register(TaskKind.SYNC_USERS, make_adapter(error=RuntimeError("401")))
        task = await define_task("sync_users")

        async def broken_mark_failed(*args, **kwargs):
            raise StoreError("database is locked")

        monkeypatch.setattr(task_store, "mark_failed", broken_mark_failed)

        with pytest.raises(TaskExecutionError) as exc_info:
            await executor.run_task(task)

        assert exc_info.value.error_message == "401"
        history = await task_store.get_task_history("sync_users")
        assert history[0].status == RunStatus.FAILED
        assert history[0].error_message == "401"
        assert not running_registry.is_running("sync_users")


class TestMutex:
    """Tests for the per-type mutex."""

    @pytest.mark.asyncio
    async def test_running_type_rejected_without_writes(
        self,
        executor: TaskExecutor,
        task_store: TaskStore,
        running_registry: RunningTaskRegistry,
        adapter_registry: AdapterRegistry,
        define_task,
        make_adapter,
    ) -> None:
        """Test that a second dispatch fails before touching the store."""
        adapter = make_adapter()
        adapter_registry.register(TaskKind.SYNC_USERS, adapter)
        task = await define_task("sync_users")
        running_registry.register("sync_users")

        with pytest.raises(MutexViolationError):
            await executor.run_task(task)

        stored = await task_store.require_task("sync_users")
        assert stored.last_status == TaskStatus.IDLE
        assert stored.last_run_at is None
        assert await task_store.get_task_history("sync_users") == []
        assert adapter.calls == []
        # The original holder keeps the lock
        assert running_registry.is_running("sync_users")

    @pytest.mark.asyncio
    async def test_concurrent_runs_of_one_type(
        self,
        executor: TaskExecutor,
        task_store: TaskStore,
        adapter_registry: AdapterRegistry,
        define_task,
        make_adapter,
    ) -> None:
        """Test that only one of two overlapping runs executes."""
        gate = asyncio.Event()
        adapter = make_adapter(gate=gate)
        adapter_registry.register(TaskKind.SYNC_USERS, adapter)
        task = await define_task("sync_users")

        first = asyncio.create_task(executor.run_task(task))
        await adapter.started.wait()
        with pytest.raises(MutexViolationError):
            await executor.run_task(task)
        gate.set()
        await first

        assert len(adapter.calls) == 1
        assert len(await task_store.get_task_history("sync_users")) == 1

    @pytest.mark.asyncio
    async def test_different_types_run_concurrently(
        self,
        executor: TaskExecutor,
        adapter_registry: AdapterRegistry,
        running_registry: RunningTaskRegistry,
        define_task,
        make_adapter,
    ) -> None:
        """Test that the mutex is per type."""
        gate = asyncio.Event()
        users = make_adapter(gate=gate)
        groups = make_adapter(gate=gate)
        adapter_registry.register(TaskKind.SYNC_USERS, users)
        adapter_registry.register(TaskKind.SYNC_GROUPS, groups)
        users_task = await define_task("sync_users")
        groups_task = await define_task("sync_groups")

        runs = [
            asyncio.create_task(executor.run_task(users_task)),
            asyncio.create_task(executor.run_task(groups_task)),
        ]
        await users.started.wait()
        await groups.started.wait()

        assert set(running_registry.task_types()) == {"sync_users", "sync_groups"}
        gate.set()
        await asyncio.gather(*runs)
        assert len(running_registry) == 0


class TestRunUnscheduled:
    """Tests for runs without a catalog row."""

    @pytest.mark.asyncio
    async def test_writes_history_only(
        self,
        executor: TaskExecutor,
        task_store: TaskStore,
        adapter_registry: AdapterRegistry,
        make_adapter,
    ) -> None:
        """Test that history is written but no catalog row is created."""
        adapter_registry.register(TaskKind.SYNC_NPCU, make_adapter(result={"records_processed": 4}))

        result = await executor.run_unscheduled("sync_npcu", {})

        assert result["records_processed"] == 4
        assert await task_store.get_task("sync_npcu") is None
        history = await task_store.get_task_history("sync_npcu")
        assert history[0].status == RunStatus.SUCCESS
        assert history[0].task_id is None

    @pytest.mark.asyncio
    async def test_failure(
        self,
        executor: TaskExecutor,
        task_store: TaskStore,
        running_registry: RunningTaskRegistry,
        adapter_registry: AdapterRegistry,
        make_adapter,
    ) -> None:
        """Test that unscheduled failures are recorded and raised."""
        adapter_registry.register(TaskKind.SYNC_NPCU, make_adapter(error=RuntimeError("nope")))

        with pytest.raises(TaskExecutionError):
            await executor.run_unscheduled("sync_npcu")

        history = await task_store.get_task_history("sync_npcu")
        assert history[0].status == RunStatus.FAILED
        assert not running_registry.is_running("sync_npcu")
