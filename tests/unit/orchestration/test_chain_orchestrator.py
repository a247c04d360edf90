"""Tests for the chain orchestrator."""

import asyncio

import pytest

from portalsync.core.exceptions import ChainAbortedError, ChainDefinitionError
from portalsync.orchestration import (
    ChainOrchestrator,
    ChainStatus,
    ChainStep,
    StepStatus,
    current_sync_context,
)


def recorder(log: list[str], name: str, error: Exception | None = None):
    """Create a step action that appends its name to ``log``."""

    async def action():
        log.append(name)
        if error is not None:
            raise error
        return {"records_processed": 1}

    return action


class TestPlanning:
    """Tests for chain validation and grouping."""

    def test_groups_consecutive_tier_members(self) -> None:
        """Test that a tier becomes one group."""
        chain = ChainOrchestrator(
            "c",
            [
                ChainStep("a", recorder([], "a"), tier="fetch"),
                ChainStep("b", recorder([], "b"), tier="fetch"),
                ChainStep("c", recorder([], "c"), depends_on=("a",)),
            ],
        )

        assert [[s.name for s in g] for g in chain.groups] == [["a", "b"], ["c"]]

    def test_duplicate_names(self) -> None:
        """Test that step names must be unique."""
        with pytest.raises(ChainDefinitionError):
            ChainOrchestrator("c", [ChainStep("a", recorder([], "a")), ChainStep("a", recorder([], "a"))])

    def test_dependency_must_be_declared_first(self) -> None:
        """Test that forward references are rejected."""
        with pytest.raises(ChainDefinitionError):
            ChainOrchestrator(
                "c",
                [
                    ChainStep("a", recorder([], "a"), depends_on=("b",)),
                    ChainStep("b", recorder([], "b")),
                ],
            )

    def test_dependency_inside_tier(self) -> None:
        """Test that tier members cannot depend on each other."""
        with pytest.raises(ChainDefinitionError):
            ChainOrchestrator(
                "c",
                [
                    ChainStep("a", recorder([], "a"), tier="t"),
                    ChainStep("b", recorder([], "b"), depends_on=("a",), tier="t"),
                ],
            )

    def test_split_tier(self) -> None:
        """Test that a tier interrupted by another step is rejected."""
        with pytest.raises(ChainDefinitionError):
            ChainOrchestrator(
                "c",
                [
                    ChainStep("a", recorder([], "a"), tier="t"),
                    ChainStep("b", recorder([], "b")),
                    ChainStep("c", recorder([], "c"), tier="t"),
                ],
            )


class TestExecution:
    """Tests for running chains."""

    @pytest.mark.asyncio
    async def test_all_steps_complete(self, clock) -> None:
        """Test a clean run."""
        log: list[str] = []
        chain = ChainOrchestrator(
            "c",
            [
                ChainStep("a", recorder(log, "a")),
                ChainStep("b", recorder(log, "b"), depends_on=("a",)),
            ],
            clock=clock,
        )

        run = await chain.run(chain_id="run-1")

        assert run.status == ChainStatus.COMPLETED
        assert log == ["a", "b"]
        data = run.to_dict()
        assert data["chain_id"] == "run-1"
        assert data["completed"] == ["a", "b"]
        assert data["failed"] == []
        assert data["skipped"] == []
        assert run.step("a").output == {"records_processed": 1}

    @pytest.mark.asyncio
    async def test_failed_optional_dependency_skips_dependent(self, clock) -> None:
        """Test that a dependent of a failed step never executes."""
        log: list[str] = []
        chain = ChainOrchestrator(
            "c",
            [
                ChainStep("courses", recorder(log, "courses", RuntimeError("down")), required=False),
                ChainStep("npcu", recorder(log, "npcu"), depends_on=("courses",), required=False),
                ChainStep("cleanup", recorder(log, "cleanup"), required=False),
            ],
            clock=clock,
        )

        run = await chain.run()

        assert "npcu" not in log
        assert log == ["courses", "cleanup"]
        assert run.status == ChainStatus.COMPLETED
        assert run.names_with(StepStatus.FAILED) == ["courses"]
        assert run.names_with(StepStatus.SKIPPED) == ["npcu"]
        assert run.step("npcu").error == "Unmet dependencies: courses"
        assert run.step("courses").error == "down"

    @pytest.mark.asyncio
    async def test_skipped_step_skips_its_dependents(self, clock) -> None:
        """Test that skipping propagates down the chain."""
        log: list[str] = []
        chain = ChainOrchestrator(
            "c",
            [
                ChainStep("a", recorder(log, "a", RuntimeError("x")), required=False),
                ChainStep("b", recorder(log, "b"), depends_on=("a",), required=False),
                ChainStep("c", recorder(log, "c"), depends_on=("b",), required=False),
            ],
            clock=clock,
        )

        run = await chain.run()

        assert log == ["a"]
        assert run.names_with(StepStatus.SKIPPED) == ["b", "c"]

    @pytest.mark.asyncio
    async def test_required_failure_aborts(self, clock) -> None:
        """Test that a failing required step stops the chain."""
        log: list[str] = []
        chain = ChainOrchestrator(
            "c",
            [
                ChainStep("users", recorder(log, "users", RuntimeError("401"))),
                ChainStep("cleanup", recorder(log, "cleanup"), required=False),
            ],
            clock=clock,
        )

        with pytest.raises(ChainAbortedError) as exc_info:
            await chain.run()

        assert exc_info.value.step_name == "users"
        assert exc_info.value.error_message == "401"
        assert log == ["users"]
        run = exc_info.value.run
        assert run.status == ChainStatus.FAILED
        assert run.completed_at is not None
        assert run.names_with(StepStatus.FAILED) == ["users"]

    @pytest.mark.asyncio
    async def test_required_failure_in_tier_records_siblings(self, clock) -> None:
        """Test that the whole tier is recorded before aborting."""
        log: list[str] = []
        chain = ChainOrchestrator(
            "c",
            [
                ChainStep("users", recorder(log, "users", RuntimeError("x")), tier="fetch"),
                ChainStep("groups", recorder(log, "groups"), tier="fetch"),
                ChainStep("enrollments", recorder(log, "enrollments"), depends_on=("users",)),
            ],
            clock=clock,
        )

        with pytest.raises(ChainAbortedError) as exc_info:
            await chain.run()

        run = exc_info.value.run
        assert run.names_with(StepStatus.COMPLETED) == ["groups"]
        assert "enrollments" not in log

    @pytest.mark.asyncio
    async def test_tier_runs_concurrently(self, clock) -> None:
        """Test that tier members overlap in time."""
        started: list[str] = []
        both_started = asyncio.Event()

        def waiter(name: str):
            async def action():
                started.append(name)
                if len(started) == 2:
                    both_started.set()
                await asyncio.wait_for(both_started.wait(), timeout=1)
                return name

            return action

        chain = ChainOrchestrator(
            "c",
            [
                ChainStep("a", waiter("a"), tier="fetch"),
                ChainStep("b", waiter("b"), tier="fetch"),
            ],
            clock=clock,
        )

        run = await chain.run()

        assert run.names_with(StepStatus.COMPLETED) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_steps_share_one_context(self, clock) -> None:
        """Test that later steps see what earlier steps cached."""
        fetches: list[int] = []

        async def fetch():
            fetches.append(1)
            return [{"id": "u1"}, {"id": "u2"}]

        async def load_users():
            return len(await current_sync_context().get_all_or_fetch("users", fetch))

        chain = ChainOrchestrator(
            "c",
            [
                ChainStep("first", load_users),
                ChainStep("second", load_users, depends_on=("first",)),
            ],
            clock=clock,
        )

        run = await chain.run()

        assert len(fetches) == 1
        assert run.step("second").output == 2
        assert run.context_stats["hits"] == 1
        assert run.context_stats["cached"] == {"users": 2}
        assert current_sync_context() is None

    @pytest.mark.asyncio
    async def test_context_closed_after_abort(self, clock) -> None:
        """Test that the context is torn down even on failure."""
        seen = []

        async def capture():
            seen.append(current_sync_context())
            raise RuntimeError("x")

        chain = ChainOrchestrator("c", [ChainStep("a", capture)], clock=clock)

        with pytest.raises(ChainAbortedError):
            await chain.run()

        assert seen[0] is not None
        assert seen[0].closed
        assert current_sync_context() is None

    @pytest.mark.asyncio
    async def test_concurrent_chains_isolated(self, clock) -> None:
        """Test that two chains never share a context."""
        seen: dict[str, object] = {}

        def capture(key: str):
            async def action():
                await asyncio.sleep(0)
                seen[key] = current_sync_context()

            return action

        first = ChainOrchestrator("one", [ChainStep("a", capture("one"))], clock=clock)
        second = ChainOrchestrator("two", [ChainStep("a", capture("two"))], clock=clock)

        await asyncio.gather(first.run(), second.run())

        assert seen["one"] is not seen["two"]

    @pytest.mark.asyncio
    async def test_progress_reported(self, clock) -> None:
        """Test per-group progress updates."""
        updates = []
        chain = ChainOrchestrator(
            "c",
            [ChainStep("a", recorder([], "a")), ChainStep("b", recorder([], "b"))],
            clock=clock,
            on_progress=lambda stage, current=0, total=0, details=None: updates.append((stage, current, total)),
        )

        await chain.run()

        assert updates == [("Running a", 0, 2), ("Running b", 1, 2), ("Complete", 2, 2)]
