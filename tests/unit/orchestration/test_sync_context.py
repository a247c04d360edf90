"""Tests for the per-chain sync context."""

import asyncio

import pytest

from portalsync.orchestration import (
    SyncContext,
    activate_sync_context,
    current_sync_context,
)


class TestSyncContextEntities:
    """Tests for single-entity caching."""

    def test_get_miss_then_hit(self, clock) -> None:
        """Test hit and miss counting."""
        ctx = SyncContext(clock=clock)

        assert ctx.get("groups", "g1") is None
        ctx.set("groups", "g1", {"id": "g1"})
        assert ctx.get("groups", "g1") == {"id": "g1"}

        stats = ctx.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5

    @pytest.mark.asyncio
    async def test_get_or_fetch(self, clock) -> None:
        """Test that a second lookup is served from the cache."""
        ctx = SyncContext(clock=clock)
        calls = []

        async def fetch():
            calls.append(1)
            return {"id": "u1"}

        first = await ctx.get_or_fetch("users", "u1", fetch)
        second = await ctx.get_or_fetch("users", "u1", fetch)

        assert first == second == {"id": "u1"}
        assert len(calls) == 1
        assert ctx.stats()["api_calls_saved"] == 1


class TestSyncContextLists:
    """Tests for complete-list caching."""

    @pytest.mark.asyncio
    async def test_get_all_or_fetch(self, clock) -> None:
        """Test that a complete list is fetched once."""
        ctx = SyncContext(clock=clock, page_size=100)
        calls = []

        async def fetch():
            calls.append(1)
            return [{"id": str(i)} for i in range(250)]

        first = await ctx.get_all_or_fetch("users", fetch)
        second = await ctx.get_all_or_fetch("users", fetch)

        assert len(first) == len(second) == 250
        assert len(calls) == 1
        assert ctx.has_all("users")
        # 250 records at 100 per page is three calls saved
        assert ctx.stats()["api_calls_saved"] == 3

    def test_set_all_custom_key(self, clock) -> None:
        """Test keying a list by another field."""
        ctx = SyncContext(clock=clock)
        ctx.set_all("crm_accounts", [{"Id": 7, "Name": "Acme"}], key="Id")

        assert ctx.get("crm_accounts", "7") == {"Id": 7, "Name": "Acme"}

    def test_partial_entries_are_not_a_complete_list(self, clock) -> None:
        """Test that single sets do not satisfy get_all."""
        ctx = SyncContext(clock=clock)
        ctx.set("users", "u1", {"id": "u1"})

        assert not ctx.has_all("users")
        assert ctx.get_all("users") is None

    def test_clear(self, clock) -> None:
        """Test clearing one type and everything."""
        ctx = SyncContext(clock=clock)
        ctx.set_all("users", [{"id": "u1"}])
        ctx.set_all("groups", [{"id": "g1"}])

        ctx.clear("users")
        assert not ctx.has_all("users")
        assert ctx.has_all("groups")

        ctx.clear()
        assert ctx.stats()["cached"] == {}


class TestSyncContextLifecycle:
    """Tests for TTL, close and activation."""

    def test_expiry(self, clock) -> None:
        """Test that an expired context behaves as empty."""
        ctx = SyncContext(clock=clock, ttl_minutes=60)
        ctx.set_all("users", [{"id": "u1"}])

        clock.advance(minutes=61)

        assert ctx.is_expired
        assert not ctx.has_all("users")
        assert ctx.get("users", "u1") is None

    def test_refresh(self, clock) -> None:
        """Test that refresh extends the TTL."""
        ctx = SyncContext(clock=clock, ttl_minutes=60)
        clock.advance(minutes=50)
        ctx.refresh()
        clock.advance(minutes=50)

        assert ctx.is_active

    def test_close_drops_data(self, clock) -> None:
        """Test that a closed context holds nothing and accepts nothing."""
        ctx = SyncContext(clock=clock)
        ctx.set_all("users", [{"id": "u1"}])

        ctx.close()
        ctx.set("users", "u2", {"id": "u2"})

        assert ctx.closed
        assert ctx.stats()["cached"] == {}

    def test_no_context_outside_activation(self, clock) -> None:
        """Test that nothing is active by default."""
        assert current_sync_context() is None

    def test_activation_scope(self, clock) -> None:
        """Test that activation publishes and then closes the context."""
        ctx = SyncContext(clock=clock)

        with activate_sync_context(ctx):
            assert current_sync_context() is ctx

        assert current_sync_context() is None
        assert ctx.closed

    def test_activation_closes_on_error(self, clock) -> None:
        """Test teardown when the body raises."""
        ctx = SyncContext(clock=clock)

        with pytest.raises(RuntimeError):
            with activate_sync_context(ctx):
                raise RuntimeError("boom")

        assert ctx.closed
        assert current_sync_context() is None

    @pytest.mark.asyncio
    async def test_child_tasks_see_context(self, clock) -> None:
        """Test that gathered coroutines inherit the active context."""
        ctx = SyncContext(clock=clock)

        async def peek():
            return current_sync_context()

        with activate_sync_context(ctx):
            seen = await asyncio.gather(peek(), peek())

        assert seen == [ctx, ctx]

    @pytest.mark.asyncio
    async def test_concurrent_activations_are_isolated(self, clock) -> None:
        """Test that two concurrent runs each see their own context."""
        first = SyncContext(chain_id="a", clock=clock)
        second = SyncContext(chain_id="b", clock=clock)

        async def run(ctx: SyncContext):
            with activate_sync_context(ctx):
                await asyncio.sleep(0)
                return current_sync_context().chain_id

        results = await asyncio.gather(run(first), run(second))

        assert results == ["a", "b"]
