"""Unit tests for the in-memory session registry."""

import asyncio

from phone_auth.registry import SessionRegistry

from .conftest import FakeClock


class TestSessionRegistry:
    """TTL, lazy eviction and sweep behaviour."""

    def setup_method(self):
        self.clock = FakeClock(start=0.0)
        self.registry = SessionRegistry(ttl_seconds=300, sweep_interval_seconds=60, clock=self.clock)

    def test_get_returns_value_before_ttl(self):
        """Entries are visible for any t < TTL after insertion."""
        self.registry.put("s1", "https://p/status/s1")
        for t in (0, 1, 150, 299.999):
            self.clock.now = t
            assert self.registry.get("s1") == "https://p/status/s1"

    def test_get_returns_none_at_and_after_ttl_without_sweep(self):
        """Lazy eviction: an expired read removes the entry."""
        self.registry.put("s1", "https://p/status/s1")
        self.clock.now = 300
        assert self.registry.get("s1") is None
        assert len(self.registry) == 0

    def test_unknown_key(self):
        assert self.registry.get("missing") is None

    def test_put_overwrites_and_restarts_ttl(self):
        self.registry.put("s1", "https://p/a")
        self.clock.advance(200)
        self.registry.put("s1", "https://p/b")
        self.clock.advance(200)
        assert self.registry.get("s1") == "https://p/b"

    def test_sweep_removes_exactly_expired_entries(self):
        """sweep() at t drops entries with expires_at <= t and nothing else."""
        self.registry.put("old-1", "u1")
        self.registry.put("old-2", "u2")
        self.clock.advance(100)
        self.registry.put("new-1", "u3")
        self.clock.advance(200)  # old-* expire exactly now, new-1 has 100s left

        removed = self.registry.sweep()

        assert removed == 2
        assert len(self.registry) == 1
        assert self.registry.get("new-1") == "u3"
        assert self.registry.get("old-1") is None

    def test_sweep_is_idempotent(self):
        self.registry.put("s1", "u")
        self.clock.advance(301)
        assert self.registry.sweep() == 1
        assert self.registry.sweep() == 0

    def test_reads_do_not_extend_lifetime(self):
        self.registry.put("s1", "u")
        expires_at = self.registry.entry("s1").expires_at
        for _ in range(5):
            self.clock.advance(10)
            assert self.registry.entry("s1").expires_at == expires_at


class TestSweeperLifecycle:
    """The sweep task is owned by the registry and stops cleanly."""

    def test_start_and_stop(self):
        async def scenario():
            clock = FakeClock(start=0.0)
            registry = SessionRegistry(ttl_seconds=1, sweep_interval_seconds=0.01, clock=clock)
            registry.put("s1", "u")
            clock.advance(5)

            registry.start()
            assert registry.running
            await asyncio.sleep(0.05)
            # swept by the background task, not by a read
            assert len(registry) == 0

            await registry.stop()
            assert not registry.running

        asyncio.run(scenario())

    def test_stop_without_start(self):
        asyncio.run(SessionRegistry().stop())
