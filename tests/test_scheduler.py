"""Tests for the rate-limited task scheduler."""

import asyncio
from typing import Optional

import pytest

from codegraph_indexer.errors import ProviderError, RetryableProviderError
from codegraph_indexer.scheduler import ProviderSlot, TaskScheduler


class GatedProvider:
    """Blocks every request until the gate opens; tracks peak concurrency."""

    def __init__(self, gate: asyncio.Event) -> None:
        self.gate = gate
        self.active = 0
        self.peak = 0
        self.calls = 0

    async def generate(self, prompt: str, max_tokens: int = 150) -> Optional[str]:
        self.calls += 1
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await self.gate.wait()
        finally:
            self.active -= 1
        return f"desc:{prompt}"


class FlakyProvider:
    """Raises *error* for the first *failures* calls, then succeeds."""

    def __init__(self, failures: int, error: Exception) -> None:
        self.failures = failures
        self.error = error
        self.calls = 0

    async def generate(self, prompt: str, max_tokens: int = 150) -> Optional[str]:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class TestTaskScheduler:
    """Tests for TaskScheduler."""

    @pytest.mark.asyncio
    async def test_limits_are_respected(self):
        """Test that no provider ever runs more than its limit."""
        gate = asyncio.Event()
        p1, p2 = GatedProvider(gate), GatedProvider(gate)
        scheduler = TaskScheduler([ProviderSlot("p1", p1, limit=3), ProviderSlot("p2", p2, limit=2)])

        tasks = [asyncio.create_task(scheduler.generate_description(f"q{i}")) for i in range(10)]
        for _ in range(5):
            await asyncio.sleep(0)

        stats = scheduler.stats()
        assert stats.in_flight == {"p1": 3, "p2": 2}
        assert stats.queued == 5

        gate.set()
        results = await asyncio.gather(*tasks)
        assert results == [f"desc:q{i}" for i in range(10)]
        assert p1.peak == 3
        assert p2.peak == 2
        assert sum(scheduler.stats().completed.values()) == 10
        assert scheduler.stats().in_flight == {"p1": 0, "p2": 0}

    @pytest.mark.asyncio
    async def test_first_provider_preferred(self):
        """Test that a lone request goes to the highest-priority provider."""
        first, second = FlakyProvider(0, RuntimeError()), FlakyProvider(0, RuntimeError())
        scheduler = TaskScheduler([ProviderSlot("first", first, limit=1), ProviderSlot("second", second, limit=1)])
        assert await scheduler.generate_description("x") == "ok"
        assert (first.calls, second.calls) == (1, 0)

    @pytest.mark.asyncio
    async def test_retryable_error_is_retried(self):
        """Test that rate limits are retried until the request succeeds."""
        provider = FlakyProvider(2, RetryableProviderError("HTTP 429", status=429))
        slot = ProviderSlot("p", provider, limit=1)
        scheduler = TaskScheduler([slot], max_retries=3, backoff_unit=0.001)
        assert await scheduler.generate_description("x") == "ok"
        assert provider.calls == 3
        assert (slot.failed, slot.completed) == (2, 1)

    @pytest.mark.asyncio
    async def test_unexpected_error_is_retried(self):
        """Test that unclassified exceptions count as transient."""
        provider = FlakyProvider(1, RuntimeError("connection reset"))
        scheduler = TaskScheduler([ProviderSlot("p", provider)], backoff_unit=0.001)
        assert await scheduler.generate_description("x") == "ok"

    @pytest.mark.asyncio
    async def test_permanent_error_resolves_none(self):
        """Test that non-retryable errors are not retried."""
        provider = FlakyProvider(1, ProviderError("HTTP 401", status=401))
        scheduler = TaskScheduler([ProviderSlot("p", provider)], backoff_unit=0.001)
        assert await scheduler.generate_description("x") is None
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        """Test that a caller gets None after max_retries failed retries."""
        provider = FlakyProvider(100, RetryableProviderError("HTTP 503", status=503))
        scheduler = TaskScheduler([ProviderSlot("p", provider)], max_retries=2, backoff_unit=0.001)
        assert await scheduler.generate_description("x") is None
        assert provider.calls == 3

    @pytest.mark.asyncio
    async def test_no_providers(self):
        """Test that an empty pool disables enrichment."""
        scheduler = TaskScheduler([])
        assert scheduler.enabled is False
        assert await scheduler.generate_description("x") is None

    @pytest.mark.asyncio
    async def test_close_releases_waiting_callers(self):
        """Test that close resolves requests waiting in backoff."""
        provider = FlakyProvider(100, RetryableProviderError("HTTP 429", status=429))
        scheduler = TaskScheduler([ProviderSlot("p", provider)], backoff_unit=60)
        pending = asyncio.create_task(scheduler.generate_description("x"))
        for _ in range(5):
            await asyncio.sleep(0)
        assert provider.calls == 1

        await scheduler.close()
        assert await asyncio.wait_for(pending, timeout=1) is None
        assert await scheduler.generate_description("y") is None
