"""Tests for the warm pool autoscaler."""

import asyncio
import logging

import pytest

from deployctl.core.exceptions import CapacityError, ConfigError
from deployctl.deployment.autoscaler import CapacityAutoscaler
from deployctl.deployment.interfaces import CapacityExecutor, UtilizationSource
from deployctl.deployment.memory import (
    InMemoryCapacityExecutor,
    InMemoryTrafficRouter,
    StaticUtilizationSource,
)
from deployctl.deployment.models import AutoScalingConfig, TrafficSplit, WarmPool
from deployctl.deployment.store import WarmPoolStore

TARGET = "checkout"


class BrokenExecutor(CapacityExecutor):
    def __init__(self):
        self.calls = 0

    async def set_warm_instances(self, target, count):
        self.calls += 1
        raise CapacityError("capacity API unavailable")


class FailingOnceUtilization(UtilizationSource):
    """Raises an unexpected error on the first call, then reports high load."""

    def __init__(self):
        self.calls = 0

    async def fetch_utilization(self, target):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("utilization backend returned garbage")
        return 0.95


class BrokenForTarget(UtilizationSource):
    def __init__(self, broken, value):
        self.broken = broken
        self.value = value

    async def fetch_utilization(self, target):
        if target == self.broken:
            raise RuntimeError(f"no series for {target}")
        return self.value


def make_pool(**overrides):
    values = dict(target=TARGET, current=2, min=1, max=10, utilization_target=0.7)
    values.update(overrides)
    return WarmPool(**values)


@pytest.fixture
def executor():
    return InMemoryCapacityExecutor()


@pytest.fixture
def pools():
    return WarmPoolStore()


@pytest.fixture
def autoscaler(executor, pools):
    return CapacityAutoscaler(executor, pools, hysteresis=0.05, retry_backoff=0)


class TestDesiredCount:
    """Tests for the target-tracking computation."""

    def test_scale_out_proportional(self, autoscaler):
        assert autoscaler.desired_count(make_pool(current=2), 0.95) == 3

    def test_scale_out_at_least_one(self, autoscaler):
        assert autoscaler.desired_count(make_pool(current=1), 0.8) == 2

    def test_scale_out_clamped_to_max(self, autoscaler):
        assert autoscaler.desired_count(make_pool(current=9), 1.0) == 10
        assert autoscaler.desired_count(make_pool(current=10), 1.0) == 10

    def test_scale_in(self, autoscaler):
        assert autoscaler.desired_count(make_pool(current=8), 0.3) == 4

    def test_scale_in_clamped_to_min(self, autoscaler):
        assert autoscaler.desired_count(make_pool(current=2), 0.05) == 1

    def test_within_hysteresis_band(self, autoscaler):
        assert autoscaler.desired_count(make_pool(current=4), 0.73) == 4
        assert autoscaler.desired_count(make_pool(current=4), 0.66) == 4


class TestAdjust:
    """Tests for applying adjustments."""

    @pytest.mark.asyncio
    async def test_high_utilization_scales_out(self, autoscaler, executor, pools):
        pool = make_pool()
        pools.put(pool)

        result = await autoscaler.adjust(pool, 0.95)

        assert result == 3
        assert executor.counts[TARGET] == 3
        assert pools.get(TARGET).current == 3

    @pytest.mark.asyncio
    async def test_no_change_skips_executor(self, autoscaler, executor, pools):
        pool = make_pool(current=4)
        pools.put(pool)

        assert await autoscaler.adjust(pool, 0.7) == 4
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_inactive_pool_untouched(self, autoscaler, executor):
        pool = make_pool(enabled=False)

        assert await autoscaler.adjust(pool, 1.0) == 2
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_zero_max_is_inactive(self, autoscaler, executor):
        pool = make_pool(current=0, min=0, max=0)

        assert pool.active is False
        assert await autoscaler.adjust(pool, 1.0) == 0
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_executor_failure_is_not_fatal(self, pools):
        executor = BrokenExecutor()
        autoscaler = CapacityAutoscaler(executor, pools, retry_backoff=0)
        pool = make_pool()
        pools.put(pool)

        result = await autoscaler.adjust(pool, 0.95)

        assert result == 3
        assert executor.calls == 2
        assert await autoscaler.apply(pool) is False


class TestTick:
    """Tests for the periodic loop."""

    @pytest.mark.asyncio
    async def test_tick_uses_utilization_source(self, executor, pools):
        pools.put(make_pool())
        pools.put(make_pool(target="search", current=5))
        utilization = StaticUtilizationSource({TARGET: 0.95, "search": 0.7})
        autoscaler = CapacityAutoscaler(executor, pools, utilization=utilization)

        results = await autoscaler.tick()

        assert results == {TARGET: 3, "search": 5}
        assert executor.calls == [(TARGET, 3)]

    @pytest.mark.asyncio
    async def test_missing_sample_keeps_size(self, executor, pools):
        pools.put(make_pool())
        autoscaler = CapacityAutoscaler(executor, pools, utilization=StaticUtilizationSource())

        assert await autoscaler.tick() == {TARGET: 2}

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, executor, pools):
        pools.put(make_pool())
        utilization = StaticUtilizationSource({TARGET: 0.95})
        autoscaler = CapacityAutoscaler(
            executor, pools, utilization=utilization, tick_interval=0.01
        )

        autoscaler.start()
        await asyncio.sleep(0.05)
        await asyncio.wait_for(autoscaler.stop(), timeout=1.0)

        # Repeated ticks at 0.95 keep scaling out until the max
        assert pools.get(TARGET).current > 3
        assert pools.get(TARGET).current <= 10

    @pytest.mark.asyncio
    async def test_unexpected_error_skips_only_that_pool(self, executor, pools):
        pools.put(make_pool())
        pools.put(make_pool(target="search", current=5))
        autoscaler = CapacityAutoscaler(
            executor, pools, utilization=BrokenForTarget(TARGET, 0.95)
        )

        results = await autoscaler.tick()

        assert results == {TARGET: 2, "search": 7}
        assert executor.calls == [("search", 7)]

    @pytest.mark.asyncio
    async def test_run_survives_unexpected_error(self, executor, pools):
        pools.put(make_pool())
        utilization = FailingOnceUtilization()
        autoscaler = CapacityAutoscaler(
            executor, pools, utilization=utilization, tick_interval=0.01
        )

        task = autoscaler.start()
        await asyncio.sleep(0.05)

        assert not task.done()
        await asyncio.wait_for(autoscaler.stop(), timeout=1.0)

        assert utilization.calls > 1
        assert pools.get(TARGET).current >= 3

    @pytest.mark.asyncio
    async def test_resize_records_rollout_split(self, executor, pools, caplog):
        router = InMemoryTrafficRouter()
        await router.set_split(TARGET, TrafficSplit.for_candidate(10))
        pools.put(make_pool())
        autoscaler = CapacityAutoscaler(
            executor,
            pools,
            utilization=StaticUtilizationSource({TARGET: 0.95}),
            router=router,
        )

        with caplog.at_level(logging.INFO, logger="deployctl.deployment.autoscaler"):
            await autoscaler.tick()

        assert "candidate at 10%" in caplog.text
        assert "warm pool 2 -> 3" in caplog.text


class TestWarmPool:
    def test_current_clamped_on_creation(self):
        assert make_pool(current=50).current == 10

    def test_invalid_bounds(self):
        with pytest.raises(ConfigError):
            make_pool(min=5, max=2)

    def test_invalid_utilization_target(self):
        with pytest.raises(ConfigError):
            make_pool(utilization_target=0)

    def test_from_autoscaling(self):
        scaling = AutoScalingConfig(
            enabled=True, min_capacity=1, max_capacity=5, utilization_target=0.5
        )

        pool = WarmPool.from_autoscaling("api", scaling, current=9)

        assert (pool.current, pool.min, pool.max) == (5, 1, 5)
        assert pool.utilization_target == 0.5
        assert pool.active

    def test_from_disabled_autoscaling_is_inactive(self):
        pool = WarmPool.from_autoscaling(
            "api", AutoScalingConfig(enabled=False, min_capacity=0, max_capacity=3)
        )

        assert pool.current == 0
        assert not pool.active


class TestWarmPoolStore:
    def test_persisted_round_trip(self, tmp_path):
        store = WarmPoolStore(tmp_path)
        store.put(make_pool(current=4))

        reloaded = WarmPoolStore(tmp_path)

        assert reloaded.get(TARGET).current == 4
        assert reloaded.get(TARGET).max == 10
