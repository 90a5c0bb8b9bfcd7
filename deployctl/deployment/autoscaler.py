"""
Capacity Autoscaler.

Keeps each target's warm pool tracking its utilization target:
- Utilization above target: scale out proportionally, clamped to max
- Utilization below target: scale in proportionally, clamped to min
- Inside the hysteresis band: no change

Runs on its own tick, independent of rollouts. Executor failures are logged
and never stop the loop; serving continues on the cold-start path.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Dict, Optional

from ..core.async_utils import call_with_deadline, retry_call, wait_or_cancelled
from ..core.exceptions import CallTimeoutError, CapacityError, log_exception
from .interfaces import CapacityExecutor, TrafficRouter, UtilizationSource
from .models import TrafficSplit, WarmPool
from .store import WarmPoolStore

logger = logging.getLogger(__name__)


class CapacityAutoscaler:
    """Target-tracking scaler for warm instance pools."""

    def __init__(
        self,
        executor: CapacityExecutor,
        pools: WarmPoolStore,
        utilization: Optional[UtilizationSource] = None,
        router: Optional[TrafficRouter] = None,
        tick_interval: float = 60.0,
        hysteresis: float = 0.05,
        call_timeout: Optional[float] = 10.0,
        retry_backoff: float = 1.0,
    ):
        self.executor = executor
        self.pools = pools
        self.utilization = utilization
        self.router = router
        self.tick_interval = tick_interval
        self.hysteresis = hysteresis
        self.call_timeout = call_timeout
        self.retry_backoff = retry_backoff

        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def desired_count(self, pool: WarmPool, observed_utilization: float) -> int:
        """Pool size for an utilization sample, before side effects."""
        target = pool.utilization_target
        if abs(observed_utilization - target) <= self.hysteresis:
            return pool.current

        proportional = math.ceil(pool.current * observed_utilization / target)
        if observed_utilization > target:
            desired = max(proportional, pool.current + 1)
        else:
            desired = min(proportional, pool.current - 1)
        return pool.clamp(desired)

    async def adjust(
        self,
        pool: WarmPool,
        observed_utilization: float,
        split: Optional[TrafficSplit] = None,
    ) -> int:
        """
        Resize a pool for an utilization sample and apply it.

        ``split`` is the target's current traffic split, when known; it is
        recorded alongside the resize.

        Returns:
            The pool's current size after the adjustment
        """
        if not pool.active:
            return pool.current

        desired = self.desired_count(pool, observed_utilization)
        if desired == pool.current:
            logger.debug(
                f"{pool.target}: utilization {observed_utilization:.2f} within band, "
                f"keeping {pool.current}"
            )
            return pool.current

        previous = pool.current
        pool.current = desired
        self.pools.put(pool)

        rollout = ""
        if split is not None and split.candidate > 0:
            rollout = f", candidate at {split.candidate:g}%"
        logger.info(
            f"{pool.target}: utilization {observed_utilization:.2f} "
            f"(target {pool.utilization_target:.2f}{rollout}), "
            f"warm pool {previous} -> {desired}"
        )
        await self.apply(pool)
        return pool.current

    async def apply(self, pool: WarmPool) -> bool:
        """Push the pool size to the executor, retrying once."""
        try:
            await retry_call(
                lambda: call_with_deadline(
                    self.executor.set_warm_instances(pool.target, pool.current),
                    self.call_timeout,
                    context=f"set_warm_instances({pool.target})",
                ),
                attempts=2,
                backoff=self.retry_backoff,
                exceptions=(CapacityError, CallTimeoutError, OSError),
                context=f"{pool.target} warm pool",
            )
            return True
        except (CapacityError, CallTimeoutError, OSError) as e:
            log_exception(e, context=f"{pool.target} set_warm_instances")
            return False

    async def tick(self) -> Dict[str, int]:
        """Run one adjustment pass over every active pool."""
        results: Dict[str, int] = {}
        for pool in self.pools.all():
            if not pool.active:
                continue
            try:
                results[pool.target] = await self._tick_pool(pool)
            except Exception as e:
                log_exception(e, context=f"{pool.target} autoscaler tick", include_traceback=True)
                results[pool.target] = pool.current
        return results

    async def _tick_pool(self, pool: WarmPool) -> int:
        sample = None
        if self.utilization is not None:
            try:
                sample = await call_with_deadline(
                    self.utilization.fetch_utilization(pool.target),
                    self.call_timeout,
                    context=f"fetch_utilization({pool.target})",
                )
            except (CallTimeoutError, OSError) as e:
                log_exception(e, context=f"{pool.target} utilization", log_level=logging.WARNING)

        if sample is None:
            return pool.current

        split = self.router.current_split(pool.target) if self.router is not None else None
        return await self.adjust(pool, sample, split=split)

    async def run(self) -> None:
        """Tick until ``stop()`` is called."""
        logger.info(f"CapacityAutoscaler started (tick every {self.tick_interval}s)")
        while not self._stop.is_set():
            try:
                await self.tick()
            except Exception as e:
                log_exception(e, context="autoscaler tick", include_traceback=True)
            await wait_or_cancelled(self._stop, self.tick_interval)
        logger.info("CapacityAutoscaler stopped")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stop.clear()
            self._task = asyncio.create_task(self.run(), name="capacity-autoscaler")
        return self._task

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
