"""
Controller assembly.

ControllerBuilder wires the orchestrator, the autoscaler and their stores from
explicit collaborators and the application config. Nothing is discovered
implicitly: every collaborator is passed in or defaults to its in-memory
implementation.

Usage:
    controller = (
        ControllerBuilder(load_config())
        .with_router(my_router)
        .with_metric_source(my_metrics)
        .with_capacity_executor(my_executor)
        .build()
    )
    await controller.start()
    controller.register_target("checkout", Version("v1"), get_environment_config("production"))
    handle = await controller.start_rollout(
        "checkout", Version("v2"), get_environment_config("production")
    )
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from ..config import AppConfig, get_data_dir
from ..config_schemas import TargetDeploymentSchema
from .autoscaler import CapacityAutoscaler
from .events import EventStream
from .health import SessionMonitorBuilder
from .interfaces import CapacityExecutor, MetricSource, TrafficRouter, UtilizationSource
from .memory import InMemoryMetricSource, InMemoryTrafficRouter
from .models import Version
from .orchestrator import DeploymentOrchestrator, SessionHandle, TargetRecord
from .store import SessionStore, WarmPoolStore

logger = logging.getLogger(__name__)


@dataclass
class Controller:
    """Orchestrator, autoscaler and stores built together."""

    orchestrator: DeploymentOrchestrator
    events: EventStream
    sessions: SessionStore
    pools: WarmPoolStore
    autoscaler: Optional[CapacityAutoscaler] = None

    def register_target(
        self,
        name: str,
        stable_version: Version,
        target_config: Optional[TargetDeploymentSchema] = None,
    ) -> TargetRecord:
        warm_pool = target_config.to_warm_pool(name) if target_config else None
        return self.orchestrator.register_target(name, stable_version, warm_pool=warm_pool)

    async def start_rollout(
        self,
        target: str,
        candidate_version: Version,
        target_config: TargetDeploymentSchema,
    ) -> SessionHandle:
        return await self.orchestrator.start_rollout(
            target,
            candidate_version,
            target_config.to_strategy(),
            target_config.to_alarm_config(),
            tags=target_config.tags(),
        )

    async def start(self) -> None:
        """Apply the initial warm pool sizes and start the autoscaler loop."""
        if self.autoscaler is None:
            return
        for pool in self.pools.all():
            await self.autoscaler.apply(pool)
        self.autoscaler.start()

    async def stop(self) -> None:
        if self.autoscaler is not None:
            await self.autoscaler.stop()
        await self.orchestrator.shutdown()


class ControllerBuilder:
    """Step-by-step construction of a Controller."""

    def __init__(self, config: Optional[AppConfig] = None):
        self.config = config or AppConfig()
        self._router: Optional[TrafficRouter] = None
        self._metric_source: Optional[MetricSource] = None
        self._executor: Optional[CapacityExecutor] = None
        self._utilization: Optional[UtilizationSource] = None
        self._events: Optional[EventStream] = None
        self._data_dir: Optional[Path] = None
        self._persist = self.config.controller.persist_sessions

    def with_router(self, router: TrafficRouter) -> "ControllerBuilder":
        self._router = router
        return self

    def with_metric_source(self, metric_source: MetricSource) -> "ControllerBuilder":
        self._metric_source = metric_source
        return self

    def with_capacity_executor(self, executor: CapacityExecutor) -> "ControllerBuilder":
        self._executor = executor
        return self

    def with_utilization_source(self, utilization: UtilizationSource) -> "ControllerBuilder":
        self._utilization = utilization
        return self

    def with_events(self, events: EventStream) -> "ControllerBuilder":
        self._events = events
        return self

    def with_data_dir(self, data_dir: Optional[Union[str, Path]]) -> "ControllerBuilder":
        """Persist stores under ``data_dir``; None keeps them in memory."""
        self._data_dir = Path(data_dir) if data_dir else None
        self._persist = data_dir is not None
        return self

    def build(self) -> Controller:
        controller_cfg = self.config.controller
        autoscaler_cfg = self.config.autoscaler

        data_dir = None
        if self._persist:
            data_dir = self._data_dir or get_data_dir(self.config)

        router = self._router or InMemoryTrafficRouter()
        metric_source = self._metric_source or InMemoryMetricSource()
        events = self._events or EventStream()
        sessions = SessionStore(data_dir)
        sessions.load()
        pools = WarmPoolStore(data_dir)

        orchestrator = DeploymentOrchestrator(
            router,
            events=events,
            sessions=sessions,
            pools=pools,
            monitor_builder=SessionMonitorBuilder(
                metric_source, metric_timeout=controller_cfg.metric_timeout
            ),
            router_timeout=controller_cfg.router_timeout,
            retry_backoff=controller_cfg.retry_backoff,
        )

        autoscaler = None
        if self._executor is not None:
            autoscaler = CapacityAutoscaler(
                self._executor,
                pools,
                utilization=self._utilization,
                router=router,
                tick_interval=autoscaler_cfg.tick_interval,
                hysteresis=autoscaler_cfg.hysteresis,
                call_timeout=controller_cfg.capacity_timeout,
                retry_backoff=controller_cfg.retry_backoff,
            )

        logger.info(
            f"Controller built (data_dir={data_dir or 'memory'}, "
            f"autoscaler={'on' if autoscaler else 'off'})"
        )
        return Controller(
            orchestrator=orchestrator,
            events=events,
            sessions=sessions,
            pools=pools,
            autoscaler=autoscaler,
        )
