"""Tests for controller assembly from configuration."""

import pytest

from deployctl.config import AppConfig, AutoscalerConfig, ControllerConfig, GeneralConfig
from deployctl.config_schemas import validate_target_config
from deployctl.core.exceptions import ConcurrentDeploymentError
from deployctl.deployment.builder import ControllerBuilder
from deployctl.deployment.events import EventStream
from deployctl.deployment.memory import (
    InMemoryCapacityExecutor,
    InMemoryTrafficRouter,
    StaticUtilizationSource,
)
from deployctl.deployment.models import SessionState, TrafficSplit, Version

TARGET = "checkout"

INSTANT = {"deployment_preference": "ALL_AT_ONCE", "alarm": {"enabled": False}}
WITH_POOL = {
    "deployment_preference": "ALL_AT_ONCE",
    "alarm": {"enabled": False},
    "provisioned_concurrency": 2,
    "autoscaling": {"enabled": True, "min_capacity": 1, "max_capacity": 6},
    "blue_green_enabled": True,
}


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        general=GeneralConfig(data_dir=str(tmp_path)),
        controller=ControllerConfig(retry_backoff=0, router_timeout=2.0),
        autoscaler=AutoscalerConfig(tick_interval=3600),
    )


class TestControllerBuilder:
    """Test wiring of collaborators."""

    def test_defaults(self, config):
        controller = ControllerBuilder(config).with_data_dir(None).build()

        assert isinstance(controller.orchestrator.router, InMemoryTrafficRouter)
        assert controller.autoscaler is None
        assert controller.sessions.path is None

    def test_timeouts_from_config(self, config):
        controller = ControllerBuilder(config).build()

        assert controller.orchestrator.router_timeout == 2.0
        assert controller.orchestrator.retry_backoff == 0

    def test_persists_under_data_dir(self, config, tmp_path):
        controller = ControllerBuilder(config).build()

        assert controller.sessions.path == tmp_path.resolve() / "sessions.jsonl"

    def test_autoscaler_only_with_executor(self, config):
        controller = (
            ControllerBuilder(config)
            .with_capacity_executor(InMemoryCapacityExecutor())
            .with_utilization_source(StaticUtilizationSource())
            .build()
        )

        assert controller.autoscaler is not None
        assert controller.autoscaler.tick_interval == 3600
        assert controller.autoscaler.pools is controller.pools

    def test_shared_event_stream(self, config):
        events = EventStream()
        controller = ControllerBuilder(config).with_events(events).build()

        assert controller.events is events
        assert controller.orchestrator.events is events


class TestController:
    """Test the assembled controller end to end."""

    @pytest.mark.asyncio
    async def test_rollout_from_target_config(self, config, stable_version, candidate_version):
        router = InMemoryTrafficRouter()
        controller = ControllerBuilder(config).with_router(router).build()
        target_config = validate_target_config(WITH_POOL)

        controller.register_target(TARGET, stable_version, target_config)
        handle = await controller.start_rollout(TARGET, candidate_version, target_config)
        session = await handle.wait()

        assert session.state == SessionState.SUCCEEDED
        assert session.tags["DeploymentStrategy"] == "BlueGreen"
        assert router.current_split(TARGET) == TrafficSplit.for_candidate(100)
        assert controller.orchestrator.get_stable_version(TARGET) == candidate_version
        assert controller.pools.get(TARGET).current == 2

    @pytest.mark.asyncio
    async def test_start_applies_warm_pools(self, config, stable_version):
        executor = InMemoryCapacityExecutor()
        controller = ControllerBuilder(config).with_capacity_executor(executor).build()
        controller.register_target(TARGET, stable_version, validate_target_config(WITH_POOL))

        await controller.start()
        await controller.stop()

        assert executor.counts[TARGET] == 2

    @pytest.mark.asyncio
    async def test_sessions_survive_rebuild(self, config, stable_version, candidate_version):
        controller = ControllerBuilder(config).build()
        target_config = validate_target_config(INSTANT)
        controller.register_target(TARGET, stable_version)
        handle = await controller.start_rollout(TARGET, candidate_version, target_config)
        await handle.wait()

        rebuilt = ControllerBuilder(config).build()
        session = rebuilt.orchestrator.get_session_status(handle.session_id)

        assert session.state == SessionState.SUCCEEDED
        assert session.candidate_version == Version("v2")

    @pytest.mark.asyncio
    async def test_stop_cancels_active_sessions(self, config, stable_version, candidate_version):
        controller = ControllerBuilder(config).build()
        target_config = validate_target_config(
            {
                "strategy": {"type": "CANARY", "initial_percent": 10, "bake_duration": 30},
                "alarm": {"enabled": False},
            }
        )
        controller.register_target(TARGET, stable_version)
        handle = await controller.start_rollout(TARGET, candidate_version, target_config)

        with pytest.raises(ConcurrentDeploymentError):
            await controller.start_rollout(TARGET, Version("v3"), target_config)

        await controller.stop()

        session = controller.orchestrator.get_session_status(handle.session_id)
        assert session.state == SessionState.ROLLED_BACK
        assert session.history[-1].detail == "controller shutdown"
