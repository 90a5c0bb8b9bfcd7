"""Shared pytest fixtures for all tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

import pytest

from deployctl.core.exceptions import RouterError, alert_handler, error_tracker
from deployctl.deployment.interfaces import MetricSource, TrafficRouter
from deployctl.deployment.memory import InMemoryTrafficRouter
from deployctl.deployment.models import AlarmConfig, TrafficSplit, Version

# Sub-second timings keep scenario tests fast
PERIOD = 0.02


class SplitAwareMetricSource(MetricSource):
    """
    Reports counts derived from the router's current split.

    ``errors_for`` maps the candidate percentage to the error count reported
    for a window.
    """

    def __init__(
        self,
        router: TrafficRouter,
        errors_for: Callable[[float], int],
        invocations: int = 10,
    ):
        self.router = router
        self.errors_for = errors_for
        self.invocations = invocations
        self.calls: List[Tuple[str, str, float]] = []

    async def fetch_counts(self, target, version, start, end):
        split = self.router.current_split(target) or TrafficSplit.all_stable()
        self.calls.append((target, version.id, split.candidate))
        return self.invocations, self.errors_for(split.candidate)


class FlakyRouter(InMemoryTrafficRouter):
    """In-memory router that fails selected splits."""

    def __init__(self, fail_when: Optional[Callable[[TrafficSplit], bool]] = None):
        super().__init__()
        self.fail_when = fail_when or (lambda split: False)
        self.attempts: List[TrafficSplit] = []

    async def set_split(self, target, split):
        self.attempts.append(split)
        if self.fail_when(split):
            raise RouterError(f"router rejected {split.stable}/{split.candidate}")
        await super().set_split(target, split)


@pytest.fixture(autouse=True)
def reset_error_state():
    """Isolate the global error tracker and alert handler between tests."""
    error_tracker.clear()
    callbacks = list(alert_handler._callbacks)
    yield
    error_tracker.clear()
    alert_handler._callbacks[:] = callbacks
    alert_handler._last_alerted.clear()


@pytest.fixture
def stable_version() -> Version:
    return Version("v1", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def candidate_version(stable_version) -> Version:
    return Version("v2", created_at=stable_version.created_at + timedelta(hours=1))


@pytest.fixture
def fast_alarm() -> AlarmConfig:
    return AlarmConfig(
        enabled=True,
        error_rate_threshold=0.05,
        evaluation_periods=2,
        period=PERIOD,
    )


@pytest.fixture
def router() -> InMemoryTrafficRouter:
    return InMemoryTrafficRouter()


@pytest.fixture
def paged():
    """Collects records forwarded to alert callbacks."""
    records = []
    alert_handler.register_callback(records.append)
    yield records
    alert_handler.unregister_callback(records.append)
