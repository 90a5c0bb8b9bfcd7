"""Tests for health evaluation and rollback decisions."""

import asyncio
from datetime import timedelta

import pytest

from deployctl.core.exceptions import ConfigError, MetricUnavailable, error_tracker
from deployctl.deployment.health import (
    HealthEvaluator,
    RollbackDecider,
    SessionMonitorBuilder,
)
from deployctl.deployment.interfaces import MetricSource
from deployctl.deployment.memory import InMemoryMetricSource
from deployctl.deployment.models import (
    AlarmConfig,
    AlarmState,
    EvaluationWindow,
    MissingDataPolicy,
    error_rate,
    utcnow,
)

B = AlarmState.BREACH
OK = AlarmState.OK
NA = AlarmState.INSUFFICIENT_DATA


class FixedCounts(MetricSource):
    def __init__(self, invocations, errors):
        self.counts = (invocations, errors)

    async def fetch_counts(self, target, version, start, end):
        return self.counts


class Unavailable(MetricSource):
    async def fetch_counts(self, target, version, start, end):
        raise MetricUnavailable("metrics backend down")


class Hanging(MetricSource):
    async def fetch_counts(self, target, version, start, end):
        await asyncio.sleep(10)
        return 1, 0


@pytest.fixture
def window():
    end = utcnow()
    return end - timedelta(minutes=1), end


class TestErrorRate:
    def test_plain_ratio(self):
        assert error_rate(100, 5) == 0.05

    def test_errors_exceeding_invocations_capped(self):
        assert error_rate(3, 6) == 1.0

    def test_empty_window(self):
        assert error_rate(0, 0) == 0.0

    def test_evaluation_window_rate(self, candidate_version, window):
        counts = EvaluationWindow("api", candidate_version, *window, invocations=40, errors=2)

        assert counts.error_rate == 0.05


class TestHealthEvaluator:
    """Tests for per-window verdicts."""

    @pytest.mark.asyncio
    async def test_breach_above_threshold(self, candidate_version, window):
        evaluator = HealthEvaluator(FixedCounts(100, 6), threshold=0.05)

        assert await evaluator.evaluate("api", candidate_version, *window) == B

    @pytest.mark.asyncio
    async def test_rate_equal_to_threshold_is_ok(self, candidate_version, window):
        evaluator = HealthEvaluator(FixedCounts(100, 5), threshold=0.05)

        assert await evaluator.evaluate("api", candidate_version, *window) == OK

    @pytest.mark.asyncio
    async def test_zero_invocations_is_insufficient(self, candidate_version, window):
        evaluator = HealthEvaluator(FixedCounts(0, 0), threshold=0.05)

        assert await evaluator.evaluate("api", candidate_version, *window) == NA

    @pytest.mark.asyncio
    async def test_metric_unavailable_is_insufficient(self, candidate_version, window):
        evaluator = HealthEvaluator(Unavailable(), threshold=0.05, alarm_name="api-ErrorRate")

        assert await evaluator.evaluate("api", candidate_version, *window) == NA
        assert error_tracker.get_counts() == {"MetricUnavailable:api-ErrorRate evaluate": 1}

    @pytest.mark.asyncio
    async def test_metric_deadline_is_insufficient(self, candidate_version, window):
        evaluator = HealthEvaluator(Hanging(), threshold=0.05, timeout=0.01)

        assert await evaluator.evaluate("api", candidate_version, *window) == NA

    @pytest.mark.asyncio
    async def test_in_memory_source_window_bounds(self, candidate_version, window):
        start, end = window
        source = InMemoryMetricSource()
        source.record("api", candidate_version, 10, 5, at=start)
        source.record("api", candidate_version, 1000, 0, at=end)  # outside window

        evaluator = HealthEvaluator(source, threshold=0.05)

        assert await evaluator.evaluate("api", candidate_version, start, end) == B

    @pytest.mark.asyncio
    async def test_measure_returns_window_counts(self, candidate_version, window):
        evaluator = HealthEvaluator(FixedCounts(200, 3), threshold=0.05)

        counts = await evaluator.measure("api", candidate_version, *window)

        assert (counts.invocations, counts.errors) == (200, 3)
        assert (counts.start, counts.end) == window
        assert counts.version == candidate_version

    @pytest.mark.asyncio
    async def test_measure_propagates_source_failure(self, candidate_version, window):
        evaluator = HealthEvaluator(Unavailable(), threshold=0.05)

        with pytest.raises(MetricUnavailable):
            await evaluator.measure("api", candidate_version, *window)


class TestRollbackDecider:
    """Tests for consecutive-breach counting."""

    def _feed(self, decider, verdicts):
        return [decider.record(v) for v in verdicts]

    def test_fires_at_evaluation_periods(self):
        decider = RollbackDecider(evaluation_periods=2)

        assert self._feed(decider, [B, B]) == [False, True]

    def test_single_breach_not_enough(self):
        decider = RollbackDecider(evaluation_periods=2)

        assert self._feed(decider, [B, OK, B, OK]) == [False] * 4

    def test_ok_resets_counter(self):
        decider = RollbackDecider(evaluation_periods=3)

        results = self._feed(decider, [B, B, OK, B, B])

        assert not any(results)
        assert decider.consecutive_breaches == 2

    def test_fires_only_once(self):
        decider = RollbackDecider(evaluation_periods=1)

        assert self._feed(decider, [B, B, B]) == [True, False, False]
        assert decider.triggered

    def test_missing_data_not_breaching_resets(self):
        decider = RollbackDecider(evaluation_periods=2)

        assert self._feed(decider, [B, NA, B]) == [False, False, False]

    def test_missing_data_breaching(self):
        decider = RollbackDecider(evaluation_periods=2, missing_data=MissingDataPolicy.BREACHING)

        assert self._feed(decider, [B, NA]) == [False, True]

    def test_missing_data_ignored(self):
        decider = RollbackDecider(evaluation_periods=2, missing_data=MissingDataPolicy.IGNORE)

        assert self._feed(decider, [B, NA, B]) == [False, False, True]

    def test_reset(self):
        decider = RollbackDecider(evaluation_periods=1)
        decider.record(B)
        decider.reset()

        assert decider.consecutive_breaches == 0
        assert decider.record(B) is True


class TestSessionMonitorBuilder:
    """Tests for per-session monitor construction."""

    def test_disabled_alarm_builds_bypass(self):
        monitor = SessionMonitorBuilder(None).build(AlarmConfig(enabled=False))

        assert monitor.enabled is False

    @pytest.mark.asyncio
    async def test_bypass_never_rolls_back(self, candidate_version, window):
        monitor = SessionMonitorBuilder(None).build(AlarmConfig(enabled=False))

        assert await monitor.check_window("api", candidate_version, *window) == (None, False)

    def test_enabled_alarm_requires_metric_source(self):
        with pytest.raises(ConfigError):
            SessionMonitorBuilder(None).build(AlarmConfig())

    def test_enabled_alarm_wires_thresholds(self):
        alarm = AlarmConfig(
            error_rate_threshold=0.1,
            evaluation_periods=3,
            treat_missing_data=MissingDataPolicy.BREACHING,
        )
        monitor = SessionMonitorBuilder(FixedCounts(1, 0), metric_timeout=2.0).build(
            alarm, alarm_name="api-ErrorRate"
        )

        assert monitor.enabled
        assert monitor.evaluator.threshold == 0.1
        assert monitor.evaluator.timeout == 2.0
        assert monitor.decider.evaluation_periods == 3
        assert monitor.decider.missing_data == MissingDataPolicy.BREACHING

    @pytest.mark.asyncio
    async def test_check_window_feeds_decider(self, candidate_version, window):
        monitor = SessionMonitorBuilder(FixedCounts(10, 5)).build(
            AlarmConfig(evaluation_periods=2)
        )

        first = await monitor.check_window("api", candidate_version, *window)
        second = await monitor.check_window("api", candidate_version, *window)

        assert first == (B, False)
        assert second == (B, True)
