"""
Health Evaluation.

HealthEvaluator turns a window's invocation/error counts into a verdict.
RollbackDecider debounces verdicts: rollback fires only after the configured
number of consecutive breaching windows.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Tuple

from ..core.async_utils import call_with_deadline
from ..core.exceptions import CallTimeoutError, ConfigError, MetricUnavailable, log_exception
from .interfaces import MetricSource
from .models import (
    AlarmConfig,
    AlarmState,
    EvaluationWindow,
    MissingDataPolicy,
    Version,
)

logger = logging.getLogger(__name__)


class HealthEvaluator:
    """Computes an alarm verdict per evaluation window."""

    def __init__(
        self,
        metric_source: MetricSource,
        threshold: float,
        timeout: Optional[float] = None,
        alarm_name: str = "",
    ):
        self.metric_source = metric_source
        self.threshold = threshold
        self.timeout = timeout
        self.alarm_name = alarm_name

    async def measure(
        self,
        target: str,
        version: Version,
        window_start: datetime,
        window_end: datetime,
    ) -> EvaluationWindow:
        """
        Fetch the counts for ``[window_start, window_end)``.

        Raises:
            MetricUnavailable: Metric source failure
            CallTimeoutError: Metric source exceeded the deadline
        """
        invocations, errors = await call_with_deadline(
            self.metric_source.fetch_counts(target, version, window_start, window_end),
            self.timeout,
            context=f"fetch_counts({target}, {version})",
        )
        return EvaluationWindow(
            target=target,
            version=version,
            start=window_start,
            end=window_end,
            invocations=invocations,
            errors=errors,
        )

    async def evaluate(
        self,
        target: str,
        version: Version,
        window_start: datetime,
        window_end: datetime,
    ) -> AlarmState:
        """
        Verdict for the window ``[window_start, window_end)``.

        A metric source failure or deadline overrun yields INSUFFICIENT_DATA.
        """
        name = self.alarm_name or target
        try:
            window = await self.measure(target, version, window_start, window_end)
        except (MetricUnavailable, CallTimeoutError, OSError) as e:
            log_exception(e, context=f"{name} evaluate", log_level=logging.WARNING)
            return AlarmState.INSUFFICIENT_DATA

        if window.invocations == 0:
            logger.debug(f"{name}: no invocations in window")
            return AlarmState.INSUFFICIENT_DATA

        rate = window.error_rate
        verdict = AlarmState.BREACH if rate > self.threshold else AlarmState.OK

        logger.info(
            f"{name}: {window.errors}/{window.invocations} errors, "
            f"rate={rate:.2%} threshold={self.threshold:.2%} -> {verdict.value}"
        )
        return verdict


class RollbackDecider:
    """
    Tracks consecutive breaching windows for one session.

    The counter is reset by OK verdicts and, under the default missing-data
    policy, by INSUFFICIENT_DATA. ``record`` returns True exactly once, at the
    window where the counter reaches ``evaluation_periods``.
    """

    def __init__(
        self,
        evaluation_periods: int,
        missing_data: MissingDataPolicy = MissingDataPolicy.NOT_BREACHING,
    ):
        self.evaluation_periods = evaluation_periods
        self.missing_data = missing_data
        self.consecutive_breaches = 0
        self.triggered = False

    def _effective(self, verdict: AlarmState) -> Optional[AlarmState]:
        if verdict != AlarmState.INSUFFICIENT_DATA:
            return verdict
        if self.missing_data == MissingDataPolicy.BREACHING:
            return AlarmState.BREACH
        if self.missing_data == MissingDataPolicy.IGNORE:
            return None
        return AlarmState.OK

    def record(self, verdict: AlarmState) -> bool:
        """Feed one verdict. Returns True when rollback should start."""
        effective = self._effective(verdict)
        if effective is None:
            return False

        if effective == AlarmState.BREACH:
            self.consecutive_breaches += 1
        else:
            self.consecutive_breaches = 0

        if not self.triggered and self.consecutive_breaches >= self.evaluation_periods:
            self.triggered = True
            logger.warning(
                f"Rollback signalled after {self.consecutive_breaches} consecutive breaches"
            )
            return True
        return False

    def reset(self) -> None:
        self.consecutive_breaches = 0
        self.triggered = False


class SessionMonitor:
    """
    Health evaluation chain for one session.

    Built with neither collaborator when the alarm is disabled; the rollout
    then proceeds on its timer alone.
    """

    def __init__(
        self,
        evaluator: Optional[HealthEvaluator] = None,
        decider: Optional[RollbackDecider] = None,
    ):
        self.evaluator = evaluator
        self.decider = decider

    @property
    def enabled(self) -> bool:
        return self.evaluator is not None and self.decider is not None

    async def check_window(
        self,
        target: str,
        version: Version,
        window_start: datetime,
        window_end: datetime,
    ) -> Tuple[Optional[AlarmState], bool]:
        """Return ``(verdict, rollback)`` for one elapsed window."""
        if not self.enabled:
            return None, False
        verdict = await self.evaluator.evaluate(target, version, window_start, window_end)
        return verdict, self.decider.record(verdict)


class SessionMonitorBuilder:
    """Constructs a SessionMonitor from a session's alarm configuration."""

    def __init__(
        self,
        metric_source: Optional[MetricSource],
        metric_timeout: Optional[float] = None,
    ):
        self.metric_source = metric_source
        self.metric_timeout = metric_timeout

    def build(self, alarm: AlarmConfig, alarm_name: str = "") -> SessionMonitor:
        if not alarm.enabled:
            logger.info(f"{alarm_name}: alarm disabled, rollout proceeds on timer alone")
            return SessionMonitor()

        if self.metric_source is None:
            raise ConfigError(f"{alarm_name}: alarm enabled but no metric source configured")

        evaluator = HealthEvaluator(
            self.metric_source,
            threshold=alarm.error_rate_threshold,
            timeout=self.metric_timeout,
            alarm_name=alarm_name,
        )
        decider = RollbackDecider(
            evaluation_periods=int(alarm.evaluation_periods),
            missing_data=alarm.treat_missing_data,
        )
        return SessionMonitor(evaluator, decider)
