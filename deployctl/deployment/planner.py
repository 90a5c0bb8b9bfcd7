"""
Rollout Planner.

Turns a rollout strategy into an ordered step schedule:
- LINEAR: p, 2p, 3p, ... closed at exactly 100
- CANARY: p for the bake duration, then 100
- ALL_AT_ONCE: 100

Every schedule is non-decreasing, lies in (0, 100] and ends at 100. A step
interval of 0 means the orchestrator proceeds as soon as the split is applied.
"""

from __future__ import annotations

import logging
from typing import Dict, List

from ..core.exceptions import ConfigError
from .models import RolloutStrategy, Step, StrategyType

logger = logging.getLogger(__name__)

FULL_TRAFFIC = 100.0

# Named deployment preferences (durations in seconds)
DEPLOYMENT_PREFERENCES: Dict[str, RolloutStrategy] = {
    "LINEAR_10PERCENT_EVERY_1MINUTE": RolloutStrategy.linear(10, 60),
    "LINEAR_10PERCENT_EVERY_2MINUTES": RolloutStrategy.linear(10, 120),
    "LINEAR_10PERCENT_EVERY_3MINUTES": RolloutStrategy.linear(10, 180),
    "LINEAR_10PERCENT_EVERY_10MINUTES": RolloutStrategy.linear(10, 600),
    "CANARY_10PERCENT_5MINUTES": RolloutStrategy.canary(10, 300),
    "CANARY_10PERCENT_10MINUTES": RolloutStrategy.canary(10, 600),
    "CANARY_10PERCENT_15MINUTES": RolloutStrategy.canary(10, 900),
    "CANARY_10PERCENT_30MINUTES": RolloutStrategy.canary(10, 1800),
    "ALL_AT_ONCE": RolloutStrategy.all_at_once(),
}


def strategy_from_preference(name: str) -> RolloutStrategy:
    """Map a named deployment preference to its rollout strategy."""
    strategy = DEPLOYMENT_PREFERENCES.get(name.upper()) if name else None
    if strategy is None:
        raise ConfigError(
            f"Unknown deployment preference {name!r}. "
            f"Available: {', '.join(DEPLOYMENT_PREFERENCES)}"
        )
    return strategy


class RolloutPlanner:
    """Pure step-schedule planner."""

    def plan(self, strategy: RolloutStrategy) -> List[Step]:
        """
        Build the step schedule for a strategy.

        Raises:
            ConfigError: If the strategy parameters are out of range
        """
        if strategy.type == StrategyType.LINEAR:
            return self._plan_linear(strategy.step_percent, strategy.step_interval)
        if strategy.type == StrategyType.CANARY:
            return self._plan_canary(strategy.initial_percent, strategy.bake_duration)
        if strategy.type == StrategyType.ALL_AT_ONCE:
            return [Step(FULL_TRAFFIC, 0.0)]
        raise ConfigError(f"Unsupported strategy type: {strategy.type}")

    @staticmethod
    def _plan_linear(step_percent: float, step_interval: float) -> List[Step]:
        if not 0 < step_percent <= FULL_TRAFFIC:
            raise ConfigError(f"LINEAR step percent must be in (0, 100], got {step_percent}")
        if step_interval < 0:
            raise ConfigError(f"LINEAR step interval must be >= 0, got {step_interval}")

        steps: List[Step] = []
        k = 1
        while True:
            # round away float drift such as 3 * 0.1
            percentage = round(k * step_percent, 9)
            if percentage >= FULL_TRAFFIC:
                break
            steps.append(Step(percentage, float(step_interval)))
            k += 1

        steps.append(Step(FULL_TRAFFIC, 0.0))
        return steps

    @staticmethod
    def _plan_canary(initial_percent: float, bake_duration: float) -> List[Step]:
        if not 0 < initial_percent < FULL_TRAFFIC:
            raise ConfigError(
                f"CANARY initial percent must be in (0, 100), got {initial_percent}"
            )
        if bake_duration < 0:
            raise ConfigError(f"CANARY bake duration must be >= 0, got {bake_duration}")

        return [Step(float(initial_percent), float(bake_duration)), Step(FULL_TRAFFIC, 0.0)]
