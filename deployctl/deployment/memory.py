"""
In-memory collaborators.

Reference implementations of the collaborator interfaces for local runs,
demos and tests.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .interfaces import CapacityExecutor, MetricSource, TrafficRouter, UtilizationSource
from .models import TrafficSplit, Version, utcnow

logger = logging.getLogger(__name__)


class InMemoryTrafficRouter(TrafficRouter):
    """
    Keeps the split per target in a dict.

    Splits are immutable, so replacing the dict entry publishes a new split
    atomically; readers never see a torn split.
    """

    def __init__(self):
        self._splits: Dict[str, TrafficSplit] = {}
        self._history: Dict[str, List[TrafficSplit]] = {}

    async def set_split(self, target: str, split: TrafficSplit) -> None:
        if self._splits.get(target) == split:
            return
        self._splits[target] = split
        self._history.setdefault(target, []).append(split)
        logger.debug(f"{target}: split -> {split.stable}/{split.candidate}")

    def current_split(self, target: str) -> Optional[TrafficSplit]:
        return self._splits.get(target)

    def history(self, target: str) -> List[TrafficSplit]:
        """Every distinct split applied to a target, in order."""
        return list(self._history.get(target, []))


class InMemoryMetricSource(MetricSource):
    """Aggregates recorded samples per target version."""

    def __init__(self):
        self._samples: Dict[Tuple[str, str], List[Tuple[datetime, int, int]]] = {}

    def record(
        self,
        target: str,
        version: Version,
        invocations: int,
        errors: int = 0,
        at: Optional[datetime] = None,
    ) -> None:
        key = (target, version.id)
        self._samples.setdefault(key, []).append((at or utcnow(), invocations, errors))

    async def fetch_counts(
        self,
        target: str,
        version: Version,
        start: datetime,
        end: datetime,
    ) -> Tuple[int, int]:
        invocations = 0
        errors = 0
        for at, inv, err in self._samples.get((target, version.id), []):
            if start <= at < end:
                invocations += inv
                errors += err
        return invocations, errors


class InMemoryCapacityExecutor(CapacityExecutor):
    """Records the warm instance count applied per target."""

    def __init__(self):
        self.counts: Dict[str, int] = {}
        self.calls: List[Tuple[str, int]] = []

    async def set_warm_instances(self, target: str, count: int) -> None:
        self.calls.append((target, count))
        self.counts[target] = count


class StaticUtilizationSource(UtilizationSource):
    """Returns the last utilization value set for a target."""

    def __init__(self, values: Optional[Dict[str, float]] = None):
        self._values: Dict[str, float] = dict(values or {})

    def set(self, target: str, utilization: float) -> None:
        self._values[target] = utilization

    async def fetch_utilization(self, target: str) -> Optional[float]:
        return self._values.get(target)
