"""
Collaborator interfaces consumed by the deployment controller.

Concrete metric backends, routers and capacity executors implement these.
All calls may block on I/O; the controller bounds each one with a deadline.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Tuple

from .models import TrafficSplit, Version


class MetricSource(ABC):
    """Supplies invocation and error counts for a time window."""

    @abstractmethod
    async def fetch_counts(
        self,
        target: str,
        version: Version,
        start: datetime,
        end: datetime,
    ) -> Tuple[int, int]:
        """
        Return ``(invocations, errors)`` for the window.

        Raises:
            MetricUnavailable: If the counts cannot be fetched
        """


class TrafficRouter(ABC):
    """Routes a target's traffic between its stable and candidate versions."""

    @abstractmethod
    async def set_split(self, target: str, split: TrafficSplit) -> None:
        """
        Apply a split. Must be idempotent.

        Raises:
            RouterError: If the split could not be applied
        """

    @abstractmethod
    def current_split(self, target: str) -> Optional[TrafficSplit]:
        """Atomic snapshot of the split currently in effect."""


class CapacityExecutor(ABC):
    """Applies warm instance counts."""

    @abstractmethod
    async def set_warm_instances(self, target: str, count: int) -> None:
        """
        Set the warm pool size. Must be idempotent.

        Raises:
            CapacityError: If the count could not be applied
        """


class UtilizationSource(ABC):
    """Supplies warm pool utilization samples."""

    @abstractmethod
    async def fetch_utilization(self, target: str) -> Optional[float]:
        """Fraction of warm capacity in use, or None when no sample exists."""
