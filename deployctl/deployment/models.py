"""
Deployment data model.

Versions, traffic splits, rollout strategies, sessions and warm pools shared by
the planner, the health evaluation chain, the orchestrator and the autoscaler.
"""

from __future__ import annotations

import copy
import functools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from ..core.exceptions import ConfigError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def error_rate(invocations: int, errors: int) -> float:
    """
    Error rate as ``errors / max(errors, invocations)``.

    Equals ``errors / invocations`` unless the counters report more errors
    than invocations, in which case the rate is capped at 1.0.
    """
    denominator = max(errors, invocations)
    if denominator <= 0:
        return 0.0
    return errors / denominator


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@functools.total_ordering
@dataclass(frozen=True)
class Version:
    """Immutable identifier of a deployable artifact, ordered by creation time."""

    id: str
    created_at: datetime = field(default_factory=utcnow, compare=False)

    def __lt__(self, other: "Version") -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return (self.created_at, self.id) < (other.created_at, other.id)

    def __str__(self) -> str:
        return self.id

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "created_at": self.created_at.isoformat()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Version":
        return cls(id=data["id"], created_at=datetime.fromisoformat(data["created_at"]))


@dataclass(frozen=True)
class TrafficSplit:
    """Percentages of traffic routed to the stable and candidate versions."""

    stable: float
    candidate: float

    def __post_init__(self):
        if not (0 <= self.stable <= 100 and 0 <= self.candidate <= 100):
            raise ValueError(f"Split percentages out of range: {self.stable}/{self.candidate}")
        if abs(self.stable + self.candidate - 100) > 1e-9:
            raise ValueError(
                f"Split must sum to 100, got {self.stable} + {self.candidate}"
            )

    @classmethod
    def for_candidate(cls, percentage: float) -> "TrafficSplit":
        return cls(stable=100 - percentage, candidate=percentage)

    @classmethod
    def all_stable(cls) -> "TrafficSplit":
        return cls(stable=100, candidate=0)

    def to_dict(self) -> Dict[str, float]:
        return {"stable": self.stable, "candidate": self.candidate}


class StrategyType(Enum):
    """Named rollout strategies."""

    LINEAR = "LINEAR"
    CANARY = "CANARY"
    ALL_AT_ONCE = "ALL_AT_ONCE"


@dataclass(frozen=True)
class RolloutStrategy:
    """A rollout strategy and its parameters. Durations are in seconds."""

    type: StrategyType
    step_percent: float = 0.0
    step_interval: float = 0.0
    initial_percent: float = 0.0
    bake_duration: float = 0.0

    @classmethod
    def linear(cls, step_percent: float, step_interval: float) -> "RolloutStrategy":
        return cls(StrategyType.LINEAR, step_percent=step_percent, step_interval=step_interval)

    @classmethod
    def canary(cls, initial_percent: float, bake_duration: float) -> "RolloutStrategy":
        return cls(
            StrategyType.CANARY,
            initial_percent=initial_percent,
            bake_duration=bake_duration,
        )

    @classmethod
    def all_at_once(cls) -> "RolloutStrategy":
        return cls(StrategyType.ALL_AT_ONCE)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type.value}
        if self.type == StrategyType.LINEAR:
            data.update(step_percent=self.step_percent, step_interval=self.step_interval)
        elif self.type == StrategyType.CANARY:
            data.update(initial_percent=self.initial_percent, bake_duration=self.bake_duration)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RolloutStrategy":
        try:
            strategy_type = StrategyType(str(data.get("type", "")).upper())
        except ValueError as exc:
            raise ConfigError(f"Unknown rollout strategy: {data.get('type')!r}") from exc
        return cls(
            strategy_type,
            step_percent=float(data.get("step_percent", 0.0)),
            step_interval=float(data.get("step_interval", 0.0)),
            initial_percent=float(data.get("initial_percent", 0.0)),
            bake_duration=float(data.get("bake_duration", 0.0)),
        )


@dataclass(frozen=True)
class Step:
    """One traffic shift: candidate percentage and how long to monitor it."""

    percentage: float
    interval: float

    def to_dict(self) -> Dict[str, float]:
        return {"percentage": self.percentage, "interval": self.interval}


class AlarmState(Enum):
    """Verdict for one evaluation window."""

    OK = "OK"
    BREACH = "BREACH"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"


class MissingDataPolicy(Enum):
    """How INSUFFICIENT_DATA verdicts count toward rollback."""

    NOT_BREACHING = "not_breaching"  # counts as OK
    BREACHING = "breaching"  # counts as BREACH
    IGNORE = "ignore"  # breach counter unchanged


class SessionState(Enum):
    """Deployment session states."""

    INITIALIZING = "INITIALIZING"
    SHIFTING = "SHIFTING"
    MONITORING = "MONITORING"
    ROLLING_BACK = "ROLLING_BACK"
    SUCCEEDED = "SUCCEEDED"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {SessionState.SUCCEEDED, SessionState.ROLLED_BACK, SessionState.FAILED}
)

CANCELLABLE_STATES = frozenset({SessionState.SHIFTING, SessionState.MONITORING})


@dataclass
class AlarmConfig:
    """Error-rate alarm settings for a rollout."""

    enabled: bool = True
    error_rate_threshold: float = 0.05
    evaluation_periods: int = 2
    period: float = 60.0
    treat_missing_data: MissingDataPolicy = MissingDataPolicy.NOT_BREACHING

    def validate(self) -> None:
        if not self.enabled:
            return
        if not 0 < self.error_rate_threshold < 1:
            raise ConfigError(
                f"error_rate_threshold must be in (0, 1), got {self.error_rate_threshold}"
            )
        if int(self.evaluation_periods) != self.evaluation_periods or self.evaluation_periods < 1:
            raise ConfigError(
                f"evaluation_periods must be a positive integer, got {self.evaluation_periods}"
            )
        if self.period <= 0:
            raise ConfigError(f"alarm period must be positive, got {self.period}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "error_rate_threshold": self.error_rate_threshold,
            "evaluation_periods": self.evaluation_periods,
            "period": self.period,
            "treat_missing_data": self.treat_missing_data.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AlarmConfig":
        return cls(
            enabled=data.get("enabled", True),
            error_rate_threshold=data.get("error_rate_threshold", 0.05),
            evaluation_periods=data.get("evaluation_periods", 2),
            period=data.get("period", 60.0),
            treat_missing_data=MissingDataPolicy(
                data.get("treat_missing_data", MissingDataPolicy.NOT_BREACHING.value)
            ),
        )


@dataclass
class AutoScalingConfig:
    """Warm pool autoscaling settings."""

    enabled: bool = False
    min_capacity: int = 0
    max_capacity: int = 0
    utilization_target: float = 0.7


@dataclass
class WarmPool:
    """Warm instance pool for a target. ``current`` stays within [min, max]."""

    target: str
    current: int
    min: int
    max: int
    utilization_target: float
    enabled: bool = True

    def __post_init__(self):
        if self.min < 0 or self.max < 0 or self.min > self.max:
            raise ConfigError(f"Invalid warm pool bounds [{self.min}, {self.max}]")
        if not 0 < self.utilization_target <= 1:
            raise ConfigError(
                f"utilization_target must be in (0, 1], got {self.utilization_target}"
            )
        self.current = self.clamp(self.current)

    @property
    def active(self) -> bool:
        return self.enabled and self.max > 0

    def clamp(self, value: int) -> int:
        return max(self.min, min(self.max, int(value)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "current": self.current,
            "min": self.min,
            "max": self.max,
            "utilization_target": self.utilization_target,
            "enabled": self.enabled,
        }

    @classmethod
    def from_autoscaling(
        cls, target: str, scaling: AutoScalingConfig, current: int = 0
    ) -> "WarmPool":
        """Pool tracking ``scaling``; ``current`` is clamped into its bounds."""
        return cls(
            target=target,
            current=current,
            min=scaling.min_capacity,
            max=scaling.max_capacity,
            utilization_target=scaling.utilization_target,
            enabled=scaling.enabled,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WarmPool":
        return cls(**data)


@dataclass
class EvaluationWindow:
    """Invocation and error counts for a target version over a time window."""

    target: str
    version: Version
    start: datetime
    end: datetime
    invocations: int = 0
    errors: int = 0

    @property
    def error_rate(self) -> float:
        return error_rate(self.invocations, self.errors)


@dataclass
class HistoryEntry:
    """One record in a session's history."""

    step_index: int
    percentage: float
    verdict: Optional[AlarmState]
    timestamp: datetime = field(default_factory=utcnow)
    event: str = "window"
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_index": self.step_index,
            "percentage": self.percentage,
            "verdict": self.verdict.value if self.verdict else None,
            "timestamp": self.timestamp.isoformat(),
            "event": self.event,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            step_index=data["step_index"],
            percentage=data["percentage"],
            verdict=AlarmState(data["verdict"]) if data.get("verdict") else None,
            timestamp=datetime.fromisoformat(data["timestamp"]),
            event=data.get("event", "window"),
            detail=data.get("detail"),
        )


@dataclass
class DeploymentSession:
    """The live instance of a rollout for one target."""

    session_id: str
    target: str
    stable_version: Version
    candidate_version: Version
    strategy: RolloutStrategy
    steps: List[Step]
    alarm: AlarmConfig = field(default_factory=AlarmConfig)
    current_step_index: int = 0
    state: SessionState = SessionState.INITIALIZING
    started_at: datetime = field(default_factory=utcnow)
    history: List[HistoryEntry] = field(default_factory=list)
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    escalated: bool = False
    alarm_name: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def current_step(self) -> Optional[Step]:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    def snapshot(self) -> "DeploymentSession":
        """Independent copy safe to hand to readers."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "target": self.target,
            "stable_version": self.stable_version.to_dict(),
            "candidate_version": self.candidate_version.to_dict(),
            "strategy": self.strategy.to_dict(),
            "steps": [s.to_dict() for s in self.steps],
            "alarm": self.alarm.to_dict(),
            "current_step_index": self.current_step_index,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "history": [h.to_dict() for h in self.history],
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "escalated": self.escalated,
            "alarm_name": self.alarm_name,
            "tags": dict(self.tags),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentSession":
        return cls(
            session_id=data["session_id"],
            target=data["target"],
            stable_version=Version.from_dict(data["stable_version"]),
            candidate_version=Version.from_dict(data["candidate_version"]),
            strategy=RolloutStrategy.from_dict(data["strategy"]),
            steps=[Step(**s) for s in data.get("steps", [])],
            alarm=AlarmConfig.from_dict(data.get("alarm", {})),
            current_step_index=data.get("current_step_index", 0),
            state=SessionState(data["state"]),
            started_at=datetime.fromisoformat(data["started_at"]),
            history=[HistoryEntry.from_dict(h) for h in data.get("history", [])],
            finished_at=_parse_ts(data.get("finished_at")),
            error=data.get("error"),
            escalated=data.get("escalated", False),
            alarm_name=data.get("alarm_name"),
            tags=data.get("tags", {}),
        )
