"""
Deployment module for progressive traffic shifting.

Exports the data model, the orchestrator and its collaborators. The
controller builder lives in ``deployctl.deployment.builder``.
"""

from .autoscaler import CapacityAutoscaler
from .events import EventStream, StateTransitionEvent
from .health import HealthEvaluator, RollbackDecider, SessionMonitor, SessionMonitorBuilder
from .interfaces import CapacityExecutor, MetricSource, TrafficRouter, UtilizationSource
from .memory import (
    InMemoryCapacityExecutor,
    InMemoryMetricSource,
    InMemoryTrafficRouter,
    StaticUtilizationSource,
)
from .models import (
    AlarmConfig,
    AlarmState,
    AutoScalingConfig,
    DeploymentSession,
    EvaluationWindow,
    HistoryEntry,
    MissingDataPolicy,
    RolloutStrategy,
    SessionState,
    Step,
    StrategyType,
    TrafficSplit,
    Version,
    WarmPool,
)
from .orchestrator import DeploymentOrchestrator, SessionHandle
from .planner import DEPLOYMENT_PREFERENCES, RolloutPlanner, strategy_from_preference
from .store import SessionStore, WarmPoolStore

__all__ = [
    # Model
    "AlarmConfig",
    "AlarmState",
    "AutoScalingConfig",
    "DeploymentSession",
    "EvaluationWindow",
    "HistoryEntry",
    "MissingDataPolicy",
    "RolloutStrategy",
    "SessionState",
    "Step",
    "StrategyType",
    "TrafficSplit",
    "Version",
    "WarmPool",
    # Planning
    "DEPLOYMENT_PREFERENCES",
    "RolloutPlanner",
    "strategy_from_preference",
    # Health
    "HealthEvaluator",
    "RollbackDecider",
    "SessionMonitor",
    "SessionMonitorBuilder",
    # Orchestration
    "DeploymentOrchestrator",
    "SessionHandle",
    "CapacityAutoscaler",
    "EventStream",
    "StateTransitionEvent",
    "SessionStore",
    "WarmPoolStore",
    # Collaborators
    "CapacityExecutor",
    "MetricSource",
    "TrafficRouter",
    "UtilizationSource",
    "InMemoryCapacityExecutor",
    "InMemoryMetricSource",
    "InMemoryTrafficRouter",
    "StaticUtilizationSource",
]
