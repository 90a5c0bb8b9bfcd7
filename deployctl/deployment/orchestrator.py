"""
Deployment Orchestrator.

Drives each rollout session through its state machine:

    INITIALIZING -> SHIFTING -> MONITORING -> SHIFTING ... -> SUCCEEDED
                                    |                  \\
                                    +-> ROLLING_BACK -> ROLLED_BACK | FAILED

Features:
- One session per target at a time (ConcurrentDeploymentError otherwise)
- Every router and metric call bounded by a deadline, retried once
- Cancellable monitoring waits
- State transitions published to the EventStream and appended to the store
- Failed rollbacks escalate through the alert handler

Usage:
    orchestrator = DeploymentOrchestrator(router, metric_source)
    orchestrator.register_target("checkout", Version("v1"))

    handle = await orchestrator.start_rollout(
        "checkout", Version("v2"), RolloutStrategy.linear(10, 60), AlarmConfig()
    )
    session = await handle.wait()
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple, Type

from ..core.async_utils import (
    AsyncTaskManager,
    call_with_deadline,
    retry_call,
    wait_or_cancelled,
)
from ..core.exceptions import (
    CallTimeoutError,
    ConcurrentDeploymentError,
    ConfigError,
    RollbackFailedError,
    RouterError,
    SessionNotFoundError,
    log_exception,
    page,
)
from ..core.logging_config import get_logger, log_operation
from .events import EventStream, StateTransitionEvent
from .health import SessionMonitor, SessionMonitorBuilder
from .interfaces import MetricSource, TrafficRouter
from .models import (
    CANCELLABLE_STATES,
    AlarmConfig,
    DeploymentSession,
    HistoryEntry,
    RolloutStrategy,
    SessionState,
    Step,
    TrafficSplit,
    Version,
    WarmPool,
    utcnow,
)
from .planner import RolloutPlanner
from .store import SessionStore, WarmPoolStore

logger = logging.getLogger(__name__)

# Remaining monitoring time below this is treated as elapsed
_EPSILON = 1e-9

# Router failures retried once before a split is given up
_SPLIT_ERRORS = (RouterError, CallTimeoutError, OSError)


@dataclass
class TargetRecord:
    """A deployable target and its stable version."""

    name: str
    stable_version: Version
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    active_session: Optional[str] = None


@dataclass
class _SessionRun:
    session: DeploymentSession
    monitor: SessionMonitor
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    cancel_reason: Optional[str] = None
    task: Optional[asyncio.Task] = None


class SessionHandle:
    """Returned by ``start_rollout``; awaits the session's terminal state."""

    def __init__(self, session_id: str, task: asyncio.Task):
        self.session_id = session_id
        self._task = task

    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> DeploymentSession:
        """Wait for the session to finish and return its final snapshot."""
        return await asyncio.shield(self._task)

    def __repr__(self) -> str:
        return f"SessionHandle({self.session_id!r}, done={self.done()})"


class DeploymentOrchestrator:
    """Runs rollout sessions against a traffic router and a metric source."""

    def __init__(
        self,
        router: TrafficRouter,
        metric_source: Optional[MetricSource] = None,
        planner: Optional[RolloutPlanner] = None,
        events: Optional[EventStream] = None,
        sessions: Optional[SessionStore] = None,
        pools: Optional[WarmPoolStore] = None,
        monitor_builder: Optional[SessionMonitorBuilder] = None,
        router_timeout: Optional[float] = 10.0,
        metric_timeout: Optional[float] = 10.0,
        retry_backoff: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.router = router
        self.planner = planner or RolloutPlanner()
        self.events = events or EventStream()
        self.sessions = sessions or SessionStore()
        self.pools = pools or WarmPoolStore()
        self.monitor_builder = monitor_builder or SessionMonitorBuilder(
            metric_source, metric_timeout=metric_timeout
        )
        self.router_timeout = router_timeout
        self.retry_backoff = retry_backoff
        self._clock = clock

        self._targets: Dict[str, TargetRecord] = {}
        self._runs: Dict[str, _SessionRun] = {}
        self._tasks = AsyncTaskManager("DeploymentOrchestrator")

    # =========================================================================
    # Targets
    # =========================================================================

    def register_target(
        self,
        name: str,
        stable_version: Version,
        warm_pool: Optional[WarmPool] = None,
    ) -> TargetRecord:
        """Register a target with its current stable version."""
        if not name:
            raise ConfigError("Target name must not be empty")

        record = self._targets.get(name)
        if record is not None:
            if record.lock.locked():
                raise ConcurrentDeploymentError(
                    f"Cannot re-register {name} during a rollout",
                    target=name,
                    active_session=record.active_session or "",
                )
            record.stable_version = stable_version
        else:
            record = TargetRecord(name=name, stable_version=stable_version)
            self._targets[name] = record

        if warm_pool is not None:
            self.pools.put(warm_pool)

        logger.info(f"Registered target {name} at stable version {stable_version}")
        return record

    def get_stable_version(self, target: str) -> Version:
        return self._get_target(target).stable_version

    def targets(self) -> List[str]:
        return list(self._targets)

    def _get_target(self, name: str) -> TargetRecord:
        record = self._targets.get(name)
        if record is None:
            raise ConfigError(f"Unknown target: {name}")
        return record

    # =========================================================================
    # Sessions
    # =========================================================================

    async def start_rollout(
        self,
        target: str,
        candidate_version: Version,
        strategy: RolloutStrategy,
        alarm_config: Optional[AlarmConfig] = None,
        tags: Optional[Dict[str, str]] = None,
    ) -> SessionHandle:
        """
        Begin a rollout of ``candidate_version`` on ``target``.

        Raises:
            ConfigError: Unknown target, invalid strategy or alarm, or a
                candidate equal to the stable version
            ConcurrentDeploymentError: A session is already active for the target
        """
        record = self._get_target(target)
        alarm = alarm_config or AlarmConfig()

        if candidate_version == record.stable_version:
            raise ConfigError(
                f"Candidate {candidate_version} is already the stable version of {target}"
            )
        alarm.validate()
        steps = self.planner.plan(strategy)

        if record.lock.locked():
            raise ConcurrentDeploymentError(
                f"Target {target} already has an active rollout ({record.active_session})",
                target=target,
                active_session=record.active_session or "",
            )

        alarm_name = f"{target}-ErrorRate"
        monitor = self.monitor_builder.build(alarm, alarm_name=alarm_name)

        # Uncontended acquire completes without yielding
        await record.lock.acquire()

        session = DeploymentSession(
            session_id=uuid.uuid4().hex,
            target=target,
            stable_version=record.stable_version,
            candidate_version=candidate_version,
            strategy=strategy,
            steps=steps,
            alarm=alarm,
            started_at=self._clock(),
            alarm_name=alarm_name if alarm.enabled else None,
            tags=dict(tags or {}),
        )
        record.active_session = session.session_id

        run = _SessionRun(session=session, monitor=monitor)
        self._runs[session.session_id] = run

        self._publish(run, None, detail=f"{strategy.type.value} rollout of {candidate_version}")
        self._transition(run, SessionState.SHIFTING)

        run.task = self._tasks.create_task(
            self._run_session(run, record), name=f"rollout-{target}-{session.session_id[:8]}"
        )

        logger.info(
            f"Started rollout {session.session_id} on {target}: "
            f"{record.stable_version} -> {candidate_version}, "
            f"{len(steps)} steps, alarm {'on' if alarm.enabled else 'off'}"
        )
        return SessionHandle(session.session_id, run.task)

    def cancel(self, session_id: str, reason: str = "cancelled by operator") -> bool:
        """
        Request cancellation of a session.

        Returns:
            True if cancellation was accepted, False if the session cannot
            be cancelled in its current state

        Raises:
            SessionNotFoundError: If the session id is unknown
        """
        run = self._runs.get(session_id)
        if run is None:
            if self.sessions.get(session_id) is not None:
                return False
            raise SessionNotFoundError(f"Unknown session: {session_id}", session_id=session_id)

        if run.session.state not in CANCELLABLE_STATES or run.cancel_event.is_set():
            return False

        run.cancel_reason = reason
        run.cancel_event.set()
        logger.info(f"Cancellation requested for session {session_id}: {reason}")
        return True

    def get_session_status(self, session_id: str) -> DeploymentSession:
        """Snapshot of a session, live or archived."""
        run = self._runs.get(session_id)
        if run is not None:
            return run.session.snapshot()

        archived = self.sessions.get(session_id)
        if archived is None:
            raise SessionNotFoundError(f"Unknown session: {session_id}", session_id=session_id)
        return archived

    def list_sessions(self, active_only: bool = False) -> List[DeploymentSession]:
        active = [run.session.snapshot() for run in self._runs.values()]
        if active_only:
            return active

        live_ids = set(self._runs)
        archived = [
            self.sessions.get(session_id)
            for session_id in self.sessions.session_ids()
            if session_id not in live_ids
        ]
        return archived + active

    async def shutdown(self, reason: str = "controller shutdown") -> None:
        """Cancel every active session and wait for them to settle."""
        runs = list(self._runs.values())
        for run in runs:
            if run.session.state in CANCELLABLE_STATES:
                self.cancel(run.session.session_id, reason=reason)

        await self._tasks.wait_all()
        logger.info(f"Orchestrator shut down ({len(runs)} sessions settled)")

    # =========================================================================
    # Session loop
    # =========================================================================

    async def _run_session(self, run: _SessionRun, record: TargetRecord) -> DeploymentSession:
        session = run.session
        session_log = get_logger(__name__, session_id=session.session_id, target=session.target)
        try:
            await self._drive(run, record)
            session_log.info(f"Session finished in {session.state.value}")
        except Exception as e:
            log_exception(
                e,
                context=f"session {session.session_id} on {session.target}",
                include_traceback=True,
            )
            if not session.is_terminal:
                self._finish(run, SessionState.FAILED, error=f"{type(e).__name__}: {e}")
        finally:
            if not session.is_terminal:
                # Task cancelled from outside
                self._finish(run, SessionState.FAILED, error="session task interrupted")
            record.active_session = None
            self._runs.pop(session.session_id, None)
            record.lock.release()
        return session.snapshot()

    async def _drive(self, run: _SessionRun, record: TargetRecord) -> None:
        session = run.session

        for index, step in enumerate(session.steps):
            session.current_step_index = index
            if session.state != SessionState.SHIFTING:
                self._transition(run, SessionState.SHIFTING)

            if run.cancel_event.is_set():
                await self._roll_back(run, step, run.cancel_reason or "cancelled")
                return

            split = TrafficSplit.for_candidate(step.percentage)
            if not await self._apply_split(run, split):
                self._finish(
                    run,
                    SessionState.FAILED,
                    error=f"{session.error}; traffic left at previous split",
                )
                return

            self._transition(run, SessionState.MONITORING)
            if run.cancel_event.is_set():
                await self._roll_back(run, step, run.cancel_reason or "cancelled")
                return

            reason = await self._monitor_step(run, index, step)
            if reason is not None:
                await self._roll_back(run, step, reason)
                return

        record.stable_version = session.candidate_version
        self._finish(run, SessionState.SUCCEEDED)
        logger.info(f"{session.target}: {session.candidate_version} promoted to stable")

    async def _monitor_step(self, run: _SessionRun, index: int, step: Step) -> Optional[str]:
        """
        Monitor one step for its full interval.

        Returns:
            None when the step passed, otherwise the rollback reason
        """
        session = run.session
        remaining = step.interval

        if remaining <= _EPSILON:
            session.history.append(
                HistoryEntry(
                    step_index=index,
                    percentage=step.percentage,
                    verdict=None,
                    timestamp=self._clock(),
                    event="step",
                    detail="no monitoring window",
                )
            )
            return None

        period = session.alarm.period if run.monitor.enabled else remaining
        while remaining > _EPSILON:
            window = min(period, remaining)
            window_start = self._clock()
            if await wait_or_cancelled(run.cancel_event, window):
                return run.cancel_reason or "cancelled"
            window_end = self._clock()
            remaining -= window

            verdict, rollback = await run.monitor.check_window(
                session.target, session.candidate_version, window_start, window_end
            )
            session.history.append(
                HistoryEntry(
                    step_index=index,
                    percentage=step.percentage,
                    verdict=verdict,
                    timestamp=window_end,
                    detail=None if run.monitor.enabled else "alarm disabled",
                )
            )
            self.sessions.append(session)

            if rollback:
                return (
                    f"{session.alarm_name} breached for "
                    f"{session.alarm.evaluation_periods} consecutive periods"
                )
        return None

    async def _roll_back(self, run: _SessionRun, step: Step, reason: str) -> None:
        session = run.session
        self._transition(run, SessionState.ROLLING_BACK, detail=reason)

        # Any router failure here leaves traffic on the candidate
        ok = await self._apply_split(run, TrafficSplit.all_stable(), retry_on=(Exception,))
        session.history.append(
            HistoryEntry(
                step_index=session.current_step_index,
                percentage=step.percentage,
                verdict=None,
                timestamp=self._clock(),
                event="rollback",
                detail=reason,
            )
        )

        if ok:
            self._finish(run, SessionState.ROLLED_BACK, detail=reason)
            return

        exc = RollbackFailedError(
            f"Rollback of {session.target} failed; "
            f"{session.candidate_version} may still receive traffic",
            target=session.target,
            session_id=session.session_id,
        )
        session.escalated = True
        page(exc, context=f"session {session.session_id}")
        self._finish(run, SessionState.FAILED, error=str(exc))

    async def _apply_split(
        self,
        run: _SessionRun,
        split: TrafficSplit,
        retry_on: Tuple[Type[BaseException], ...] = _SPLIT_ERRORS,
    ) -> bool:
        """
        Set a split with one retry. Returns False when both attempts fail.

        Errors outside ``retry_on`` propagate.
        """
        target = run.session.target
        try:
            with log_operation(f"set_split({target})", logger=logger):
                await retry_call(
                    lambda: call_with_deadline(
                        self.router.set_split(target, split),
                        self.router_timeout,
                        context=f"set_split({target})",
                    ),
                    attempts=2,
                    backoff=self.retry_backoff,
                    exceptions=retry_on,
                    context=f"{target} split {split.stable}/{split.candidate}",
                )
            return True
        except retry_on as e:
            log_exception(e, context=f"session {run.session.session_id} set_split")
            run.session.error = f"{type(e).__name__}: {e}"
            return False

    # =========================================================================
    # Transitions
    # =========================================================================

    def _transition(
        self,
        run: _SessionRun,
        to_state: SessionState,
        detail: Optional[str] = None,
    ) -> None:
        from_state = run.session.state
        run.session.state = to_state
        self._publish(run, from_state, detail=detail)

    def _finish(
        self,
        run: _SessionRun,
        to_state: SessionState,
        error: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> None:
        session = run.session
        if error is not None:
            session.error = error
        session.finished_at = self._clock()
        self._transition(run, to_state, detail=detail or error)

    def _publish(
        self,
        run: _SessionRun,
        from_state: Optional[SessionState],
        detail: Optional[str] = None,
    ) -> None:
        session = run.session
        step = session.current_step
        self.sessions.append(session)
        self.events.publish(
            StateTransitionEvent(
                session_id=session.session_id,
                target=session.target,
                from_state=from_state,
                to_state=session.state,
                step_index=session.current_step_index,
                percentage=step.percentage if step else None,
                detail=detail,
                timestamp=self._clock(),
            )
        )
