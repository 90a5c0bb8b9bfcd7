"""
Deployment event stream.

Every session state transition is published as a StateTransitionEvent to
synchronous listeners, async subscribers and an in-memory tail.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Deque, Dict, List, Optional, Set

from ..core.logging_config import log_deployment_event
from .models import SessionState, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StateTransitionEvent:
    """A session moved from one state to another."""

    session_id: str
    target: str
    from_state: Optional[SessionState]
    to_state: SessionState
    step_index: Optional[int] = None
    percentage: Optional[float] = None
    detail: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "target": self.target,
            "from_state": self.from_state.value if self.from_state else None,
            "to_state": self.to_state.value,
            "step_index": self.step_index,
            "percentage": self.percentage,
            "detail": self.detail,
            "timestamp": self.timestamp.isoformat(),
        }


class EventStream:
    """
    Fan-out of state transition events.

    Example:
        stream = EventStream()
        stream.add_listener(lambda event: print(event.to_state))

        async for event in stream.subscribe():
            ...
    """

    def __init__(self, history_size: int = 500, queue_size: int = 100):
        self._listeners: List[Callable[[StateTransitionEvent], None]] = []
        self._queues: Set[asyncio.Queue] = set()
        self._recent: Deque[StateTransitionEvent] = deque(maxlen=history_size)
        self._queue_size = queue_size

    def add_listener(self, listener: Callable[[StateTransitionEvent], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[StateTransitionEvent], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, event: StateTransitionEvent) -> None:
        """Deliver an event to every listener and subscriber."""
        self._recent.append(event)

        level = logging.WARNING if event.to_state == SessionState.ROLLING_BACK else logging.INFO
        if event.to_state == SessionState.FAILED:
            level = logging.ERROR
        log_deployment_event(
            event.session_id,
            event.target,
            event.to_state.value,
            level=level,
            from_state=event.from_state.value if event.from_state else None,
            step_index=event.step_index,
            percentage=event.percentage,
            detail=event.detail,
        )

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed: {e}")

        for queue in list(self._queues):
            if queue.full():
                dropped = queue.get_nowait()
                logger.warning(
                    f"Event subscriber lagging, dropped {dropped.to_state.value} "
                    f"for session {dropped.session_id}"
                )
            queue.put_nowait(event)

    async def subscribe(self) -> AsyncIterator[StateTransitionEvent]:
        """Yield events published after the call, until the consumer stops."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._queues.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.discard(queue)

    def recent(self, limit: int = 50) -> List[StateTransitionEvent]:
        if limit <= 0:
            return []
        return list(self._recent)[-limit:]

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)
