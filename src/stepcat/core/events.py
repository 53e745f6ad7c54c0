from __future__ import annotations

import collections
import logging
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from pydantic import BaseModel, Field

from .logging_utils import log_event
from .store import ExecutionStore, StoreError
from .utils import now_iso

_logger = logging.getLogger(__name__)

_DEFAULT_HISTORY = 2000


class EventType(str, Enum):
    EXECUTION_STARTED = "execution_started"
    STATE_SYNC = "state_sync"
    STEP_START = "step_start"
    STEP_COMPLETE = "step_complete"
    ITERATION_START = "iteration_start"
    ITERATION_COMPLETE = "iteration_complete"
    PHASE_START = "phase_start"
    GITHUB_CHECK = "github_check"
    REVIEW_START = "review_start"
    REVIEW_COMPLETE = "review_complete"
    ISSUE_FOUND = "issue_found"
    ISSUE_RESOLVED = "issue_resolved"
    PERMISSION_REQUEST = "permission_request"
    LOG = "log"
    ERROR = "error"
    STOPPED = "stopped"
    ALL_COMPLETE = "all_complete"


class CheckStatus(str, Enum):
    WAITING = "waiting"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    BLOCKED = "blocked"


class Event(BaseModel):
    seq: int
    type: EventType
    timestamp: str
    plan_id: Optional[int] = None
    data: Dict[str, Any] = Field(default_factory=dict)


EventListener = Callable[[Event], None]


class EventBus:
    """
    Ordered, timestamped stream of engine notifications.

    Observers never share engine state; they receive immutable events and can
    catch up from `history()` after joining mid-stream.
    """

    def __init__(self, *, history_size: int = _DEFAULT_HISTORY) -> None:
        self._seq = 0
        self._history: Deque[Event] = collections.deque(maxlen=history_size)
        self._listeners: List[EventListener] = []
        self.plan_id: Optional[int] = None

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, event_type: EventType, **data: Any) -> Event:
        self._seq += 1
        event = Event(
            seq=self._seq,
            type=event_type,
            timestamp=now_iso(),
            plan_id=self.plan_id,
            data={k: v for k, v in data.items() if v is not None},
        )
        self._history.append(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                log_event(
                    _logger,
                    logging.WARNING,
                    "events.listener.failed",
                    event_type=event_type.value,
                    exc=exc,
                )
        return event

    def history(self, since_seq: int = 0) -> List[Event]:
        return [event for event in self._history if event.seq > since_seq]

    @property
    def last_seq(self) -> int:
        return self._seq


class StoreEventRecorder:
    """Persists published events so other processes can follow the run."""

    def __init__(self, store: ExecutionStore) -> None:
        self._store = store

    def __call__(self, event: Event) -> None:
        try:
            self._store.record_event(
                event.plan_id,
                event.type.value,
                event.timestamp,
                event.model_dump(mode="json")["data"],
            )
        except StoreError as exc:
            log_event(
                _logger,
                logging.WARNING,
                "events.persist.failed",
                event_type=event.type.value,
                exc=exc,
            )


__all__ = [
    "CheckStatus",
    "Event",
    "EventBus",
    "EventListener",
    "EventType",
    "StoreEventRecorder",
]
