"""
Typed notification channel for engine lifecycle and detection events.
"""

import threading
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class EngineEvent(str, Enum):
    """Events published by the AnomalyDetector"""

    INITIALIZED = "initialized"
    ERROR = "error"
    STARTED = "started"
    STOPPED = "stopped"
    BATCH_PROCESSED = "batch-processed"
    ANOMALY_DETECTED = "anomaly-detected"


@dataclass
class ErrorEvent:
    """Payload of an ERROR event"""

    stage: str
    error: Exception
    context: dict[str, Any] = field(default_factory=dict)


Subscriber = Callable[[Any], None]


class EventBus:
    """Fan-out of engine events to subscribers.

    Payloads per event:
        INITIALIZED, STARTED, STOPPED -> EngineState
        ERROR -> ErrorEvent
        BATCH_PROCESSED -> BatchRun
        ANOMALY_DETECTED -> Anomaly

    A subscriber that raises is logged and skipped; it never reaches the engine.
    """

    def __init__(self):
        self._subscribers: dict[EngineEvent, list[Subscriber]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event: EngineEvent, callback: Subscriber) -> Callable[[], None]:
        """Register a callback and return a function that removes it"""
        event = EngineEvent(event)
        with self._lock:
            self._subscribers[event].append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers[event]:
                    self._subscribers[event].remove(callback)

        return unsubscribe

    def emit(self, event: EngineEvent, payload: Any = None) -> None:
        with self._lock:
            callbacks = list(self._subscribers[event])

        for callback in callbacks:
            try:
                callback(payload)
            except Exception as e:
                logger.error(
                    "Event subscriber failed",
                    event_name=event.value,
                    subscriber=getattr(callback, "__name__", repr(callback)),
                    error=str(e),
                    exc_info=True,
                )

    def subscriber_count(self, event: EngineEvent) -> int:
        with self._lock:
            return len(self._subscribers[event])
