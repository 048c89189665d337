from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from loguru import logger

from .alerts import AlertRouter
from .settings import settings


STATE_UPDATED = "state-updated"
PATTERNS_DETECTED = "patterns-detected"
DECISION_MADE = "decision-made"
EXECUTION_COMPLETED = "execution-completed"
OUTCOME_INFERRED = "outcome-inferred"
RULE_ADAPTED = "rule-adapted"
ERROR = "error"

EVENT_TYPES = (
    STATE_UPDATED,
    PATTERNS_DETECTED,
    DECISION_MADE,
    EXECUTION_COMPLETED,
    OUTCOME_INFERRED,
    RULE_ADAPTED,
    ERROR,
)


@dataclass
class CoachEvent:
    event_type: str
    message: str
    payload: dict = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class EventLog:
    """Bounded outbound event list consumed by UI/telemetry collaborators."""

    def __init__(self, capacity: int | None = None, alerts: AlertRouter | None = None) -> None:
        self._events: deque[CoachEvent] = deque(maxlen=capacity or settings.event_log_capacity)
        self._lock = threading.Lock()
        self.alerts = alerts
        self.counts: dict[str, int] = {}

    def emit(self, event_type: str, message: str, payload: dict | None = None) -> CoachEvent:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        event = CoachEvent(event_type=event_type, message=message, payload=payload or {})
        with self._lock:
            self._events.append(event)
            self.counts[event_type] = self.counts.get(event_type, 0) + 1

        if event_type == ERROR:
            logger.warning("[{}] {}", event_type, message)
        else:
            logger.debug("[{}] {}", event_type, message)

        if self.alerts is not None:
            try:
                self.alerts.send(event_type, message, event.payload)
            except Exception as exc:
                logger.warning("Alert routing failed for {}: {}", event_type, exc)
        return event

    def error(self, message: str, **payload) -> CoachEvent:
        return self.emit(ERROR, message, payload)

    def events(self, event_type: str | None = None) -> list[CoachEvent]:
        with self._lock:
            items = list(self._events)
        if event_type is None:
            return items
        return [event for event in items if event.event_type == event_type]

    def drain(self) -> list[CoachEvent]:
        with self._lock:
            items = list(self._events)
            self._events.clear()
        return items
