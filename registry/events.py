"""Status events produced by the engine; consumers decide how to log or export them."""
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List

POOL_BACKOFF = 'pool_backoff'
POOL_PERMANENTLY_FAILED = 'pool_permanently_failed'
POOL_UNHEALTHY = 'pool_unhealthy'
POOL_RECOVERED = 'pool_recovered'
NODE_UNREGISTERED = 'node_unregistered'
SCALE_UP_FAILED = 'scale_up_failed'
SCALE_DOWN_FAILED = 'scale_down_failed'
SCALE_DOWN_SKIPPED = 'scale_down_skipped'
POD_UNSCHEDULABLE = 'pod_permanently_unschedulable'
INVARIANT_VIOLATION = 'invariant_violation'
DEADLINE_EXCEEDED = 'tick_deadline_exceeded'
INVALID_INPUT = 'invalid_input'
PROVIDER_ERROR = 'provider_error'
TICK_FAILED = 'tick_failed'

WARNING_KINDS = frozenset({
    POOL_BACKOFF, POOL_PERMANENTLY_FAILED, POOL_UNHEALTHY, NODE_UNREGISTERED,
    SCALE_UP_FAILED, SCALE_DOWN_FAILED, INVARIANT_VIOLATION, DEADLINE_EXCEEDED,
    INVALID_INPUT, PROVIDER_ERROR, TICK_FAILED,
})


@dataclass(frozen=True)
class StatusEvent:
    kind: str
    subject: str
    message: str
    at: float
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'subject': self.subject,
            'message': self.message,
            'at': self.at,
            'details': dict(self.details),
        }


class EventRecorder:
    """Collects events for one tick; drained by the control loop"""

    def __init__(self):
        self._events: List[StatusEvent] = []
        self._lock = threading.Lock()

    def record(self, kind: str, subject: str, message: str, at: float, **details) -> StatusEvent:
        event = StatusEvent(kind=kind, subject=subject, message=message, at=at, details=details)
        with self._lock:
            self._events.append(event)
        return event

    def drain(self) -> List[StatusEvent]:
        with self._lock:
            events, self._events = self._events, []
        return events

    def peek(self) -> List[StatusEvent]:
        with self._lock:
            return list(self._events)
