"""
Bounded violation log shared by the security engines.
"""

import threading
import time
import uuid
from collections import Counter, deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from shared.logging import get_logger
from shared.metrics import MetricsCollector


class ViolationType(str, Enum):
    CSP = "csp"
    XSS = "xss"
    CSRF = "csrf"
    RATE_LIMIT = "rate-limit"
    GENERAL = "general"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


RISK_LEVELS = ("low", "medium", "high", "critical")


def max_risk(levels: Iterable[str]) -> str:
    """Highest of the given risk levels, 'low' when empty."""
    highest = 0
    for level in levels:
        highest = max(highest, RISK_LEVELS.index(level))
    return RISK_LEVELS[highest]


class SecurityViolationEvent(BaseModel):
    """A single recorded security violation."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: ViolationType
    severity: Severity
    timestamp: int
    description: str
    source: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ViolationLog:
    """Ring buffer keeping the most recent violation events."""

    def __init__(
        self,
        capacity: int = 100,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.capacity = capacity
        self.metrics = metrics
        self._clock = clock
        self._events: Deque[SecurityViolationEvent] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self.logger = get_logger("security.violations")

    def record(
        self,
        violation_type: ViolationType,
        severity: Severity,
        description: str,
        source: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> SecurityViolationEvent:
        """Append an event, evicting the oldest when full."""
        event = SecurityViolationEvent(
            type=violation_type,
            severity=severity,
            timestamp=round(self._clock() * 1000),
            description=description,
            source=source,
            details=details or {},
        )
        with self._lock:
            self._events.append(event)

        self.logger.warning(
            "Security violation",
            violation_type=event.type.value,
            severity=event.severity.value,
            description=description,
            source=source,
        )
        if self.metrics:
            self.metrics.record_violation(event.type.value, event.severity.value)
        return event

    def recent(
        self,
        limit: Optional[int] = None,
        violation_type: Optional[ViolationType] = None,
    ) -> List[SecurityViolationEvent]:
        """Most recent events first, optionally filtered by type."""
        with self._lock:
            events = list(reversed(self._events))
        if violation_type is not None:
            events = [event for event in events if event.type == violation_type]
        if limit is not None:
            events = events[:limit]
        return events

    def counts_by_type(self) -> Dict[str, int]:
        with self._lock:
            return dict(Counter(event.type.value for event in self._events))

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
