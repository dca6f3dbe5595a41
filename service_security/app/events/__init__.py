"""
Security violation events.

Holds the event model shared by every engine and the bounded in-memory log
that keeps the most recent violations for inspection.
"""

from .violation_log import (
    RISK_LEVELS,
    SecurityViolationEvent,
    Severity,
    ViolationLog,
    ViolationType,
    max_risk,
)

__all__ = [
    "RISK_LEVELS",
    "SecurityViolationEvent",
    "Severity",
    "ViolationLog",
    "ViolationType",
    "max_risk",
]
