"""
Sliding-window rate limiter for the security service.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Optional

from shared.config import RateLimitConfig
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..events import Severity, ViolationLog, ViolationType


@dataclass
class RateWindow:
    """Request history for one identifier."""
    identifier: str
    timestamps: Deque[int] = field(default_factory=deque)
    blocked_until: Optional[int] = None
    # Set once the window is dropped from the registry.
    retired: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def prune(self, now: int, window_ms: int) -> None:
        cutoff = now - window_ms
        while self.timestamps and self.timestamps[0] < cutoff:
            self.timestamps.popleft()

    def is_blocked(self, now: int) -> bool:
        return self.blocked_until is not None and now < self.blocked_until


class RateLimiter:
    """Admits or denies requests per identifier over a sliding time window."""

    def __init__(
        self,
        violation_log: Optional[ViolationLog] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
        prune_every: int = 1000,
    ):
        self.violation_log = violation_log
        self.metrics = metrics
        self.logger = get_logger("security.rate_limiter")
        self._clock = clock
        self._windows: Dict[str, RateWindow] = {}
        self._registry_lock = threading.Lock()
        # Idle windows are swept after every prune_every decisions, using the
        # longest window seen so no identifier loses requests it still counts.
        self.prune_every = prune_every
        self._decisions = 0
        self._longest_window_ms = 0
        self._counter_lock = threading.Lock()

    def _now_ms(self) -> int:
        return round(self._clock() * 1000)

    def _get_window(self, identifier: str) -> RateWindow:
        with self._registry_lock:
            window = self._windows.get(identifier)
            if window is None:
                window = RateWindow(identifier=identifier)
                self._windows[identifier] = window
            return window

    def _peek_window(self, identifier: str) -> Optional[RateWindow]:
        with self._registry_lock:
            return self._windows.get(identifier)

    def is_allowed(self, identifier: str, config: RateLimitConfig) -> bool:
        """Record and admit a request, or deny it without recording."""
        allowed = self._decide(identifier, config)
        sweep_window_ms = self._sweep_due(config.window_ms)
        if sweep_window_ms is not None:
            removed = self.prune_idle(sweep_window_ms)
            if removed:
                self.logger.debug("Idle rate windows pruned", removed=removed)
        return allowed

    def _sweep_due(self, window_ms: int) -> Optional[int]:
        with self._counter_lock:
            self._longest_window_ms = max(self._longest_window_ms, window_ms)
            if self.prune_every <= 0:
                return None
            self._decisions += 1
            if self._decisions % self.prune_every:
                return None
            return self._longest_window_ms

    def _acquire_window(self, identifier: str) -> RateWindow:
        """Registered window for an identifier, returned with its lock held."""
        while True:
            window = self._get_window(identifier)
            window.lock.acquire()
            if not window.retired:
                return window
            window.lock.release()

    def _decide(self, identifier: str, config: RateLimitConfig) -> bool:
        now = self._now_ms()
        window = self._acquire_window(identifier)

        try:
            if window.is_blocked(now):
                self._record_decision(False)
                return False
            window.blocked_until = None

            window.prune(now, config.window_ms)
            if len(window.timestamps) >= config.max_requests:
                if config.block_duration_ms > 0:
                    window.blocked_until = now + config.block_duration_ms
                blocked_until = window.blocked_until
                count = len(window.timestamps)
            else:
                window.timestamps.append(now)
                self._record_decision(True)
                return True
        finally:
            window.lock.release()

        self.logger.warning(
            "Rate limit exceeded",
            identifier=identifier,
            current_count=count,
            limit=config.max_requests,
            blocked_until=blocked_until,
        )
        self._record_decision(False)
        if self.violation_log is not None:
            self.violation_log.record(
                ViolationType.RATE_LIMIT,
                Severity.MEDIUM,
                "Rate limit exceeded",
                source="rate_limiter",
                details={
                    "identifier": identifier,
                    "max_requests": config.max_requests,
                    "window_ms": config.window_ms,
                    "blocked_until": blocked_until,
                },
            )
        return False

    def _record_decision(self, allowed: bool) -> None:
        if self.metrics:
            self.metrics.record_rate_limit(allowed)

    def get_request_count(self, identifier: str, config: RateLimitConfig) -> int:
        """Requests counted in the current window. Read-only."""
        window = self._peek_window(identifier)
        if window is None:
            return 0
        cutoff = self._now_ms() - config.window_ms
        with window.lock:
            return sum(1 for timestamp in window.timestamps if timestamp >= cutoff)

    def is_blocked(self, identifier: str) -> bool:
        window = self._peek_window(identifier)
        if window is None:
            return False
        with window.lock:
            return window.is_blocked(self._now_ms())

    def blocked_until_ms(self, identifier: str) -> Optional[int]:
        """Epoch milliseconds at which the block lifts, if currently blocked."""
        window = self._peek_window(identifier)
        if window is None:
            return None
        with window.lock:
            if window.is_blocked(self._now_ms()):
                return window.blocked_until
            return None

    def clear_history(self) -> None:
        """Forget every window and block."""
        with self._registry_lock:
            for window in self._windows.values():
                with window.lock:
                    window.retired = True
            self._windows.clear()
        self.logger.info("Rate limit history cleared")

    def prune_idle(self, window_ms: int) -> int:
        """Drop windows with no recent requests and no active block."""
        now = self._now_ms()
        removed = 0
        with self._registry_lock:
            for identifier in list(self._windows):
                window = self._windows[identifier]
                with window.lock:
                    window.prune(now, window_ms)
                    idle = not window.timestamps and not window.is_blocked(now)
                    window.retired = idle
                if idle:
                    del self._windows[identifier]
                    removed += 1
        return removed

    def get_stats(self) -> Dict[str, Any]:
        now = self._now_ms()
        with self._registry_lock:
            windows = list(self._windows.values())

        blocked = 0
        tracked_requests = 0
        for window in windows:
            with window.lock:
                blocked += int(window.is_blocked(now))
                tracked_requests += len(window.timestamps)

        return {
            "tracked_identifiers": len(windows),
            "blocked_identifiers": blocked,
            "tracked_requests": tracked_requests,
        }
