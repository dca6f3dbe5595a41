"""
Continuous validation of a live input field.
"""

from typing import Callable, Dict, List, Optional

from shared.logging import get_logger
from .threat_sanitizer import SanitizeOptions, ThreatSanitizer, ValidationResult

INPUT_EVENTS = ("input", "paste")

Listener = Callable[["LiveInput"], None]


class LiveInput:
    """Value holder that notifies listeners on input and paste events."""

    def __init__(self, value: str = ""):
        self._value = value
        self._listeners: Dict[str, List[Listener]] = {event: [] for event in INPUT_EVENTS}

    @property
    def value(self) -> str:
        return self._value

    @value.setter
    def value(self, new_value: str) -> None:
        # Programmatic assignment does not emit events.
        self._value = new_value

    def add_listener(self, event: str, listener: Listener) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown input event: {event}")
        self._listeners[event].append(listener)

    def remove_listener(self, event: str, listener: Listener) -> None:
        if listener in self._listeners.get(event, []):
            self._listeners[event].remove(listener)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def type(self, value: str) -> None:
        """Replace the value as a user edit and emit an input event."""
        self._value = value
        self._emit("input")

    def paste(self, text: str) -> None:
        """Append pasted text and emit a paste event."""
        self._value = self._value + text
        self._emit("paste")

    def _emit(self, event: str) -> None:
        for listener in list(self._listeners[event]):
            listener(self)


class InputMonitor:
    """Re-validates a LiveInput on every edit and neutralises risky values."""

    REPLACE_RISK_LEVELS = ("high", "critical")

    def __init__(
        self,
        sanitizer: ThreatSanitizer,
        live_input: LiveInput,
        on_threat: Optional[Callable[[ValidationResult], None]] = None,
        options: Optional[SanitizeOptions] = None,
    ):
        self.sanitizer = sanitizer
        self.live_input = live_input
        self.on_threat = on_threat
        self.options = options
        self.last_result: Optional[ValidationResult] = None
        self.logger = get_logger("security.sanitizer.monitor")
        self._attached = False
        self.attach()

    @property
    def attached(self) -> bool:
        return self._attached

    def attach(self) -> None:
        if self._attached:
            return
        for event in INPUT_EVENTS:
            self.live_input.add_listener(event, self._handle)
        self._attached = True

    def detach(self) -> None:
        """Stop monitoring the input."""
        if not self._attached:
            return
        for event in INPUT_EVENTS:
            self.live_input.remove_listener(event, self._handle)
        self._attached = False

    def _handle(self, live_input: LiveInput) -> None:
        result = self.sanitizer.validate(live_input.value, self.options)
        self.last_result = result

        if result.risk_level in self.REPLACE_RISK_LEVELS:
            live_input.value = result.sanitized_value
            self.logger.info("Live input value replaced", risk_level=result.risk_level)

        if not result.is_valid and self.on_threat is not None:
            self.on_threat(result)
