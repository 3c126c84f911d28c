"""Error taxonomy for the booking risk engine.

Scorer-level problems (``SignalMissing``, ``ScorerTimeout``) are recovered
inside the scorer runner and surface only as factor strings.  Configuration
problems are fatal.  Transition conflicts are retryable by the caller.
"""

from __future__ import annotations


class RiskEngineError(Exception):
    """Base class for every error raised by the risk engine."""

    retryable: bool = False


class SignalMissing(RiskEngineError):
    """A scorer needed a telemetry field the booking did not provide."""

    def __init__(self, field: str) -> None:
        super().__init__(f"Required signal '{field}' is missing")
        self.field = field


class ScorerTimeout(RiskEngineError):
    """A category scorer did not finish within its time budget."""

    def __init__(self, category: str, timeout_ms: int) -> None:
        super().__init__(f"Scorer '{category}' timed out after {timeout_ms} ms")
        self.category = category
        self.timeout_ms = timeout_ms


class InvalidConfiguration(RiskEngineError):
    """The risk policy is inconsistent and must not be applied."""


class ConcurrentTransitionConflict(RiskEngineError):
    """Another writer changed the booking's disposition first, repeatedly."""

    retryable = True

    def __init__(self, booking_id: str, attempts: int) -> None:
        super().__init__(
            f"Disposition of booking '{booking_id}' changed concurrently; "
            f"gave up after {attempts} attempt(s)"
        )
        self.booking_id = booking_id
        self.attempts = attempts


class UnknownBooking(RiskEngineError):
    """No signals have been submitted for the booking."""

    def __init__(self, booking_id: str) -> None:
        super().__init__(f"Booking '{booking_id}' not found")
        self.booking_id = booking_id


class InvalidTransition(RiskEngineError):
    """A human action is not allowed from the booking's current state."""

    def __init__(self, booking_id: str, action: str, current_state: str) -> None:
        super().__init__(
            f"Cannot {action} booking '{booking_id}' while it is {current_state}"
        )
        self.booking_id = booking_id
        self.action = action
        self.current_state = current_state


class DuplicateSignals(RiskEngineError):
    """Signals were already captured for this booking and are immutable."""

    def __init__(self, booking_id: str) -> None:
        super().__init__(f"Signals for booking '{booking_id}' were already captured")
        self.booking_id = booking_id
