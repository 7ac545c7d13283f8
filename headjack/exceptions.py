"""
Custom Exception Classes

This module defines the error taxonomy used across the bot engine:

- TransientError: retried with backoff (network timeouts, 5xx, rate limits)
- RecoverableError: logged and skipped (handler failures, malformed arguments)
- FatalError: terminates the session (revoked credentials, unusable state)
"""

from typing import Optional


class HeadjackBaseException(Exception):
    """Base exception for the headjack framework."""

    pass


class TransientError(HeadjackBaseException):
    """Raised for failures that are expected to clear up on retry."""

    pass


class TransientSyncError(TransientError):
    """Raised by a protocol client when a sync request failed transiently."""

    pass


class TransientSendError(TransientError):
    """Raised by a protocol client when an outbound action failed transiently."""

    pass


class RateLimitedError(TransientError):
    """Raised when the server asks us to slow down."""

    def __init__(self, retry_after: float, message: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(message or f"Rate limited, retry after {retry_after:.3f}s")


class RecoverableError(HeadjackBaseException):
    """Raised for errors that affect a single event or handler only."""

    pass


class CommandParseError(RecoverableError):
    """Raised when command arguments cannot be tokenized."""

    def __init__(self, text: str, reason: str):
        self.text = text
        self.reason = reason
        super().__init__(f"Could not parse arguments in {text!r}: {reason}")


class HandlerError(RecoverableError):
    """Wraps an exception raised by a command handler."""

    def __init__(self, command: str, original_error: Exception):
        self.command = command
        self.original_error = original_error
        super().__init__(f"Handler for '{command}' failed: {original_error}")


class DuplicateEventError(RecoverableError):
    """Raised when an event id has already been processed."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event {event_id} already processed")


class FatalError(HeadjackBaseException):
    """Raised for errors after which the session cannot continue."""

    pass


class FatalSyncError(FatalError):
    """Raised by a protocol client when the session is no longer usable."""

    pass


class SessionTerminatedError(FatalError):
    """Raised by the sync loop when it stops because of a fatal error."""

    def __init__(self, operation: str, last_cursor: Optional[str], original_error: Exception):
        self.operation = operation
        self.last_cursor = last_cursor
        self.original_error = original_error
        super().__init__(
            f"Session terminated during '{operation}' "
            f"(last cursor: {last_cursor}): {original_error}"
        )


class AuthenticationError(FatalError):
    """Raised when the bot cannot log in or restore its session."""

    pass


class ActionRejectedError(HeadjackBaseException):
    """Raised when the server permanently rejects an outbound action."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Action rejected: {reason}")


class QueueFullError(HeadjackBaseException):
    """Raised when a room's outbound queue is at capacity."""

    def __init__(self, room_id: str, depth: int):
        self.room_id = room_id
        self.depth = depth
        super().__init__(f"Outbound queue for {room_id} is full ({depth} pending)")


class RegistrationClosedError(HeadjackBaseException):
    """Raised when a command is registered after dispatch has started."""

    pass


class ConfigurationError(HeadjackBaseException):
    """Raised for configuration problems."""

    pass
