"""
Error taxonomy for the btw daemon.

Every failure raised past a component boundary is one of these classes.
The category tells the listener loop what to do with it:

- FATAL          terminate the process
- SESSION_ABORT  drop the current session, notify, return to idle
- DEGRADED       fall back to a reduced-quality response
- REJECTED       refuse the specific action, notify, return to idle
"""

from enum import Enum


class ErrorCategory(Enum):
    FATAL = "fatal"
    SESSION_ABORT = "session_abort"
    DEGRADED = "degraded"
    REJECTED = "rejected"


class BtwError(Exception):
    """Base class for all btw errors."""

    category = ErrorCategory.SESSION_ABORT

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    @property
    def user_message(self) -> str:
        """Short text suitable for a notification or spoken reply."""
        return self.message or "Something went wrong."


# Fatal

class AudioDeviceError(BtwError):
    category = ErrorCategory.FATAL


class WakeModelError(BtwError):
    category = ErrorCategory.FATAL


class CatalogError(BtwError):
    category = ErrorCategory.FATAL


class ConfigError(BtwError):
    category = ErrorCategory.FATAL


# Session abort

class TranscriptionError(BtwError):
    category = ErrorCategory.SESSION_ABORT

    @property
    def user_message(self) -> str:
        return "Sorry, I couldn't understand that."


class ParameterError(BtwError):
    category = ErrorCategory.SESSION_ABORT


class ConfirmationAborted(BtwError):
    category = ErrorCategory.SESSION_ABORT


# Degraded

class LLMError(BtwError):
    category = ErrorCategory.DEGRADED


class SearchError(BtwError):
    category = ErrorCategory.DEGRADED


class SpeechError(BtwError):
    category = ErrorCategory.DEGRADED


# Rejected

class UnsafeParameterError(ParameterError):
    category = ErrorCategory.REJECTED


class ConfirmationPending(BtwError):
    category = ErrorCategory.REJECTED

    @property
    def user_message(self) -> str:
        return "Another command is waiting for confirmation. Say yes or no first."


class ReentrantSession(BtwError):
    category = ErrorCategory.REJECTED
