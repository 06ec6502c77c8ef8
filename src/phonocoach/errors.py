"""Error kinds raised by the diagnosis, progression and gateway layers."""
from typing import Optional


class PhonocoachError(Exception):
    """Base class for all errors raised by the package."""

    kind: str = "internal"
    user_message: str = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.user_message)
        self.message = message or self.user_message


class InvalidInput(PhonocoachError):
    """Malformed target set or missing required fields."""

    kind = "invalid_input"
    user_message = "The request was incomplete. Please check it and try again."


class InvalidStateTransition(PhonocoachError):
    """Illegal progression update attempted."""

    kind = "invalid_state_transition"
    user_message = "This step is not available right now."


class SecretMissing(PhonocoachError):
    """Endpoint or credential not configured."""

    kind = "secret_missing"
    user_message = "The speech service is temporarily unavailable."

    def __init__(self, name: str):
        super().__init__(f"Secret '{name}' is not configured")
        self.name = name


class UpstreamError(PhonocoachError):
    """Non-success response from the external backend."""

    kind = "upstream_error"
    user_message = "The speech service could not process your request."

    def __init__(self, status: Optional[int], body: str):
        super().__init__(f"Upstream service returned an error: {status} {body}")
        self.status = status
        self.body = body


class Timeout(PhonocoachError):
    """The external backend did not answer in time."""

    kind = "timeout"
    user_message = "The speech service took too long to answer. Please try again."


class Busy(PhonocoachError):
    """A request is already in flight for this learner."""

    kind = "busy"
    user_message = "Your previous attempt is still being processed."


class Cancelled(PhonocoachError):
    """The in-flight call was cancelled before it completed."""

    kind = "cancelled"
    user_message = "The request was cancelled."


class VersionConflict(PhonocoachError):
    """A concurrent progress write won the race."""

    kind = "version_conflict"
    user_message = "Something went wrong. Please try again."


def user_message(error: BaseException) -> str:
    """Return the fixed learner-facing message for an error.

    Raw upstream bodies and operator details never reach the learner.
    """
    if isinstance(error, PhonocoachError):
        return type(error).user_message
    return PhonocoachError.user_message
