"""Business-rule failures raised by the rsvpcore services.

Every class carries a stable ``code`` for API clients and the HTTP status the
web layer maps it to. Storage failures (lost connections, locked databases) are
never wrapped in these; they propagate as-is.
"""

from __future__ import annotations


class RSVPCoreError(Exception):
    """Base class for expected, caller-recoverable outcomes."""

    code = "Error"
    status_code = 400
    default_message = "The request could not be completed."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def as_payload(self) -> dict[str, str]:
        return {"error": self.code, "message": self.message}


class NotFoundError(RSVPCoreError):
    code = "NotFound"
    status_code = 404
    default_message = "Resource not found."


class ForbiddenError(RSVPCoreError):
    code = "Forbidden"
    status_code = 403
    default_message = "Only the event owner may do that."


class ConflictError(RSVPCoreError):
    code = "Conflict"
    status_code = 409
    default_message = "An RSVP already exists for this email and event."


class CapacityExceededError(RSVPCoreError):
    """Raised when an event has no attending slots left."""

    code = "EventFull"
    status_code = 409
    default_message = "This event has reached its maximum number of attendees."


class InvalidStateError(RSVPCoreError):
    code = "InvalidState"
    status_code = 422
    default_message = "The event is not accepting RSVPs."


class DeadlinePassedError(RSVPCoreError):
    code = "DeadlinePassed"
    status_code = 422
    default_message = "The RSVP deadline has passed."


class InvalidScheduleError(RSVPCoreError):
    code = "InvalidSchedule"
    status_code = 422
    default_message = "Scheduled date must be in the future."


class MissingScheduleError(RSVPCoreError):
    code = "MissingSchedule"
    status_code = 400
    default_message = "Scheduled date is required for scheduling messages."
