"""Custom exception hierarchy for hijackwatch."""


class HijackWatchError(Exception):
    """Base error."""
    status_code = 500

    def __init__(self, message: str, code: str = "HIJACKWATCH_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class Unauthorized(HijackWatchError):
    """No authenticated principal on the request."""
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED")


class InvalidPayload(HijackWatchError):
    """Request body failed schema validation."""
    status_code = 400

    def __init__(self, message: str = "Invalid payload"):
        super().__init__(message, code="INVALID_PAYLOAD")


class SessionNotFound(HijackWatchError):
    """Authenticated principal with no durable, unexpired session."""
    status_code = 404

    def __init__(self, message: str = "Session not found"):
        super().__init__(message, code="SESSION_NOT_FOUND")


class EventNotFound(HijackWatchError):
    status_code = 404

    def __init__(self, message: str = "Event not found"):
        super().__init__(message, code="EVENT_NOT_FOUND")


class AlreadyAdjudicated(HijackWatchError):
    status_code = 409

    def __init__(self, message: str = "Event already adjudicated"):
        super().__init__(message, code="ALREADY_ADJUDICATED")


class DetectionFailure(HijackWatchError):
    """The detection transaction could not commit. The fingerprint write stands."""

    def __init__(self, message: str = "Detection failed"):
        super().__init__(message, code="DETECTION_FAILURE")


class AdjudicationError(HijackWatchError):
    """The reasoning model call failed or timed out."""

    def __init__(self, message: str = "Adjudication failed", code: str = "ADJUDICATION_ERROR"):
        super().__init__(message, code=code)


class UnexpectedResponseShape(AdjudicationError):
    """The model replied with something other than the requested structured text."""

    def __init__(self, message: str = "Unexpected model response shape"):
        super().__init__(message, code="UNEXPECTED_RESPONSE_SHAPE")
