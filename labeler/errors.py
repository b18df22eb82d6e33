"""
Error taxonomy for the labeler.

Every request-scoped failure is an XRPCError: it carries the HTTP status,
the XRPC error name and a human readable message. Handlers map these
straight to a response payload (or an error frame on the stream).

Server-side failures (storage, signing, anything unclassified) all
surface to the caller as the same generic payload. Details stay in the
server log.
"""

from typing import Any, Dict


INTERNAL_ERROR_NAME = "InternalServerError"
INTERNAL_ERROR_MESSAGE = "An unknown error occurred"


class LabelerError(Exception):
    """Base exception for labeler errors."""
    pass


class XRPCError(LabelerError):
    """An error with a structured XRPC payload."""

    status: int = 500
    error: str = INTERNAL_ERROR_NAME
    expose_message: bool = True

    def __init__(self, message: str = "", error: str | None = None):
        super().__init__(message)
        self.message = message
        if error is not None:
            self.error = error

    @property
    def payload(self) -> Dict[str, Any]:
        """JSON body returned to the caller."""
        if not self.expose_message:
            return {"error": INTERNAL_ERROR_NAME, "message": INTERNAL_ERROR_MESSAGE}
        return {"error": self.error, "message": self.message}


class AuthRequired(XRPCError):
    """Missing or malformed bearer credential, or the verifier rejected it."""
    status = 401
    error = "AuthRequired"


class Unauthorized(XRPCError):
    """The verified identity is not allowed to write labels."""
    status = 403
    error = "Unauthorized"


class InvalidRequest(XRPCError):
    """Malformed cursor, limit, pattern, subject or event."""
    status = 400
    error = "InvalidRequest"


class FutureCursor(XRPCError):
    """Subscribe cursor is past the head of the log."""
    status = 400
    error = "FutureCursor"


class InternalFailure(XRPCError):
    """Unexpected failure. Never exposes its message."""
    status = 500
    error = INTERNAL_ERROR_NAME
    expose_message = False


class WriteFailure(InternalFailure):
    """A durable write did not complete."""
    pass


class SigningFailure(InternalFailure):
    """A signature could not be computed or persisted."""
    pass
