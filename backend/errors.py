"""Domain error taxonomy for the orchestration backend.

Request-handling code raises these and lets them propagate; the central
handler in ``api/errors.py`` maps each class to an HTTP status code.
Background work never lets them escape: the supervisor converts them into
an orchestration failure instead.
"""


class OrchestrationError(Exception):
    """Base class for all domain errors.

    Attributes:
        message: Human-readable description, safe to return to clients.
        status_code: HTTP-equivalent status used by the central handler.
    """

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(OrchestrationError):
    """A referenced orchestration, repository or agent run does not exist."""

    status_code = 404


class InvalidStateError(OrchestrationError):
    """The orchestration is not in a state that permits the operation."""

    status_code = 409


class InvalidRequestError(OrchestrationError):
    """The request is well-formed JSON but semantically invalid."""

    status_code = 400
