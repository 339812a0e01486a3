"""
Error taxonomy for the relay and its collaborators.

Errors raised before event-stream headers are committed carry the HTTP
status the API layer answers with.
"""


class RelayError(Exception):
    """Base class for errors surfaced to the caller as ``{"error": ...}``."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthenticated(RelayError):
    """Caller identity is missing or was rejected."""
    status_code = 401


class BadRequest(RelayError):
    """Request body is malformed or resolves to no turns."""
    status_code = 400


class Misconfigured(RelayError):
    """A required process setting (e.g. the upstream credential) is absent."""
    status_code = 500


class UpstreamSetupFailure(RelayError):
    """The provider failed before any bytes were relayed."""
    status_code = 500


class UpstreamStreamFailure(RelayError):
    """The provider stream broke after headers were committed.

    Never answered with a status code; reported in-band as an SSE
    ``error`` event.
    """


class PersistenceFailure(Exception):
    """A durable write or read against the exchange store failed."""
