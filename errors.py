"""Error taxonomy shared by the OAuth endpoints and the MCP session broker.

Every error carries a stable machine-readable ``error`` code and the HTTP
status it maps to. None of them is retried internally.
"""

from typing import Optional


class ServiceError(Exception):
    """Base class for errors surfaced directly to the caller."""

    error = "server_error"
    status_code = 500

    def __init__(self, description: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(description or self.error)
        self.description = description
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class MissingParameter(ServiceError):
    error = "invalid_request"
    status_code = 400


class UnknownClient(ServiceError):
    error = "invalid_client"
    status_code = 400


class InvalidRedirectURI(ServiceError):
    error = "invalid_redirect_uri"
    status_code = 400


class UnsupportedResponseType(ServiceError):
    error = "unsupported_response_type"
    status_code = 400


class CsrfMismatch(ServiceError):
    error = "csrf_mismatch"
    status_code = 403


class InvalidGrant(ServiceError):
    error = "invalid_grant"
    status_code = 400


class UnsupportedGrantType(ServiceError):
    error = "unsupported_grant_type"
    status_code = 400


class Unauthorized(ServiceError):
    error = "invalid_token"
    status_code = 401


class Forbidden(ServiceError):
    error = "forbidden"
    status_code = 403


class CapacityExceeded(ServiceError):
    """The client registry or session table is full. Callers should back off."""

    error = "temporarily_unavailable"
    status_code = 503


class SessionNotFound(ServiceError):
    error = "session_not_found"
    status_code = 404


class RateLimited(ServiceError):
    error = "rate_limited"
    status_code = 429
