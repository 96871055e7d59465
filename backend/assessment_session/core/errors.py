from __future__ import annotations


class AssessmentError(Exception):
    """Base class for errors raised by the assessment session core."""

    error_code = "assessment_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthError(AssessmentError):
    """Missing or rejected candidate credential. Fatal to the triggering call."""

    error_code = "unauthorized"
    status_code = 401


class NetworkError(AssessmentError):
    """Upstream transport failure, timeout, 5xx or unreadable payload. Recoverable."""

    error_code = "upstream_unavailable"
    status_code = 502


class AssessmentValidationError(AssessmentError):
    """Input rejected at the boundary, before any network call."""

    error_code = "validation_error"
    status_code = 422


class SessionUnavailableError(AssessmentError):
    error_code = "session_unavailable"
    status_code = 409


class TimerAuthorityError(AssessmentError):
    error_code = "timer_authority"
    status_code = 409


class ApplicationNotFoundError(AssessmentError):
    error_code = "application_not_found"
    status_code = 404
