from typing import Optional


class ServiceError(Exception):
    """
    Expected, recoverable failure of a service operation.

    Carries a machine-readable kind, the HTTP status the API layer should
    answer with, and any structured details the caller needs to act on it.
    """
    kind = "error"
    status_code = 400

    def __init__(self, message: str, **details):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        payload = {"error": self.message, "kind": self.kind}
        payload.update(self.details)
        return payload


class NotFoundError(ServiceError):
    kind = "not_found"
    status_code = 404


class ForbiddenError(ServiceError):
    kind = "forbidden"
    status_code = 403


class ConflictError(ServiceError):
    kind = "conflict"
    status_code = 409


class InvalidStateError(ServiceError):
    kind = "invalid_state"
    status_code = 409


class QuotaExceededError(ServiceError):
    kind = "quota_exceeded"
    status_code = 429


class RateLimitedError(ServiceError):
    kind = "rate_limited"
    status_code = 429

    def __init__(self, message: str, retry_after_minutes: int, **details):
        self.retry_after_minutes = retry_after_minutes
        super().__init__(message, retry_after_minutes=retry_after_minutes, **details)


class PreconditionError(ServiceError):
    kind = "precondition"
    status_code = 422


class ValidationError(ServiceError):
    kind = "invalid_input"
    status_code = 400


class LockTimeoutError(ServiceError):
    kind = "timeout"
    status_code = 503


class InternalError(ServiceError):
    kind = "internal"
    status_code = 500

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "Internal server error")
