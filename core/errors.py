from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base error with a stable code and a message safe to show callers."""

    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Something went wrong. Please try again later."

    def __init__(
        self,
        message: str,
        user_message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.user_message = user_message or message or self.default_message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.user_message}


class ValidationError(ServiceError):
    code = "VALIDATION_FAILED"
    status_code = 400


class RateLimited(ServiceError):
    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, operation: str, retry_after: Optional[float] = None) -> None:
        if retry_after:
            hint = f"Please try again in {int(retry_after) + 1} seconds."
        else:
            hint = "Please try again later."
        super().__init__(
            f"Rate limit exceeded for {operation}",
            user_message=f"Too many requests. {hint}",
            details={"operation": operation, "retry_after": retry_after},
        )
        self.retry_after = retry_after


class InsufficientCredits(ServiceError):
    code = "INSUFFICIENT_CREDITS"
    status_code = 402

    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            f"Insufficient credits: required {required}, available {available}",
            user_message=f"This generation costs {required} credits but only {available} are available.",
            details={"required": required, "available": available},
        )
        self.required = required
        self.available = available


class NotFound(ServiceError):
    code = "NOT_FOUND"
    status_code = 404


class Forbidden(ServiceError):
    code = "FORBIDDEN"
    status_code = 403


class ExternalServiceError(ServiceError):
    code = "EXTERNAL_SERVICE_ERROR"
    status_code = 502
    default_message = "The video service is temporarily unavailable."

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        provider_status: Optional[int] = None,
        service: str = "provider",
    ) -> None:
        super().__init__(message, user_message=self.default_message, details={"service": service})
        self.retryable = retryable
        self.provider_status = provider_status
        self.service = service


class ConfigurationError(ServiceError):
    code = "CONFIGURATION_ERROR"
    status_code = 500
    default_message = "This model is temporarily unavailable."

    def __init__(self, message: str) -> None:
        super().__init__(message, user_message=self.default_message)


class VersionConflict(ServiceError):
    code = "CONFLICT"
    status_code = 409

    def __init__(self, record_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Version conflict on {record_id}: expected {expected}, found {actual}",
            user_message="The resource was modified concurrently. Please retry.",
        )
        self.record_id = record_id
        self.expected = expected
        self.actual = actual


class Unauthenticated(ServiceError):
    code = "UNAUTHORIZED"
    status_code = 401
