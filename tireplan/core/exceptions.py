"""Custom exception types for domain and API layers."""


class AppError(Exception):
    """Base app exception."""

    code = "internal"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__doc__ or self.code


class InvalidArgumentError(AppError):
    """Request argument outside the accepted values."""

    code = "invalid-argument"
    status_code = 400


class FailedPreconditionError(AppError):
    """Operation cannot proceed in the current state."""

    code = "failed-precondition"
    status_code = 412


class NotFoundError(AppError):
    """Requested record does not exist."""

    code = "not-found"
    status_code = 404


class UnauthenticatedError(AppError):
    """Caller identity is missing or invalid."""

    code = "unauthenticated"
    status_code = 401


class PlanPriceNotFound(AppError):
    """No price configured for the plan and billing cycle."""


class BillingKeyNotFound(AppError):
    """Stored payment instrument is missing."""
