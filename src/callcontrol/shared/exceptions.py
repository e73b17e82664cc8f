"""
Custom exception classes for the application.
"""

from typing import Any


class AppException(Exception):
    """Base exception for application errors."""

    def __init__(
        self,
        message: str,
        code: str = "APP_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize application exception.

        Args:
            message: Human-readable error message.
            code: Machine-readable error code.
            details: Additional error details.
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class NotFoundError(AppException):
    """Raised when a requested resource does not exist."""

    def __init__(
        self,
        message: str = "Resource not found",
        code: str = "NOT_FOUND",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code, details)


class ValidationError(AppException):
    """Raised when a request is well-formed but not acceptable."""

    def __init__(
        self,
        message: str = "Validation failed",
        code: str = "VALIDATION_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code, details)


class AccountNotFoundError(NotFoundError):
    """Raised when an account is not found."""

    def __init__(self, account_id: Any) -> None:
        super().__init__(
            f"Account not found: {account_id}",
            "ACCOUNT_NOT_FOUND",
            {"account_id": str(account_id)},
        )


class CampaignNotFoundError(NotFoundError):
    """Raised when a campaign is not found."""

    def __init__(self, campaign_id: str) -> None:
        self.campaign_id = campaign_id
        super().__init__(
            f"Campaign not found: {campaign_id}",
            "CAMPAIGN_NOT_FOUND",
            {"campaign_id": campaign_id},
        )


class InvalidCampaignStateError(AppException):
    """Raised when a campaign operation does not fit its current status."""

    def __init__(self, campaign_id: str, status: Any, operation: str) -> None:
        status_value = getattr(status, "value", str(status))
        super().__init__(
            f"Campaign {campaign_id} is {status_value}, cannot {operation}",
            "INVALID_CAMPAIGN_STATE",
            {"campaign_id": campaign_id, "status": status_value, "operation": operation},
        )


class ConfigurationError(AppException):
    """Raised when telephony configuration required for dialing is missing."""

    def __init__(
        self,
        message: str = "Telephony not configured",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, "CONFIGURATION_ERROR", details)


class InsufficientCreditsError(AppException):
    """Raised when a billable account cannot start new calls."""

    def __init__(
        self,
        message: str = "Insufficient credits",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, "INSUFFICIENT_CREDITS", details)


class LedgerConflict(AppException):
    """Raised when a balance mutation keeps colliding with concurrent writers."""

    def __init__(self, account_id: Any, attempts: int) -> None:
        super().__init__(
            f"Balance update for account {account_id} failed after {attempts} attempts",
            "LEDGER_CONFLICT",
            {"account_id": str(account_id), "attempts": attempts},
        )
