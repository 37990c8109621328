# bangbuy/core/exceptions.py
"""
Domain-specific exceptions for the BangBuy messaging core.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        """Convert to an HTTPException carrying the subclass status code."""
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when input or a required referenced entity is invalid. Never retried."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenException(DomainException):
    """Raised when the caller is not a participant of the resource."""

    status_code = status.HTTP_403_FORBIDDEN


class UnauthorizedException(DomainException):
    """Raised when the caller identity is missing."""

    status_code = status.HTTP_401_UNAUTHORIZED


class ConflictException(DomainException):
    """Raised when a claim race is lost or data conflicts. Expected, not a failure."""

    status_code = status.HTTP_409_CONFLICT


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations. Callers may retry.
    """


# Notification outcomes


class PreferenceSkip(Exception):
    """
    Recipient opted out or cannot be reached.

    Terminal and not an error: the notification is recorded as skipped.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class DispatchError(Exception):
    """Base class for email dispatch failures."""

    retryable: bool = False

    def __init__(self, message: str, provider_code: Optional[str] = None) -> None:
        self.message = message
        self.provider_code = provider_code
        super().__init__(message)


class TransientDispatchError(DispatchError):
    """Provider or network failure (including timeouts). Drives rollback and retry."""

    retryable = True


class PermanentDispatchError(DispatchError):
    """Provider rejected the content or recipient. Terminal, logged, not retried."""

    retryable = False
