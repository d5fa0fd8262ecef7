"""
Core Exceptions
================

Custom exceptions for the SLA engine following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries (an HTTP layer maps them to
404 / 400 / 500 responses).
"""

from typing import Optional, List, Dict


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """
    Exception for validation errors.

    Carries field-level detail in ``details["errors"]`` as a list of
    ``{"field": ..., "message": ...}`` entries.
    """

    def __init__(
        self,
        message: str,
        errors: Optional[List[Dict[str, str]]] = None,
        details: Optional[dict] = None
    ):
        self.errors = errors or []
        details = dict(details or {})
        details["errors"] = self.errors
        super().__init__(message, details)


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class CalculationException(DomainException):
    """Aggregation or scoring produced an invalid (NaN / infinite) result."""

    def __init__(self, sla_id: str, message: str, details: Optional[dict] = None):
        self.sla_id = sla_id
        super().__init__(
            f"Calculation failed for SLA {sla_id}: {message}",
            details or {"sla_id": sla_id}
        )


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class DataSourceException(ExternalServiceException):
    """Exception for failed queries against a metrics backend."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Data Source", message, details)


class NotificationDeliveryException(ExternalServiceException):
    """Exception for a failed notification delivery attempt."""

    def __init__(self, channel: str, message: str, details: Optional[dict] = None):
        self.channel = channel
        super().__init__(f"Notification channel {channel}", message, details)
