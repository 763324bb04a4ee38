"""
Custom Exception Classes for the CMS Extension Kernel

This module defines the exceptions raised by the kernel, the extension
guards and the delivery services. Every exception carries a machine
readable error code so API clients can branch on it.
"""

import enum
from typing import Any

from fastapi import status


class ErrorCode(str, enum.Enum):
    """Machine-readable error codes returned in the error envelope."""

    # Auth
    AUTH_FAILED = "AUTH_FAILED"
    AUTH_TOKEN_INVALID = "AUTH_TOKEN_INVALID"
    AUTH_PERMISSION_DENIED = "AUTH_PERMISSION_DENIED"

    # Resources
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    RESOURCE_EXTENSION_NOT_FOUND = "RESOURCE_EXTENSION_NOT_FOUND"
    RESOURCE_SCHEDULE_NOT_FOUND = "RESOURCE_SCHEDULE_NOT_FOUND"
    RESOURCE_MESSAGE_NOT_FOUND = "RESOURCE_MESSAGE_NOT_FOUND"

    # Validation
    VALIDATION_FAILED = "VALIDATION_FAILED"
    VALIDATION_MANIFEST_INVALID = "VALIDATION_MANIFEST_INVALID"
    VALIDATION_DUPLICATE_RESOURCE = "VALIDATION_DUPLICATE_RESOURCE"

    # Extensions
    EXTENSION_CAPABILITY_MISSING = "EXTENSION_CAPABILITY_MISSING"
    EXTENSION_THEME_SIDE_EFFECT = "EXTENSION_THEME_SIDE_EFFECT"
    EXTENSION_CORE_UNAVAILABLE = "EXTENSION_CORE_UNAVAILABLE"

    # Delivery
    COMMUNICATION_DISABLED = "COMMUNICATION_DISABLED"
    COMMUNICATION_RATE_LIMITED = "COMMUNICATION_RATE_LIMITED"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    SCHEDULER_BUSY = "SCHEDULER_BUSY"

    # Generic
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class CMSError(Exception):
    """Base exception class for all kernel exceptions"""

    error_code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        if error_code is not None:
            self.error_code = error_code
        super().__init__(self.message)


# ============================================================================
# Authentication & Authorization Exceptions
# ============================================================================


class AuthenticationError(CMSError):
    """Raised when authentication fails"""

    error_code = ErrorCode.AUTH_FAILED

    def __init__(self, message: str = "Authentication failed", details: dict[str, Any] | None = None):
        super().__init__(message=message, status_code=status.HTTP_401_UNAUTHORIZED, details=details)


class InvalidTokenError(AuthenticationError):
    """Raised when a bearer token is missing, expired or malformed"""

    error_code = ErrorCode.AUTH_TOKEN_INVALID

    def __init__(self, message: str = "Invalid or malformed token"):
        super().__init__(message=message)


class AuthorizationError(CMSError):
    """Raised when the caller lacks permission for an action"""

    error_code = ErrorCode.AUTH_PERMISSION_DENIED

    def __init__(
        self, message: str = "You do not have permission to perform this action", required_permission: str | None = None
    ):
        details = {"required_permission": required_permission} if required_permission else {}
        super().__init__(message=message, status_code=status.HTTP_403_FORBIDDEN, details=details)


# ============================================================================
# Resource Not Found Exceptions
# ============================================================================


class ResourceNotFoundError(CMSError):
    """Base class for resource not found errors"""

    error_code = ErrorCode.RESOURCE_NOT_FOUND

    def __init__(self, resource_type: str, resource_id: Any | None = None):
        message = f"{resource_type} not found"
        if resource_id is not None:
            message = f"{resource_type} with id '{resource_id}' not found"
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


class ExtensionNotFoundError(ResourceNotFoundError):
    """Raised when a plugin or theme id does not match any discovered manifest"""

    error_code = ErrorCode.RESOURCE_EXTENSION_NOT_FOUND

    def __init__(self, extension_id: str, kind: str = "Plugin"):
        super().__init__(resource_type=kind, resource_id=extension_id)


class ScheduleNotFoundError(ResourceNotFoundError):
    """Raised when a scheduled action is not found"""

    error_code = ErrorCode.RESOURCE_SCHEDULE_NOT_FOUND

    def __init__(self, schedule_id: Any | None = None):
        super().__init__(resource_type="Scheduled action", resource_id=schedule_id)


class MessageNotFoundError(ResourceNotFoundError):
    """Raised when a communication message is not found"""

    error_code = ErrorCode.RESOURCE_MESSAGE_NOT_FOUND

    def __init__(self, message_id: Any | None = None):
        super().__init__(resource_type="Communication message", resource_id=message_id)


# ============================================================================
# Validation Exceptions
# ============================================================================


class ValidationError(CMSError):
    """Raised when input validation fails"""

    error_code = ErrorCode.VALIDATION_FAILED

    def __init__(self, message: str, field: str | None = None, details: dict[str, Any] | None = None):
        error_details = details or {}
        if field:
            error_details["field"] = field
        super().__init__(message=message, status_code=status.HTTP_400_BAD_REQUEST, details=error_details)


class ManifestValidationError(ValidationError):
    """Raised when a plugin.json / theme.json cannot be turned into a contract"""

    error_code = ErrorCode.VALIDATION_MANIFEST_INVALID

    def __init__(self, manifest_path: str, reason: str):
        super().__init__(
            message=f"Invalid extension manifest at {manifest_path}: {reason}",
            details={"manifest_path": manifest_path, "reason": reason},
        )


class DuplicateResourceError(CMSError):
    """Raised when attempting to create a duplicate resource"""

    error_code = ErrorCode.VALIDATION_DUPLICATE_RESOURCE

    def __init__(self, resource_type: str, field: str, value: Any):
        super().__init__(
            message=f"{resource_type} with {field} '{value}' already exists",
            status_code=status.HTTP_409_CONFLICT,
            details={"resource_type": resource_type, "field": field, "value": value},
        )


# ============================================================================
# Extension Guard Exceptions
# ============================================================================


class CapabilityError(CMSError):
    """Raised when a plugin touches a feature it did not declare in its manifest"""

    error_code = ErrorCode.EXTENSION_CAPABILITY_MISSING

    def __init__(self, plugin_id: str, feature: str):
        super().__init__(
            message=(
                f'[plugin-guard] Plugin "{plugin_id}" attempted {feature} '
                "without declaring the required capability."
            ),
            status_code=status.HTTP_403_FORBIDDEN,
            details={"plugin_id": plugin_id, "feature": feature},
        )


class ThemeGuardError(CMSError):
    """Raised when a theme calls a side-effecting extension API"""

    error_code = ErrorCode.EXTENSION_THEME_SIDE_EFFECT

    def __init__(self, feature: str):
        super().__init__(
            message=f"[theme-guard] Themes cannot call side-effect API: {feature}",
            status_code=status.HTTP_403_FORBIDDEN,
            details={"feature": feature},
        )


class CoreRegistryUnavailableError(CMSError):
    """Raised when a registration API is used outside a kernel built by the runtime"""

    error_code = ErrorCode.EXTENSION_CORE_UNAVAILABLE

    def __init__(self, feature: str):
        super().__init__(
            message=f"{feature} is unavailable outside Core runtime.",
            status_code=status.HTTP_409_CONFLICT,
            details={"feature": feature},
        )


# ============================================================================
# Delivery & Service Exceptions
# ============================================================================


class CommunicationGovernanceError(CMSError):
    """Raised when a site's messaging governance rejects a send"""

    def __init__(self, reason: str, site_id: str | None = None):
        if reason == "rate_limited":
            code = ErrorCode.COMMUNICATION_RATE_LIMITED
            status_code = status.HTTP_429_TOO_MANY_REQUESTS
            message = "Communication rate limit exceeded"
        else:
            code = ErrorCode.COMMUNICATION_DISABLED
            status_code = status.HTTP_403_FORBIDDEN
            message = "Communications are disabled for this site"
        self.reason = reason
        super().__init__(
            message=message,
            status_code=status_code,
            details={"reason": reason, "site_id": site_id},
            error_code=code,
        )


class SignatureVerificationError(CMSError):
    """Raised when an inbound signature is rejected under the enforce policy"""

    error_code = ErrorCode.SIGNATURE_INVALID

    def __init__(self, reason: str):
        super().__init__(
            message=f"Signature verification failed: {reason}",
            status_code=status.HTTP_401_UNAUTHORIZED,
            details={"reason": reason},
        )


class SchedulerBusyError(CMSError):
    """Raised when another runner holds the scheduler lock"""

    error_code = ErrorCode.SCHEDULER_BUSY

    def __init__(self, lock_key: str):
        super().__init__(
            message="Scheduler run already in progress",
            status_code=status.HTTP_409_CONFLICT,
            details={"lock_key": lock_key},
        )


class ServiceError(CMSError):
    """Raised when a service layer operation fails"""

    def __init__(self, message: str, service: str | None = None):
        details = {"service": service} if service else {}
        super().__init__(message=message, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, details=details)


class DeliveryError(CMSError):
    """Raised when an outbound delivery cannot be completed"""

    error_code = ErrorCode.DELIVERY_FAILED

    def __init__(self, message: str, target: str | None = None):
        details = {"target": target} if target else {}
        super().__init__(message=message, status_code=status.HTTP_502_BAD_GATEWAY, details=details)
