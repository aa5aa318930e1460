from __future__ import annotations


class MedguardError(Exception):
    """Base error for Medguard."""

    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class TenantError(MedguardError):
    """Tenant resolution or lifecycle failure."""


class TenantNotIdentifiedError(TenantError):
    """No tenant header and no usable subdomain on the request."""

    status_code = 400
    code = "TENANT_NOT_IDENTIFIED"
    default_message = "Tenant identifier not found in request"


class TenantUnavailableError(TenantError):
    """Unknown, inactive, or malformed tenant slug; one shape for all three."""

    status_code = 400
    code = "TENANT_UNAVAILABLE"
    default_message = "Invalid or inactive tenant"


class TenantProvisioningError(TenantError):
    """Schema creation or schema switch failure; details stay server-side."""

    status_code = 500
    code = "TENANT_PROVISIONING_FAILED"
    default_message = "Tenant storage is unavailable"


class TenantConflictError(TenantError):
    """Slug, name, or schema already taken."""

    status_code = 409
    code = "TENANT_CONFLICT"
    default_message = "Tenant already exists"


class TenantNotFoundError(TenantError):
    """Tenant id unknown to the platform admin API."""

    status_code = 404
    code = "TENANT_NOT_FOUND"
    default_message = "Tenant not found"


class TenantContextMissingError(TenantError):
    """Tenant-scoped code ran outside a bound tenant context."""

    default_message = "Tenant context is not bound"


class AccessDeniedError(MedguardError):
    """Caller lacks a role required by the operation."""

    status_code = 403
    code = "AUTH_FORBIDDEN"
    default_message = "Insufficient permissions"

    def __init__(self, message: str | None = None, *, role: str | None = None, reason: str | None = None) -> None:
        super().__init__(message)
        self.role = role
        self.reason = reason


class DeviceAuthenticationError(MedguardError):
    """Device credentials missing or invalid."""

    status_code = 401
    code = "DEVICE_UNAUTHORIZED"
    default_message = "Device authentication failed"


class DeviceForbiddenError(MedguardError):
    """Device identified but not allowed to connect."""

    status_code = 403
    code = "DEVICE_FORBIDDEN"
    default_message = "Device is not permitted"


class DeviceNotFoundError(MedguardError):
    status_code = 404
    code = "DEVICE_NOT_FOUND"
    default_message = "Device not found"


class IncidentNotFoundError(MedguardError):
    status_code = 404
    code = "INCIDENT_NOT_FOUND"
    default_message = "Incident not found"


class EncryptionConfigError(MedguardError):
    """Missing or invalid encryption key configuration."""
