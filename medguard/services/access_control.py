from __future__ import annotations

import logging
from typing import Iterable, Mapping, Protocol

from medguard.core.errors import AccessDeniedError
from medguard.services.audit import AuditAction, AuditSeverity, AuditTrail, get_audit_trail


logger = logging.getLogger(__name__)

ROLE_PLATFORM_ADMIN = "platform_admin"
ROLE_ADMIN = "admin"
ROLE_PHYSICIAN = "physician"
ROLE_NURSE = "nurse"
ROLE_COMPLIANCE_OFFICER = "compliance_officer"
ROLE_SECURITY_OFFICER = "security_officer"
ROLE_BIOMEDICAL_ENGINEER = "biomedical_engineer"
ROLE_RECEPTIONIST = "receptionist"

# Operation -> roles allowed to perform it; unlisted operations are open.
ROLE_REQUIREMENTS: dict[str, frozenset[str]] = {
    "tenants.manage": frozenset({ROLE_PLATFORM_ADMIN}),
    "rate_limits.manage": frozenset({ROLE_PLATFORM_ADMIN, ROLE_SECURITY_OFFICER}),
    "audit.query": frozenset({ROLE_ADMIN, ROLE_COMPLIANCE_OFFICER, ROLE_SECURITY_OFFICER}),
    "audit.report": frozenset({ROLE_ADMIN, ROLE_COMPLIANCE_OFFICER}),
    "audit.verify": frozenset({ROLE_ADMIN, ROLE_COMPLIANCE_OFFICER, ROLE_SECURITY_OFFICER}),
    "incidents.report": frozenset(
        {ROLE_ADMIN, ROLE_SECURITY_OFFICER, ROLE_COMPLIANCE_OFFICER, ROLE_PHYSICIAN, ROLE_NURSE}
    ),
    "incidents.read": frozenset({ROLE_ADMIN, ROLE_SECURITY_OFFICER, ROLE_COMPLIANCE_OFFICER}),
    "incidents.manage": frozenset({ROLE_ADMIN, ROLE_SECURITY_OFFICER}),
    "devices.register": frozenset({ROLE_ADMIN, ROLE_BIOMEDICAL_ENGINEER}),
    "devices.manage": frozenset({ROLE_ADMIN, ROLE_BIOMEDICAL_ENGINEER, ROLE_SECURITY_OFFICER}),
    "medical_records.read": frozenset({ROLE_PHYSICIAN, ROLE_NURSE, ROLE_ADMIN}),
    "medical_records.write": frozenset({ROLE_PHYSICIAN, ROLE_NURSE}),
}


class PrincipalLike(Protocol):
    # Minimal caller shape needed for role checks.
    user_id: str
    role: str


class AccessControl:
    """Role gate keyed by operation name. Denials are audited before they are raised."""

    def __init__(
        self,
        audit: AuditTrail | None = None,
        requirements: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        self._audit = audit
        source = ROLE_REQUIREMENTS if requirements is None else requirements
        self._requirements: dict[str, frozenset[str]] = {
            operation: frozenset(roles) for operation, roles in source.items()
        }

    @property
    def audit(self) -> AuditTrail:
        return self._audit or get_audit_trail()

    def register(self, operation: str, roles: Iterable[str]) -> None:
        self._requirements[operation] = frozenset(roles)

    def required_roles(self, operation: str) -> frozenset[str] | None:
        return self._requirements.get(operation)

    async def authorize(
        self,
        operation: str,
        principal: PrincipalLike | None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        correlation_id: str | None = None,
    ) -> None:
        required = self.required_roles(operation)
        if not required:
            return
        if principal is None:
            await self._deny(
                operation,
                required,
                user_id=None,
                role=None,
                reason="No authenticated user",
                ip_address=ip_address,
                user_agent=user_agent,
                correlation_id=correlation_id,
            )
        elif principal.role not in required:
            await self._deny(
                operation,
                required,
                user_id=principal.user_id,
                role=principal.role,
                reason=f"Role {principal.role} is not permitted",
                ip_address=ip_address,
                user_agent=user_agent,
                correlation_id=correlation_id,
            )
        # Grants are not audited.

    async def _deny(
        self,
        operation: str,
        required: frozenset[str],
        *,
        user_id: str | None,
        role: str | None,
        reason: str,
        ip_address: str | None,
        user_agent: str | None,
        correlation_id: str | None,
    ) -> None:
        # The denial is written before the error leaves, so a swallowed error still leaves a record.
        await self.audit.log(
            AuditAction.PERMISSION_DENIED,
            operation,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            user_role=role,
            ip_address=ip_address,
            user_agent=user_agent,
            correlation_id=correlation_id,
            metadata={
                "operation": operation,
                "user_role": role,
                "required_roles": sorted(required),
                "reason": reason,
            },
            immediate=True,
        )
        logger.info("access_denied operation=%s user_id=%s role=%s", operation, user_id, role)
        raise AccessDeniedError(role=role, reason=reason)


_access_control: AccessControl | None = None


def get_access_control() -> AccessControl:
    global _access_control
    if _access_control is None:
        _access_control = AccessControl()
    return _access_control


def set_access_control(access_control: AccessControl | None) -> None:
    global _access_control
    _access_control = access_control
