from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
import hmac
import logging
from typing import Callable
from uuid import uuid4

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from medguard.core.config import get_settings
from medguard.core.errors import DeviceAuthenticationError, DeviceForbiddenError, DeviceNotFoundError
from medguard.domain.models import MedicalDevice
from medguard.services.audit import AuditAction, AuditSeverity, AuditTrail, get_audit_trail
from medguard.services.crypto.encryption import EncryptionService, generate_secure_token, get_encryption_service


logger = logging.getLogger(__name__)


class DeviceStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"
    MAINTENANCE = "MAINTENANCE"
    DECOMMISSIONED = "DECOMMISSIONED"


class DeviceTrustLevel(str, Enum):
    UNTRUSTED = "UNTRUSTED"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


_ACTIVATING_TRUST = {DeviceTrustLevel.HIGH.value, DeviceTrustLevel.CRITICAL.value}


@dataclass(frozen=True)
class DeviceRegistration:
    device: MedicalDevice
    # Only time the raw key is available; storage keeps the keyed hash.
    api_key: str


@dataclass(frozen=True)
class DeviceSession:
    device_id: str
    authenticated: bool
    session_token: str
    expires_at: datetime
    trust_level: str


@dataclass(frozen=True)
class DeviceChallenge:
    device_id: str
    challenge: str
    expires_at: datetime


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def verify_rsa_signature(public_key_pem: str, message: str, signature_b64: str) -> bool:
    # RSA PKCS#1 v1.5 over SHA-256, the scheme device firmware signs challenges with.
    try:
        public_key = serialization.load_pem_public_key(public_key_pem.encode("utf-8"))
        signature = base64.b64decode(signature_b64, validate=True)
    except (ValueError, binascii.Error):
        return False
    if not isinstance(public_key, rsa.RSAPublicKey):
        return False
    try:
        public_key.verify(signature, message.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    return True


class DeviceAuthService:
    """API-key and challenge/response authentication for connected medical devices."""

    def __init__(
        self,
        *,
        encryption: EncryptionService | None = None,
        audit: AuditTrail | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._encryption = encryption
        self._audit = audit
        self._clock = clock or _utc_now
        self._challenges: dict[str, DeviceChallenge] = {}

    @property
    def encryption(self) -> EncryptionService:
        return self._encryption or get_encryption_service()

    @property
    def audit(self) -> AuditTrail:
        return self._audit or get_audit_trail()

    async def _get_device(
        self, session: AsyncSession, device_id: str, *, tenant_id: str | None = None
    ) -> MedicalDevice:
        device = await session.get(MedicalDevice, device_id)
        # Devices owned by another tenant are reported as missing.
        if device is None or (tenant_id is not None and device.tenant_id != tenant_id):
            raise DeviceNotFoundError()
        return device

    async def register_device(
        self,
        session: AsyncSession,
        *,
        serial_number: str,
        name: str,
        device_type: str,
        manufacturer: str | None = None,
        model: str | None = None,
        firmware_version: str | None = None,
        department: str | None = None,
        public_key_pem: str | None = None,
        certificate_expires_at: datetime | None = None,
        tenant_id: str | None = None,
        registered_by: str | None = None,
    ) -> DeviceRegistration:
        now = self._clock()
        api_key = generate_secure_token(32)
        device = MedicalDevice(
            id=str(uuid4()),
            tenant_id=tenant_id,
            serial_number=serial_number,
            name=name,
            device_type=device_type,
            manufacturer=manufacturer,
            model=model,
            firmware_version=firmware_version,
            department=department,
            registered_by=registered_by,
            api_key_hash=self.encryption.hash_identifier(api_key),
            public_key_pem=public_key_pem,
            certificate_expires_at=certificate_expires_at,
            # New devices stay unusable until their trust is raised.
            status=DeviceStatus.INACTIVE.value,
            trust_level=DeviceTrustLevel.LOW.value,
            failed_auth_attempts=0,
            created_at=now,
            updated_at=now,
        )
        session.add(device)
        await session.commit()
        await self.audit.log(
            AuditAction.DEVICE_REGISTERED,
            "medical_device",
            user_id=registered_by,
            resource_id=device.id,
            device_id=device.id,
            tenant_id=tenant_id,
            metadata={"serial_number": serial_number, "device_type": device_type},
        )
        return DeviceRegistration(device=device, api_key=api_key)

    async def _ensure_usable(self, session: AsyncSession, device: MedicalDevice, now: datetime) -> None:
        if device.status == DeviceStatus.DECOMMISSIONED.value:
            raise DeviceForbiddenError("Device has been decommissioned")
        if device.status == DeviceStatus.SUSPENDED.value:
            if device.suspended_until is None or _as_utc(device.suspended_until) > now:
                raise DeviceForbiddenError("Device is suspended")
            # Suspension window elapsed: reactivate with a clean failure counter.
            device.status = DeviceStatus.ACTIVE.value
            device.suspended_until = None
            device.failed_auth_attempts = 0
            device.updated_at = now
            await session.commit()
            logger.info("device_auto_unsuspended device_id=%s", device.id)
        if device.status != DeviceStatus.ACTIVE.value:
            raise DeviceForbiddenError("Device is not active")
        if device.certificate_expires_at is not None and _as_utc(device.certificate_expires_at) <= now:
            raise DeviceForbiddenError("Device certificate has expired")

    async def _record_success(
        self, session: AsyncSession, device: MedicalDevice, *, ip_address: str | None, now: datetime, method: str
    ) -> DeviceSession:
        device.failed_auth_attempts = 0
        device.last_seen_at = now
        device.last_ip = ip_address
        device.updated_at = now
        await session.commit()
        await self.audit.log(
            AuditAction.DEVICE_AUTHENTICATED,
            "medical_device",
            resource_id=device.id,
            device_id=device.id,
            ip_address=ip_address,
            tenant_id=device.tenant_id,
            metadata={"method": method},
        )
        ttl = timedelta(minutes=get_settings().device_session_ttl_minutes)
        return DeviceSession(
            device_id=device.id,
            authenticated=True,
            session_token=generate_secure_token(32),
            expires_at=now + ttl,
            trust_level=device.trust_level,
        )

    async def _record_failure(
        self, session: AsyncSession, device: MedicalDevice, *, ip_address: str | None, now: datetime
    ) -> None:
        settings = get_settings()
        # Increment in the database so parallel wrong-key attempts cannot overwrite each other.
        attempts = (
            await session.execute(
                update(MedicalDevice)
                .where(MedicalDevice.id == device.id)
                .values(failed_auth_attempts=MedicalDevice.failed_auth_attempts + 1, updated_at=now)
                .returning(MedicalDevice.failed_auth_attempts)
                .execution_options(synchronize_session=False)
            )
        ).scalar_one()
        suspended = attempts >= settings.device_max_failed_attempts
        if suspended:
            await session.execute(
                update(MedicalDevice)
                .where(MedicalDevice.id == device.id)
                .values(
                    status=DeviceStatus.SUSPENDED.value,
                    suspended_until=now + timedelta(minutes=settings.device_suspension_minutes),
                )
                .execution_options(synchronize_session=False)
            )
        await session.commit()
        await session.refresh(device)
        await self.audit.log(
            AuditAction.DEVICE_REJECTED,
            "medical_device",
            severity=AuditSeverity.CRITICAL if suspended else AuditSeverity.WARNING,
            resource_id=device.id,
            device_id=device.id,
            ip_address=ip_address,
            tenant_id=device.tenant_id,
            metadata={"failed_attempts": attempts, "suspended": suspended},
        )
        if suspended:
            logger.warning("device_suspended device_id=%s attempts=%s", device.id, attempts)

    async def authenticate_by_api_key(
        self,
        session: AsyncSession,
        device_id: str,
        api_key: str,
        *,
        ip_address: str | None = None,
        tenant_id: str | None = None,
    ) -> DeviceSession:
        now = self._clock()
        device = await session.get(MedicalDevice, device_id)
        if device is None or (tenant_id is not None and device.tenant_id != tenant_id):
            raise DeviceAuthenticationError("Unknown device")
        await self._ensure_usable(session, device, now)
        presented = self.encryption.hash_identifier(api_key)
        if not hmac.compare_digest(presented, device.api_key_hash):
            await self._record_failure(session, device, ip_address=ip_address, now=now)
            raise DeviceAuthenticationError("Invalid device credentials")
        return await self._record_success(session, device, ip_address=ip_address, now=now, method="api_key")

    async def generate_challenge(
        self, session: AsyncSession, device_id: str, *, tenant_id: str | None = None
    ) -> DeviceChallenge:
        device = await self._get_device(session, device_id, tenant_id=tenant_id)
        ttl = timedelta(seconds=get_settings().device_challenge_ttl_s)
        challenge = DeviceChallenge(
            device_id=device.id,
            challenge=generate_secure_token(32),
            expires_at=self._clock() + ttl,
        )
        self._challenges[device.id] = challenge
        return challenge

    async def verify_challenge(
        self,
        session: AsyncSession,
        device_id: str,
        signature: str,
        *,
        ip_address: str | None = None,
        tenant_id: str | None = None,
    ) -> DeviceSession:
        now = self._clock()
        device = await self._get_device(session, device_id, tenant_id=tenant_id)
        # Challenges are single use, whatever the outcome.
        pending = self._challenges.pop(device_id, None)
        if pending is None or _as_utc(pending.expires_at) <= now:
            raise DeviceAuthenticationError("No valid challenge for device")
        if not device.public_key_pem:
            raise DeviceForbiddenError("Device has no registered public key")
        await self._ensure_usable(session, device, now)
        if not verify_rsa_signature(device.public_key_pem, pending.challenge, signature):
            await self._record_failure(session, device, ip_address=ip_address, now=now)
            raise DeviceAuthenticationError("Invalid challenge signature")
        return await self._record_success(session, device, ip_address=ip_address, now=now, method="challenge")

    async def revoke_device(
        self,
        session: AsyncSession,
        device_id: str,
        *,
        actor: str,
        reason: str,
        tenant_id: str | None = None,
    ) -> MedicalDevice:
        device = await self._get_device(session, device_id, tenant_id=tenant_id)
        now = self._clock()
        device.status = DeviceStatus.SUSPENDED.value
        # No expiry: a revoked device stays suspended until an operator restores trust.
        device.suspended_until = None
        device.updated_at = now
        await session.commit()
        self._challenges.pop(device_id, None)
        await self.audit.log(
            AuditAction.DEVICE_REVOKED,
            "medical_device",
            severity=AuditSeverity.WARNING,
            user_id=actor,
            resource_id=device.id,
            device_id=device.id,
            tenant_id=device.tenant_id,
            metadata={"reason": reason},
        )
        return device

    async def update_trust_level(
        self,
        session: AsyncSession,
        device_id: str,
        trust_level: DeviceTrustLevel | str,
        *,
        actor: str,
        tenant_id: str | None = None,
    ) -> MedicalDevice:
        device = await self._get_device(session, device_id, tenant_id=tenant_id)
        level = DeviceTrustLevel(trust_level).value
        previous = device.trust_level
        device.trust_level = level
        if level in _ACTIVATING_TRUST and device.status != DeviceStatus.DECOMMISSIONED.value:
            device.status = DeviceStatus.ACTIVE.value
            device.suspended_until = None
            device.failed_auth_attempts = 0
        device.updated_at = self._clock()
        await session.commit()
        await self.audit.log(
            AuditAction.DEVICE_TRUST_CHANGED,
            "medical_device",
            user_id=actor,
            resource_id=device.id,
            device_id=device.id,
            tenant_id=device.tenant_id,
            metadata={"from": previous, "to": level, "status": device.status},
        )
        return device


_device_auth_service: DeviceAuthService | None = None


def get_device_auth_service() -> DeviceAuthService:
    global _device_auth_service
    if _device_auth_service is None:
        _device_auth_service = DeviceAuthService()
    return _device_auth_service


def set_device_auth_service(service: DeviceAuthService | None) -> None:
    global _device_auth_service
    _device_auth_service = service
