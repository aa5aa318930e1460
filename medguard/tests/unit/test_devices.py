from __future__ import annotations

import asyncio
import base64
from datetime import datetime, timedelta, timezone

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from medguard.core.errors import DeviceAuthenticationError, DeviceForbiddenError, DeviceNotFoundError
from medguard.domain.models import Base, MedicalDevice
from medguard.services.devices import DeviceAuthService, DeviceStatus, DeviceTrustLevel, verify_rsa_signature
from medguard.tests.utils.audit import make_encryption, make_trail
from medguard.tests.utils.db import create_sqlite_engine, session_factory


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
async def factory():
    engine = await create_sqlite_engine()
    yield session_factory(engine)
    await engine.dispose()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def service(clock: Clock):
    trail, store = make_trail(clock=clock)
    return DeviceAuthService(encryption=make_encryption(), audit=trail, clock=clock), store


@pytest.fixture(scope="module")
def rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _public_pem(key: rsa.RSAPrivateKey) -> str:
    return (
        key.public_key()
        .public_bytes(serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo)
        .decode("utf-8")
    )


def _sign(key: rsa.RSAPrivateKey, message: str) -> str:
    return base64.b64encode(key.sign(message.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())).decode("ascii")


async def _register_active(auth: DeviceAuthService, session, **kwargs):
    registration = await auth.register_device(
        session,
        serial_number=kwargs.pop("serial_number", "PUMP-001"),
        name="Infusion pump",
        device_type="infusion_pump",
        tenant_id=kwargs.pop("tenant_id", "t1"),
        registered_by="biomed-1",
        **kwargs,
    )
    await auth.update_trust_level(session, registration.device.id, DeviceTrustLevel.HIGH, actor="biomed-1")
    return registration


@pytest.mark.asyncio
async def test_registration_starts_inactive_with_hashed_key(factory, service) -> None:
    auth, store = service
    async with factory() as session:
        registration = await auth.register_device(
            session, serial_number="MON-9", name="Monitor", device_type="monitor", tenant_id="t1"
        )
        with pytest.raises(DeviceForbiddenError):
            await auth.authenticate_by_api_key(session, registration.device.id, registration.api_key)

    device = registration.device
    assert device.status == DeviceStatus.INACTIVE.value
    assert device.trust_level == DeviceTrustLevel.LOW.value
    assert registration.api_key not in device.api_key_hash
    await auth.audit.flush()
    assert store.entries[0].action == "DEVICE_REGISTERED"


@pytest.mark.asyncio
async def test_raising_trust_activates_and_allows_api_key_auth(factory, service, clock) -> None:
    auth, _store = service
    async with factory() as session:
        registration = await _register_active(auth, session)
        device_session = await auth.authenticate_by_api_key(
            session, registration.device.id, registration.api_key, ip_address="10.0.0.5"
        )

    assert device_session.authenticated is True
    assert device_session.trust_level == DeviceTrustLevel.HIGH.value
    assert device_session.expires_at == clock.now + timedelta(minutes=60)
    assert registration.device.last_ip == "10.0.0.5"
    assert registration.device.status == DeviceStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_repeated_failures_suspend_until_window_passes(factory, service, clock) -> None:
    auth, store = service
    async with factory() as session:
        registration = await _register_active(auth, session)
        device_id = registration.device.id
        for _ in range(5):
            with pytest.raises(DeviceAuthenticationError):
                await auth.authenticate_by_api_key(session, device_id, "wrong-key")
        assert registration.device.status == DeviceStatus.SUSPENDED.value

        with pytest.raises(DeviceForbiddenError):
            await auth.authenticate_by_api_key(session, device_id, registration.api_key)

        clock.advance(minutes=31)
        device_session = await auth.authenticate_by_api_key(session, device_id, registration.api_key)

    assert device_session.authenticated is True
    assert registration.device.failed_auth_attempts == 0
    assert any(entry.action == "DEVICE_REJECTED" and entry.severity == "CRITICAL" for entry in store.entries)


@pytest.mark.asyncio
async def test_expired_certificate_is_rejected(factory, service, clock) -> None:
    auth, _store = service
    async with factory() as session:
        registration = await _register_active(auth, session, certificate_expires_at=clock.now + timedelta(days=1))
        clock.advance(days=2)
        with pytest.raises(DeviceForbiddenError, match="certificate"):
            await auth.authenticate_by_api_key(session, registration.device.id, registration.api_key)


@pytest.mark.asyncio
async def test_challenge_response_with_rsa_signature(factory, service, rsa_key) -> None:
    auth, _store = service
    async with factory() as session:
        registration = await _register_active(auth, session, public_key_pem=_public_pem(rsa_key))
        device_id = registration.device.id

        challenge = await auth.generate_challenge(session, device_id)
        device_session = await auth.verify_challenge(session, device_id, _sign(rsa_key, challenge.challenge))
        assert device_session.authenticated is True

        # Single use: the same signature cannot be replayed.
        with pytest.raises(DeviceAuthenticationError):
            await auth.verify_challenge(session, device_id, _sign(rsa_key, challenge.challenge))


@pytest.mark.asyncio
async def test_challenge_rejects_wrong_signature_and_expiry(factory, service, clock, rsa_key) -> None:
    auth, _store = service
    other_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    async with factory() as session:
        registration = await _register_active(auth, session, public_key_pem=_public_pem(rsa_key))
        device_id = registration.device.id

        challenge = await auth.generate_challenge(session, device_id)
        with pytest.raises(DeviceAuthenticationError, match="signature"):
            await auth.verify_challenge(session, device_id, _sign(other_key, challenge.challenge))
        assert registration.device.failed_auth_attempts == 1

        challenge = await auth.generate_challenge(session, device_id)
        clock.advance(seconds=301)
        with pytest.raises(DeviceAuthenticationError, match="challenge"):
            await auth.verify_challenge(session, device_id, _sign(rsa_key, challenge.challenge))


def test_verify_rsa_signature_handles_garbage(rsa_key) -> None:
    pem = _public_pem(rsa_key)
    assert verify_rsa_signature(pem, "hello", _sign(rsa_key, "hello")) is True
    assert verify_rsa_signature(pem, "hello", "not base64!!") is False
    assert verify_rsa_signature("not a pem", "hello", _sign(rsa_key, "hello")) is False


@pytest.mark.asyncio
async def test_revoked_device_stays_suspended_until_trust_restored(factory, service, clock) -> None:
    auth, _store = service
    async with factory() as session:
        registration = await _register_active(auth, session)
        device_id = registration.device.id
        await auth.revoke_device(session, device_id, actor="security-1", reason="lost")

        clock.advance(days=7)
        with pytest.raises(DeviceForbiddenError, match="suspended"):
            await auth.authenticate_by_api_key(session, device_id, registration.api_key)

        await auth.update_trust_level(session, device_id, DeviceTrustLevel.CRITICAL, actor="security-1")
        device_session = await auth.authenticate_by_api_key(session, device_id, registration.api_key)
    assert device_session.trust_level == DeviceTrustLevel.CRITICAL.value


@pytest.mark.asyncio
async def test_devices_are_scoped_to_their_tenant(factory, service) -> None:
    auth, _store = service
    async with factory() as session:
        registration = await _register_active(auth, session, tenant_id="t1")
        device_id = registration.device.id
        with pytest.raises(DeviceAuthenticationError, match="Unknown device"):
            await auth.authenticate_by_api_key(session, device_id, registration.api_key, tenant_id="t2")
        with pytest.raises(DeviceNotFoundError):
            await auth.generate_challenge(session, device_id, tenant_id="t2")
        with pytest.raises(DeviceNotFoundError):
            await auth.revoke_device(session, device_id, actor="x", reason="y", tenant_id="t2")
        assert (await auth.authenticate_by_api_key(session, device_id, registration.api_key, tenant_id="t1")).authenticated


@pytest.mark.asyncio
async def test_parallel_wrong_keys_still_reach_suspension(tmp_path, service) -> None:
    # Separate connections per attempt, as concurrent requests would have.
    auth, _store = service
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'devices.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = session_factory(engine)
    try:
        async with factory() as session:
            registration = await _register_active(auth, session)
        device_id = registration.device.id

        async def wrong_key_attempt() -> None:
            async with factory() as session:
                with pytest.raises(DeviceAuthenticationError):
                    await auth.authenticate_by_api_key(session, device_id, "wrong-key")

        await asyncio.gather(*(wrong_key_attempt() for _ in range(5)))

        async with factory() as session:
            device = await session.get(MedicalDevice, device_id)
        assert device is not None
        assert device.failed_auth_attempts == 5
        assert device.status == DeviceStatus.SUSPENDED.value
    finally:
        await engine.dispose()
