from __future__ import annotations

import os

# Settings are read at import time by the engine module; seed secrets before any medguard import.
os.environ.setdefault("ENCRYPTION_MASTER_KEY", "test-master-key-0123456789abcdef0123456789")
os.environ.setdefault("HASH_SALT", "test-hash-salt")
os.environ.setdefault("BACKGROUND_JOBS_ENABLED", "false")

import pytest

from medguard.core.config import get_settings
from medguard.services.access_control import set_access_control
from medguard.services.audit import set_audit_trail
from medguard.services.crypto.encryption import reset_encryption_service
from medguard.services.devices import set_device_auth_service
from medguard.services.events import reset_event_bus
from medguard.services.rate_limiting import reset_rate_limiter_state
from medguard.services.tenancy.registry import reset_retired_schemas, set_tenant_registry


@pytest.fixture(autouse=True)
def reset_service_singletons() -> None:
    # Each test starts from fresh settings and process-local security state.
    get_settings.cache_clear()
    reset_encryption_service()
    reset_event_bus()
    reset_rate_limiter_state()
    reset_retired_schemas()
    set_audit_trail(None)
    set_access_control(None)
    set_device_auth_service(None)
    set_tenant_registry(None)
    yield
    get_settings.cache_clear()
    set_audit_trail(None)
    set_access_control(None)
    set_device_auth_service(None)
    set_tenant_registry(None)
