from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Sequence

from medguard.services.audit import AuditEntry, AuditTrail, StoreFilter
from medguard.services.crypto.encryption import EncryptionService
from medguard.services.events import EventBus

TEST_MASTER_KEY = "unit-test-master-key-with-32-plus-characters"


class InMemoryAuditStore:
    """Audit store double; ``fail`` makes every save raise until cleared."""

    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []
        self.save_calls = 0
        self.fail = False

    async def save(self, entries: Sequence[AuditEntry]) -> None:
        self.save_calls += 1
        if self.fail:
            raise RuntimeError("audit store unavailable")
        self.entries.extend(entries)

    def _matches(self, entry: AuditEntry, query: StoreFilter) -> bool:
        checks = (
            (query.tenant_id, entry.tenant_id),
            (query.user_id, entry.user_id),
            (query.patient_id_hash, entry.patient_id_hash),
            (query.action, entry.action),
            (query.severity, entry.severity),
            (query.resource, entry.resource),
            (query.is_anomaly, entry.is_anomaly),
        )
        if any(expected is not None and expected != actual for expected, actual in checks):
            return False
        if query.start_date is not None and entry.created_at < query.start_date:
            return False
        if query.end_date is not None and entry.created_at > query.end_date:
            return False
        return True

    async def query(self, query: StoreFilter) -> tuple[list[AuditEntry], int]:
        matched = sorted(
            (entry for entry in self.entries if self._matches(entry, query)),
            key=lambda entry: entry.created_at,
            reverse=True,
        )
        return matched[query.offset : query.offset + query.limit], len(matched)

    async def get(self, entry_id: str, *, tenant_id: str | None) -> AuditEntry | None:
        for entry in self.entries:
            if entry.id == entry_id and (tenant_id is None or entry.tenant_id == tenant_id):
                return entry
        return None

    async def count_actions(self, *, user_id: str, action: str, since: datetime, tenant_id: str | None) -> int:
        return sum(
            1
            for entry in self.entries
            if entry.user_id == user_id
            and entry.action == action
            and entry.created_at >= since
            and (tenant_id is None or entry.tenant_id == tenant_id)
        )

    async def summarize(self, *, start: datetime, end: datetime, tenant_id: str | None) -> list[tuple[str, str, int]]:
        counts: dict[tuple[str, str], int] = {}
        for entry in self.entries:
            if not (start <= entry.created_at <= end):
                continue
            if tenant_id is not None and entry.tenant_id != tenant_id:
                continue
            key = (entry.action, entry.severity)
            counts[key] = counts.get(key, 0) + 1
        return [(action, severity, count) for (action, severity), count in counts.items()]


def make_encryption() -> EncryptionService:
    return EncryptionService(TEST_MASTER_KEY, salt="unit-salt", hash_salt="unit-hash-salt", key_version="1")


def make_trail(
    store: InMemoryAuditStore | None = None,
    *,
    events: EventBus | None = None,
    clock: Callable[[], datetime] | None = None,
    **kwargs,
) -> tuple[AuditTrail, InMemoryAuditStore]:
    # Build an audit trail over an in-memory store for service-level tests.
    resolved = store or InMemoryAuditStore()
    trail = AuditTrail(
        resolved,
        make_encryption(),
        events=events or EventBus(),
        clock=clock or (lambda: datetime.now(timezone.utc)),
        **kwargs,
    )
    return trail, resolved
