from __future__ import annotations

import asyncio
from dataclasses import dataclass, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
from typing import Any, Callable, Mapping, Protocol, Sequence
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.requests import Request

from medguard.core.config import get_settings
from medguard.domain.models import AuditLog
from medguard.persistence.db import PublicSessionLocal
from medguard.persistence.repos import audit as audit_repo
from medguard.services import events as event_names
from medguard.services.crypto.encryption import EncryptionService, get_encryption_service
from medguard.services.crypto.utils import stable_json
from medguard.services.events import EventBus, get_event_bus
from medguard.services.scheduler import RecurringTask
from medguard.services.tenancy.context import current_tenant_id


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "ssn"]
# Record bodies are matched by exact key so fields like content_type stay readable.
_SENSITIVE_EXACT_KEYS = frozenset({"content"})
_REDACTED_VALUE = "[REDACTED]"


class AuditAction(str, Enum):
    PHI_ACCESS = "PHI_ACCESS"
    PHI_CREATE = "PHI_CREATE"
    PHI_UPDATE = "PHI_UPDATE"
    PHI_DELETE = "PHI_DELETE"
    PHI_EXPORT = "PHI_EXPORT"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    LOGIN_FAILED = "LOGIN_FAILED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    SECURITY_VIOLATION = "SECURITY_VIOLATION"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    RATE_LIMIT_UNBLOCKED = "RATE_LIMIT_UNBLOCKED"
    TENANT_CREATED = "TENANT_CREATED"
    TENANT_UPDATED = "TENANT_UPDATED"
    TENANT_DELETED = "TENANT_DELETED"
    INCIDENT_CREATED = "INCIDENT_CREATED"
    INCIDENT_UPDATED = "INCIDENT_UPDATED"
    BREACH_NOTIFICATION_SENT = "BREACH_NOTIFICATION_SENT"
    DEVICE_REGISTERED = "DEVICE_REGISTERED"
    DEVICE_AUTHENTICATED = "DEVICE_AUTHENTICATED"
    DEVICE_REJECTED = "DEVICE_REJECTED"
    DEVICE_REVOKED = "DEVICE_REVOKED"
    DEVICE_TRUST_CHANGED = "DEVICE_TRUST_CHANGED"
    AUDIT_QUERY = "AUDIT_QUERY"


class AuditSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    EMERGENCY = "EMERGENCY"


_WRITE_THROUGH_SEVERITIES = {AuditSeverity.CRITICAL, AuditSeverity.EMERGENCY}


@dataclass(frozen=True)
class AuditEntry:
    id: str
    tenant_id: str | None
    user_id: str | None
    user_role: str | None
    action: str
    severity: str
    resource: str
    resource_id: str | None
    patient_id_hash: str | None
    ip_address: str | None
    user_agent: str | None
    session_id: str | None
    device_id: str | None
    correlation_id: str | None
    metadata_json: dict[str, Any] | None
    is_anomaly: bool
    created_at: datetime
    integrity_hash: str = ""


_SIGNED_FIELDS = tuple(f.name for f in fields(AuditEntry) if f.name != "integrity_hash")


@dataclass(frozen=True)
class AuditQuery:
    user_id: str | None = None
    # Raw identifier from the caller; hashed before it reaches storage.
    patient_id: str | None = None
    action: str | None = None
    severity: str | None = None
    resource: str | None = None
    is_anomaly: bool | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    tenant_id: str | None = None
    limit: int | None = None
    offset: int = 0


@dataclass(frozen=True)
class AuditQueryResult:
    records: list[AuditEntry]
    total: int


@dataclass(frozen=True)
class StoreFilter:
    tenant_id: str | None
    user_id: str | None
    patient_id_hash: str | None
    action: str | None
    severity: str | None
    resource: str | None
    is_anomaly: bool | None
    start_date: datetime | None
    end_date: datetime | None
    offset: int
    limit: int


class AuditStore(Protocol):
    async def save(self, entries: Sequence[AuditEntry]) -> None: ...

    async def query(self, query: StoreFilter) -> tuple[list[AuditEntry], int]: ...

    async def get(self, entry_id: str, *, tenant_id: str | None) -> AuditEntry | None: ...

    async def count_actions(
        self, *, user_id: str, action: str, since: datetime, tenant_id: str | None
    ) -> int: ...

    async def summarize(
        self, *, start: datetime, end: datetime, tenant_id: str | None
    ) -> list[tuple[str, str, int]]: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; treat them as UTC like Postgres timestamptz.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    if lowered in _SENSITIVE_EXACT_KEYS:
        return True
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def client_ip(request: Request) -> str:
    # First X-Forwarded-For hop is the original client behind the load balancer.
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"correlation_id": None, "ip_address": None, "user_agent": None}
    correlation_id = getattr(request.state, "correlation_id", None) or request.headers.get("X-Correlation-ID")
    return {
        "correlation_id": correlation_id,
        "ip_address": client_ip(request),
        "user_agent": request.headers.get("user-agent"),
    }


def integrity_payload(record: Any) -> dict[str, Any]:
    """Canonical field map covered by the integrity signature.

    Works for both in-memory entries and ORM rows read back from storage.
    """
    payload: dict[str, Any] = {}
    for name in _SIGNED_FIELDS:
        value = _enum_value(getattr(record, name))
        if isinstance(value, datetime):
            value = _as_utc(value).isoformat()
        payload[name] = value
    return payload


def entry_from_row(row: AuditLog) -> AuditEntry:
    values = {name: getattr(row, name) for name in _SIGNED_FIELDS}
    values["created_at"] = _as_utc(row.created_at)
    return AuditEntry(**values, integrity_hash=row.integrity_hash)


def row_from_entry(entry: AuditEntry) -> AuditLog:
    return AuditLog(**{name: getattr(entry, name) for name in _SIGNED_FIELDS}, integrity_hash=entry.integrity_hash)


class SqlAuditStore:
    # Short sessions on the side pool: audit never joins a tenant transaction or waits on the request pool.
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or PublicSessionLocal

    async def save(self, entries: Sequence[AuditEntry]) -> None:
        async with self._session_factory() as session:
            await audit_repo.insert_entries(session, [row_from_entry(entry) for entry in entries])

    async def query(self, query: StoreFilter) -> tuple[list[AuditEntry], int]:
        filters = audit_repo.build_query_filters(
            tenant_id=query.tenant_id,
            user_id=query.user_id,
            patient_id_hash=query.patient_id_hash,
            action=query.action,
            severity=query.severity,
            resource=query.resource,
            is_anomaly=query.is_anomaly,
            start_date=query.start_date,
            end_date=query.end_date,
        )
        async with self._session_factory() as session:
            rows, total = await audit_repo.list_entries(session, filters, offset=query.offset, limit=query.limit)
        return [entry_from_row(row) for row in rows], total

    async def get(self, entry_id: str, *, tenant_id: str | None) -> AuditEntry | None:
        async with self._session_factory() as session:
            row = await audit_repo.get_entry(session, entry_id, tenant_id=tenant_id)
        return entry_from_row(row) if row is not None else None

    async def count_actions(
        self, *, user_id: str, action: str, since: datetime, tenant_id: str | None
    ) -> int:
        async with self._session_factory() as session:
            return await audit_repo.count_actions(
                session, user_id=user_id, action=action, since=since, tenant_id=tenant_id
            )

    async def summarize(
        self, *, start: datetime, end: datetime, tenant_id: str | None
    ) -> list[tuple[str, str, int]]:
        async with self._session_factory() as session:
            return await audit_repo.summarize(session, start=start, end=end, tenant_id=tenant_id)


class AuditTrail:
    """Tamper-evident audit log with buffered writes.

    INFO and WARNING entries are buffered and flushed when the buffer fills or on
    the flush timer. CRITICAL and EMERGENCY entries are written before ``log``
    returns. A failed write is logged and the entries are re-queued; callers never
    see audit storage errors.
    """

    def __init__(
        self,
        store: AuditStore,
        encryption: EncryptionService,
        *,
        events: EventBus | None = None,
        buffer_size: int | None = None,
        max_buffered: int | None = None,
        flush_interval_s: float | None = None,
        anomaly_threshold: int | None = None,
        anomaly_window_minutes: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._encryption = encryption
        self._events = events or get_event_bus()
        self.buffer_size = max(1, buffer_size or settings.audit_buffer_size)
        self.max_buffered = max(self.buffer_size, max_buffered or settings.audit_max_buffered)
        self.flush_interval_s = flush_interval_s or settings.audit_flush_interval_s
        self.anomaly_threshold = anomaly_threshold or settings.audit_anomaly_threshold
        self.anomaly_window_minutes = anomaly_window_minutes or settings.audit_anomaly_window_minutes
        self._clock = clock or _utc_now
        self._buffer: list[AuditEntry] = []
        self._flush_lock = asyncio.Lock()
        self._flagged_users: dict[str, datetime] = {}
        self._flush_task: RecurringTask | None = None

    @property
    def pending(self) -> int:
        return len(self._buffer)

    @property
    def flagged_users(self) -> frozenset[str]:
        return frozenset(self._flagged_users)

    def _build_entry(
        self,
        *,
        action: AuditAction | str,
        resource: str,
        severity: AuditSeverity | str,
        user_id: str | None,
        user_role: str | None,
        resource_id: str | None,
        patient_id: str | None,
        ip_address: str | None,
        user_agent: str | None,
        session_id: str | None,
        device_id: str | None,
        correlation_id: str | None,
        metadata: Mapping[str, Any] | None,
        tenant_id: str | None,
        is_anomaly: bool,
    ) -> AuditEntry:
        unsigned = AuditEntry(
            id=str(uuid4()),
            tenant_id=tenant_id if tenant_id is not None else current_tenant_id(),
            user_id=user_id,
            user_role=user_role,
            action=str(_enum_value(action)),
            severity=str(_enum_value(severity)),
            resource=resource,
            resource_id=resource_id,
            patient_id_hash=self._encryption.hash_identifier(patient_id) if patient_id else None,
            ip_address=ip_address,
            user_agent=user_agent,
            session_id=session_id,
            device_id=device_id,
            correlation_id=correlation_id,
            metadata_json=sanitize_metadata(dict(metadata)) if metadata else None,
            is_anomaly=is_anomaly,
            created_at=_as_utc(self._clock()),
        )
        signature = self._encryption.create_integrity_signature(stable_json(integrity_payload(unsigned)))
        return AuditEntry(**{name: getattr(unsigned, name) for name in _SIGNED_FIELDS}, integrity_hash=signature)

    async def log(
        self,
        action: AuditAction | str,
        resource: str,
        *,
        severity: AuditSeverity | str = AuditSeverity.INFO,
        user_id: str | None = None,
        user_role: str | None = None,
        resource_id: str | None = None,
        patient_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        session_id: str | None = None,
        device_id: str | None = None,
        correlation_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        tenant_id: str | None = None,
        is_anomaly: bool = False,
        immediate: bool = False,
    ) -> AuditEntry:
        entry = self._build_entry(
            action=action,
            resource=resource,
            severity=severity,
            user_id=user_id,
            user_role=user_role,
            resource_id=resource_id,
            patient_id=patient_id,
            ip_address=ip_address,
            user_agent=user_agent,
            session_id=session_id,
            device_id=device_id,
            correlation_id=correlation_id,
            metadata=metadata,
            tenant_id=tenant_id,
            is_anomaly=is_anomaly,
        )
        self._events.emit(event_names.AUDIT_LOGGED, entry)

        write_through = AuditSeverity(entry.severity) in _WRITE_THROUGH_SEVERITIES
        if write_through or immediate:
            await self._write_now(entry)
            if write_through:
                self._events.emit(event_names.AUDIT_CRITICAL, entry)
            return entry

        self._buffer.append(entry)
        if len(self._buffer) >= self.buffer_size:
            await self.flush()
        return entry

    async def _write_now(self, entry: AuditEntry) -> None:
        try:
            await self._store.save([entry])
        except Exception as exc:  # noqa: BLE001 - audit storage must not fail the audited operation
            logger.error(
                "audit_entry_write_failed action=%s severity=%s entry_id=%s",
                entry.action,
                entry.severity,
                entry.id,
                exc_info=exc,
            )
            self._requeue([entry])

    def _requeue(self, entries: Sequence[AuditEntry]) -> None:
        # Failed entries go back ahead of newer ones; the oldest are dropped past the cap.
        self._buffer = list(entries) + self._buffer
        overflow = len(self._buffer) - self.max_buffered
        if overflow > 0:
            self._buffer = self._buffer[overflow:]
            logger.error("audit_buffer_overflow dropped=%s retained=%s", overflow, len(self._buffer))

    async def flush(self) -> int:
        async with self._flush_lock:
            if not self._buffer:
                return 0
            batch = self._buffer
            self._buffer = []
            try:
                await self._store.save(batch)
            except Exception as exc:  # noqa: BLE001 - keep entries for the next flush
                logger.error("audit_flush_failed count=%s", len(batch), exc_info=exc)
                self._requeue(batch)
                return 0
            logger.debug("audit_flush_ok count=%s", len(batch))
            return len(batch)

    async def log_phi_access(
        self,
        *,
        user_id: str | None,
        patient_id: str | None,
        resource: str,
        action: AuditAction | str = AuditAction.PHI_ACCESS,
        resource_id: str | None = None,
        user_role: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        correlation_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> AuditEntry:
        entry = await self.log(
            action,
            resource,
            severity=AuditSeverity.INFO,
            user_id=user_id,
            user_role=user_role,
            resource_id=resource_id,
            patient_id=patient_id,
            ip_address=ip_address,
            user_agent=user_agent,
            correlation_id=correlation_id,
            metadata=metadata,
        )
        if user_id:
            try:
                await self.detect_anomalies(user_id)
            except Exception as exc:  # noqa: BLE001 - detection is advisory on the access path
                logger.warning("audit_anomaly_check_failed user_id=%s", user_id, exc_info=exc)
        return entry

    async def log_security_violation(
        self,
        reason: str,
        *,
        user_id: str | None = None,
        user_role: str | None = None,
        resource: str = "security",
        ip_address: str | None = None,
        user_agent: str | None = None,
        correlation_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        is_anomaly: bool = False,
    ) -> AuditEntry:
        entry = await self.log(
            AuditAction.SECURITY_VIOLATION,
            resource,
            severity=AuditSeverity.CRITICAL,
            user_id=user_id,
            user_role=user_role,
            ip_address=ip_address,
            user_agent=user_agent,
            correlation_id=correlation_id,
            metadata={"reason": reason, **(metadata or {})},
            is_anomaly=is_anomaly,
        )
        self._events.emit(event_names.SECURITY_VIOLATION, entry)
        return entry

    async def detect_anomalies(self, user_id: str, window_minutes: int | None = None) -> bool:
        window = window_minutes or self.anomaly_window_minutes
        now = _as_utc(self._clock())
        since = now - timedelta(minutes=window)
        expired = [uid for uid, flagged_at in self._flagged_users.items() if flagged_at <= since]
        for uid in expired:
            del self._flagged_users[uid]
        tenant_id = current_tenant_id()
        stored = await self._store.count_actions(
            user_id=user_id,
            action=AuditAction.PHI_ACCESS.value,
            since=since,
            tenant_id=tenant_id,
        )
        pending = sum(
            1
            for entry in self._buffer
            if entry.user_id == user_id
            and entry.action == AuditAction.PHI_ACCESS.value
            and entry.created_at >= since
            and (tenant_id is None or entry.tenant_id == tenant_id)
        )
        count = stored + pending
        if count <= self.anomaly_threshold:
            return False

        # Raise once per user per window; later checks still report the anomaly.
        if user_id not in self._flagged_users:
            self._flagged_users[user_id] = now
            logger.warning("audit_anomaly_detected user_id=%s count=%s window_minutes=%s", user_id, count, window)
            self._events.emit(
                event_names.AUDIT_ANOMALY,
                {"user_id": user_id, "count": count, "window_minutes": window, "tenant_id": tenant_id},
            )
            await self.log_security_violation(
                "Anomalous PHI access volume",
                user_id=user_id,
                resource="audit",
                metadata={"count": count, "window_minutes": window, "threshold": self.anomaly_threshold},
                is_anomaly=True,
            )
        return True

    async def query(self, query: AuditQuery) -> AuditQueryResult:
        settings = get_settings()
        # Make buffered entries visible to investigators before reading.
        await self.flush()
        limit = query.limit or settings.audit_query_default_limit
        limit = max(1, min(limit, settings.audit_query_max_limit))
        store_filter = StoreFilter(
            tenant_id=query.tenant_id if query.tenant_id is not None else current_tenant_id(),
            user_id=query.user_id,
            patient_id_hash=self._encryption.hash_identifier(query.patient_id) if query.patient_id else None,
            action=_enum_value(query.action),
            severity=_enum_value(query.severity),
            resource=query.resource,
            is_anomaly=query.is_anomaly,
            start_date=query.start_date,
            end_date=query.end_date,
            offset=max(0, query.offset),
            limit=limit,
        )
        records, total = await self._store.query(store_filter)
        return AuditQueryResult(records=records, total=total)

    async def get(self, entry_id: str) -> AuditEntry | None:
        await self.flush()
        return await self._store.get(entry_id, tenant_id=current_tenant_id())

    def verify_integrity(self, record: Any) -> bool:
        signature = getattr(record, "integrity_hash", None)
        if not signature:
            return False
        return self._encryption.verify_integrity_signature(stable_json(integrity_payload(record)), signature)

    async def generate_activity_report(
        self,
        start: datetime,
        end: datetime,
        *,
        tenant_id: str | None = None,
    ) -> dict[str, Any]:
        await self.flush()
        scoped_tenant = tenant_id if tenant_id is not None else current_tenant_id()
        rows = await self._store.summarize(start=start, end=end, tenant_id=scoped_tenant)
        _, anomaly_events = await self._store.query(
            StoreFilter(
                tenant_id=scoped_tenant,
                user_id=None,
                patient_id_hash=None,
                action=None,
                severity=None,
                resource=None,
                is_anomaly=True,
                start_date=start,
                end_date=end,
                offset=0,
                limit=1,
            )
        )
        by_action: dict[str, int] = {}
        by_severity: dict[str, int] = {}
        for action, severity, count in rows:
            by_action[action] = by_action.get(action, 0) + count
            by_severity[severity] = by_severity.get(severity, 0) + count
        return {
            "tenant_id": scoped_tenant,
            "period": {"start": _as_utc(start).isoformat(), "end": _as_utc(end).isoformat()},
            "total_events": sum(by_action.values()),
            "by_action": by_action,
            "by_severity": by_severity,
            "phi_access_events": by_action.get(AuditAction.PHI_ACCESS.value, 0),
            "security_violations": by_action.get(AuditAction.SECURITY_VIOLATION.value, 0),
            "anomaly_events": anomaly_events,
            "permission_denials": by_action.get(AuditAction.PERMISSION_DENIED.value, 0),
            "critical_events": by_severity.get(AuditSeverity.CRITICAL.value, 0)
            + by_severity.get(AuditSeverity.EMERGENCY.value, 0),
            "generated_at": _as_utc(self._clock()).isoformat(),
        }

    def start(self) -> None:
        if self._flush_task is None:
            self._flush_task = RecurringTask("audit-flush", self.flush_interval_s, self.flush)
        self._flush_task.start()

    async def stop(self) -> None:
        # Final flush so a clean shutdown loses nothing that was buffered.
        if self._flush_task is not None:
            await self._flush_task.stop()
        await self.flush()


_audit_trail: AuditTrail | None = None


def get_audit_trail() -> AuditTrail:
    global _audit_trail
    if _audit_trail is None:
        _audit_trail = AuditTrail(SqlAuditStore(), get_encryption_service(), events=get_event_bus())
    return _audit_trail


def set_audit_trail(trail: AuditTrail | None) -> None:
    # Tests swap in trails backed by in-memory stores.
    global _audit_trail
    _audit_trail = trail
