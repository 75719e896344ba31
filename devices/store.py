"""
devices/store.py -- Device repository and lifecycle operations.

Uses SQLAlchemy Core (not ORM); the Device dataclass in core/models.py is the
domain representation and _row_to_device() is the mapper. Route handlers and
the CLI never touch SQL directly.

Every state change is a compare-and-swap:

    UPDATE devices SET status = :target, ... WHERE id = :id AND status = :observed

rowcount == 0 means another caller changed the row between our read and our
write. The row is re-read and the decision is taken again against the new
state, a bounded number of times, before giving up with StoreBusy.

Audit entries are recorded only after the write transaction has closed.

Usage:
    store = DeviceStore(engine, TokenService(settings), AuditSink(engine))
    store.create("1b4e28ba-2fa1-11d2-883f-0016d3cca427", "1B4E28BA2FA111D", created_by="alice")
    result = store.register(full_id, short_id, DeviceMetadata(computer_name="ws-01"), "10.0.0.5")
    checkin = store.check_in(result.token, DeviceMetadata(), "10.0.0.5", commands=queue)
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from audit.sink import AuditSink
from auth.tokens import TokenService, fingerprint
from core.db import audit_log, devices, parse_iso, to_iso, transaction, utcnow
from core.errors import (
    Blocked,
    DeviceExists,
    InvalidToken,
    InvalidTransition,
    MDMError,
    NotFound,
    NotOperational,
    NotProvisioned,
    StoreBusy,
    TokenExpired,
    ValidationError,
)
from core.lifecycle import ACTIVE_FLAG_AFTER, DeviceAction, plan_transition
from core.models import (
    FULL_ID_PATTERN,
    SHORT_ID_LENGTH,
    ActorType,
    AuditEventType,
    CheckInResult,
    Device,
    DeviceMetadata,
    DeviceStatus,
    RegistrationResult,
)

if TYPE_CHECKING:
    from commands.queue import CommandQueue

logger = logging.getLogger("mdm.devices")

_FULL_ID_RE = re.compile(FULL_ID_PATTERN)

# How many times a lost compare-and-swap is re-read and retried.
_CAS_ATTEMPTS = 3

# Admin action -> event recorded next to STATUS_CHANGED.
_ACTION_EVENTS: dict[DeviceAction, AuditEventType] = {
    DeviceAction.SUSPEND: AuditEventType.DEVICE_SUSPENDED,
    DeviceAction.REACTIVATE: AuditEventType.DEVICE_REACTIVATED,
    DeviceAction.BLOCK: AuditEventType.DEVICE_BLOCKED,
    DeviceAction.WIPE: AuditEventType.DEVICE_WIPED,
}


def normalize_full_id(full_id: str) -> str:
    """Validate and canonicalize a full device id (lowercase UUID)."""
    if not full_id or not _FULL_ID_RE.match(full_id.strip()):
        raise ValidationError("Invalid device id", detail="fulluuid must be a UUID string")
    return full_id.strip().lower()


def validate_short_id(short_id: str) -> str:
    if not short_id or len(short_id) != SHORT_ID_LENGTH:
        raise ValidationError("Invalid device id", detail=f"uuid15 must be exactly {SHORT_ID_LENGTH} characters")
    return short_id


def _metadata_values(metadata: Optional[DeviceMetadata]) -> dict[str, str]:
    """Only the fields the device actually reported; None leaves the column alone."""
    if metadata is None:
        return {}
    values = {
        "computer_name": metadata.computer_name,
        "os_name": metadata.os_name,
        "os_version": metadata.os_version,
    }
    return {k: v for k, v in values.items() if v is not None}


class DeviceStore:
    def __init__(self, engine: Engine, tokens: TokenService, audit: AuditSink) -> None:
        self.engine = engine
        self.tokens = tokens
        self.audit = audit

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, full_id: str) -> Optional[Device]:
        """Fetch a device by full id. Returns None if not found or malformed."""
        try:
            key = normalize_full_id(full_id)
        except ValidationError:
            return None
        with self.engine.connect() as conn:
            return _fetch_by_full_id(conn, key)

    def require(self, full_id: str) -> Device:
        device = self.get(full_id)
        if device is None:
            raise NotFound("Device not found", detail=full_id)
        return device

    def get_by_id(self, device_id: int) -> Optional[Device]:
        with self.engine.connect() as conn:
            return _fetch_by_id(conn, device_id)

    def list_devices(self, status: Optional[DeviceStatus] = None) -> list[Device]:
        """All devices, oldest first, optionally filtered by status."""
        query = devices.select().order_by(devices.c.created_at, devices.c.id)
        if status is not None:
            query = query.where(devices.c.status == status.value)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_device(r) for r in rows]

    def count_by_status(self) -> dict[str, int]:
        """Device counts keyed by status value. Every status is present."""
        counts = {s.value: 0 for s in DeviceStatus}
        with self.engine.connect() as conn:
            rows = conn.execute(select(devices.c.status, func.count()).group_by(devices.c.status)).fetchall()
        for status, count in rows:
            counts[status] = count
        return counts

    def list_stale(self, threshold: datetime) -> list[Device]:
        """ACTIVE devices whose last check-in is older than threshold."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                devices.select()
                .where(devices.c.status == DeviceStatus.ACTIVE.value)
                .where(devices.c.last_check_in < to_iso(threshold))
                .order_by(devices.c.last_check_in)
            ).fetchall()
        return [_row_to_device(r) for r in rows]

    def list_expiring_tokens(self, within: timedelta, now: Optional[datetime] = None) -> list[Device]:
        """Devices holding a token that expires between now and now + within."""
        now = now or utcnow()
        with self.engine.connect() as conn:
            rows = conn.execute(
                devices.select()
                .where(devices.c.token_hash.is_not(None))
                .where(devices.c.token_expires_at > to_iso(now))
                .where(devices.c.token_expires_at <= to_iso(now + within))
                .order_by(devices.c.token_expires_at)
            ).fetchall()
        return [_row_to_device(r) for r in rows]

    # ------------------------------------------------------------------
    # Pre-provisioning
    # ------------------------------------------------------------------

    def create(
        self,
        full_id: str,
        short_id: str,
        created_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Device:
        """Pre-provision a device in PENDING_ENROLLMENT. Raises DeviceExists on a duplicate full id."""
        key = normalize_full_id(full_id)
        validate_short_id(short_id)
        now = to_iso(utcnow())
        try:
            with transaction(self.engine) as conn:
                if _fetch_by_full_id(conn, key) is not None:
                    raise DeviceExists(detail=key)
                result = conn.execute(
                    devices.insert().values(
                        full_id=key,
                        short_id=short_id,
                        status=DeviceStatus.PENDING_ENROLLMENT.value,
                        is_active=0,
                        created_at=now,
                        updated_at=now,
                        created_by=created_by,
                        notes=notes,
                    )
                )
                device_id = result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise DeviceExists(detail=key) from exc

        logger.info("Device %s pre-provisioned by %s", key, created_by or "-")
        self.audit.record(
            AuditEventType.DEVICE_CREATED,
            key,
            device_id=device_id,
            data={"short_id": short_id, "notes": notes},
            actor_type=ActorType.ADMIN,
            actor_id=created_by,
        )
        return self.get_by_id(device_id)

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    def register(
        self,
        full_id: str,
        short_id: str,
        metadata: Optional[DeviceMetadata] = None,
        source_ip: Optional[str] = None,
    ) -> RegistrationResult:
        """Enroll a pre-provisioned device, or confirm an existing enrollment.

        First enrollment returns the plaintext token exactly once. Repeating the
        call on an ENROLLED or ACTIVE device refreshes metadata and returns no
        token; the device keeps using the one it already has.
        """
        key = normalize_full_id(full_id)
        self._audit_device(AuditEventType.ENROLLMENT_ATTEMPT, key, None, source_ip, {"short_id": short_id})

        device = self.get(key)
        if device is None:
            logger.warning("Enrollment attempt for unknown device %s from %s", key, source_ip or "-")
            self._audit_device(AuditEventType.ENROLLMENT_FAILED, key, None, source_ip, {"reason": "not_provisioned"})
            raise NotProvisioned()

        if short_id != device.short_id:
            logger.warning("Device %s sent short id %s, keeping stored %s", key, short_id, device.short_id)

        for _ in range(_CAS_ATTEMPTS):
            if device.status == DeviceStatus.BLOCKED:
                self._audit_device(AuditEventType.ENROLLMENT_BLOCKED, key, device.id, source_ip, {})
                raise Blocked()

            if device.status in (DeviceStatus.ENROLLED, DeviceStatus.ACTIVE):
                return self._re_register(device, metadata, source_ip)

            if device.status != DeviceStatus.PENDING_ENROLLMENT:
                self._audit_device(
                    AuditEventType.ENROLLMENT_FAILED,
                    key,
                    device.id,
                    source_ip,
                    {"reason": "invalid_status", "status": device.status.value},
                )
                raise InvalidTransition(
                    f"Device in status {device.status.value} cannot enroll",
                    detail="contact an administrator",
                )

            result = self._enroll(device, metadata, source_ip)
            if result is not None:
                return result
            # Lost the race to a concurrent register; decide again on the fresh row.
            device = self.require(key)
        raise StoreBusy()

    def _enroll(
        self, device: Device, metadata: Optional[DeviceMetadata], source_ip: Optional[str]
    ) -> Optional[RegistrationResult]:
        target = plan_transition(DeviceAction.ENROLL, device.status)
        token = self.tokens.generate()
        digest = self.tokens.hash(token)
        now = utcnow()
        expires_at = to_iso(self.tokens.expiry_from(now))
        values: dict[str, Any] = {
            "status": target.value,
            "is_active": int(ACTIVE_FLAG_AFTER[DeviceAction.ENROLL]),
            "token_hash": digest,
            "token_issued_at": to_iso(now),
            "token_expires_at": expires_at,
            "enrolled_at": to_iso(now),
            "ip_address": source_ip,
            "updated_at": to_iso(now),
            **_metadata_values(metadata),
        }
        with transaction(self.engine) as conn:
            swapped = _compare_and_swap(conn, device, values)
        if not swapped:
            return None

        logger.info("Device %s enrolled, token %s", device.full_id, fingerprint(digest))
        self._audit_device(
            AuditEventType.ENROLLMENT_SUCCESS,
            device.full_id,
            device.id,
            source_ip,
            {"computer_name": values.get("computer_name"), "os_name": values.get("os_name")},
        )
        self._audit_device(
            AuditEventType.TOKEN_ISSUED,
            device.full_id,
            device.id,
            source_ip,
            {"token_fingerprint": fingerprint(digest), "expires_at": expires_at},
            actor_type=ActorType.SYSTEM,
        )
        return RegistrationResult(
            device=self.get_by_id(device.id),
            token=token,
            expires_at=expires_at,
            newly_enrolled=True,
        )

    def _re_register(
        self, device: Device, metadata: Optional[DeviceMetadata], source_ip: Optional[str]
    ) -> RegistrationResult:
        values: dict[str, Any] = {"ip_address": source_ip, "updated_at": to_iso(utcnow()), **_metadata_values(metadata)}
        with transaction(self.engine) as conn:
            conn.execute(devices.update().where(devices.c.id == device.id).values(**values))
        logger.info("Device %s re-registered, no new token issued", device.full_id)
        self._audit_device(
            AuditEventType.RE_ENROLLMENT, device.full_id, device.id, source_ip, {"status": device.status.value}
        )
        return RegistrationResult(
            device=self.get_by_id(device.id),
            token=None,
            expires_at=device.token_expires_at,
            newly_enrolled=False,
        )

    # ------------------------------------------------------------------
    # Token authentication and check-in
    # ------------------------------------------------------------------

    def authenticate(self, token: Optional[str], source_ip: Optional[str] = None) -> Device:
        """Resolve a bearer token to an operational device or raise the matching error."""
        device = self._resolve_token(token, source_ip)
        _require_operational(device)
        return device

    def check_in(
        self,
        token: Optional[str],
        metadata: Optional[DeviceMetadata] = None,
        source_ip: Optional[str] = None,
        commands: Optional[CommandQueue] = None,
    ) -> CheckInResult:
        """Authenticate, refresh metadata and last_check_in, and collect pending commands.

        The first check-in after enrollment moves the device ENROLLED -> ACTIVE.
        commands=None skips command delivery (whitelist deployments).
        """
        device = self._resolve_token(token, source_ip)
        first = False
        for _ in range(_CAS_ATTEMPTS):
            try:
                _require_operational(device)
            except MDMError as exc:
                self._audit_device(
                    AuditEventType.CHECK_IN_REJECTED,
                    device.full_id,
                    device.id,
                    source_ip,
                    {"reason": exc.code, "status": device.status.value},
                )
                raise

            now = utcnow()
            values: dict[str, Any] = {
                "ip_address": source_ip,
                "last_check_in": to_iso(now),
                "updated_at": to_iso(now),
                **_metadata_values(metadata),
            }
            first = device.status == DeviceStatus.ENROLLED
            if first:
                values["status"] = plan_transition(DeviceAction.ACTIVATE, device.status).value
                values["is_active"] = int(ACTIVE_FLAG_AFTER[DeviceAction.ACTIVATE])
            with transaction(self.engine) as conn:
                swapped = _compare_and_swap(conn, device, values)
            if swapped:
                break
            device = self.get_by_id(device.id)
            if device is None:
                raise InvalidToken()
        else:
            raise StoreBusy()

        event = AuditEventType.FIRST_CHECK_IN if first else AuditEventType.CHECK_IN
        self._audit_device(event, device.full_id, device.id, source_ip, _metadata_values(metadata))
        if first:
            logger.info("Device %s first check-in, now ACTIVE", device.full_id)

        pending = commands.pending_for(device.id, now) if commands is not None else []
        return CheckInResult(device=self.get_by_id(device.id), commands=pending, first_check_in=first)

    def _resolve_token(self, token: Optional[str], source_ip: Optional[str]) -> Device:
        """Format check, digest lookup, constant-time compare, then expiry."""
        if not self.tokens.is_valid_format(token):
            raise InvalidToken()
        digest = self.tokens.hash(token)
        with self.engine.connect() as conn:
            row = conn.execute(devices.select().where(devices.c.token_hash == digest)).fetchone()
        if row is None or not self.tokens.validate(token, row.token_hash):
            logger.info("Unknown token %s from %s", fingerprint(digest), source_ip or "-")
            raise InvalidToken()
        device = _row_to_device(row)
        if self.tokens.is_expired(parse_iso(device.token_expires_at), utcnow()):
            self._audit_device(
                AuditEventType.TOKEN_EXPIRED,
                device.full_id,
                device.id,
                source_ip,
                {"expired_at": device.token_expires_at},
                actor_type=ActorType.SYSTEM,
            )
            raise TokenExpired()
        return device

    # ------------------------------------------------------------------
    # Administrative transitions
    # ------------------------------------------------------------------

    def suspend(self, full_id: str, actor: Optional[str] = None, reason: Optional[str] = None) -> Device:
        return self._transition(full_id, DeviceAction.SUSPEND, actor, reason)

    def reactivate(self, full_id: str, actor: Optional[str] = None, reason: Optional[str] = None) -> Device:
        return self._transition(full_id, DeviceAction.REACTIVATE, actor, reason)

    def block(self, full_id: str, actor: Optional[str] = None, reason: Optional[str] = None) -> Device:
        return self._transition(full_id, DeviceAction.BLOCK, actor, reason)

    def wipe(self, full_id: str, actor: Optional[str] = None, reason: Optional[str] = None) -> Device:
        """Move to WIPED and destroy the token. Nothing leaves WIPED."""
        return self._transition(full_id, DeviceAction.WIPE, actor, reason)

    def _transition(
        self, full_id: str, action: DeviceAction, actor: Optional[str], reason: Optional[str]
    ) -> Device:
        device = self.require(full_id)
        for _ in range(_CAS_ATTEMPTS):
            target = plan_transition(action, device.status)
            if target is None:
                logger.info("%s on %s is a no-op, already %s", action.value, device.full_id, device.status.value)
                return device
            values: dict[str, Any] = {
                "status": target.value,
                "is_active": int(ACTIVE_FLAG_AFTER[action]),
                "updated_at": to_iso(utcnow()),
            }
            if action == DeviceAction.WIPE:
                values.update(token_hash=None, token_issued_at=None, token_expires_at=None)
            with transaction(self.engine) as conn:
                swapped = _compare_and_swap(conn, device, values)
            if swapped:
                break
            device = self.require(full_id)
        else:
            raise StoreBusy()

        logger.info("Device %s %s -> %s by %s", device.full_id, device.status.value, target.value, actor or "-")
        data = {"from": device.status.value, "to": target.value, "reason": reason}
        self._audit_admin(AuditEventType.STATUS_CHANGED, device, actor, data)
        self._audit_admin(_ACTION_EVENTS[action], device, actor, data)
        return self.get_by_id(device.id)

    def delete(self, full_id: str, actor: Optional[str] = None) -> None:
        """Remove the device together with its commands, whitelists, and audit entries."""
        device = self.require(full_id)
        with transaction(self.engine) as conn:
            # Entries written before the device row resolved (enrollment attempts) carry no FK.
            conn.execute(audit_log.delete().where(audit_log.c.full_id == device.full_id))
            conn.execute(devices.delete().where(devices.c.id == device.id))
        logger.info("Device %s deleted by %s", device.full_id, actor or "-")
        self.audit.record(
            AuditEventType.DEVICE_DELETED,
            device.full_id,
            data={"short_id": device.short_id, "status": device.status.value},
            actor_type=ActorType.ADMIN,
            actor_id=actor,
        )

    # ------------------------------------------------------------------
    # Audit helpers
    # ------------------------------------------------------------------

    def _audit_device(
        self,
        event: AuditEventType,
        full_id: str,
        device_id: Optional[int],
        source_ip: Optional[str],
        data: dict[str, Any],
        actor_type: ActorType = ActorType.DEVICE,
    ) -> None:
        self.audit.record(
            event,
            full_id,
            device_id=device_id,
            data=data,
            source_ip=source_ip,
            actor_type=actor_type,
            actor_id=full_id if actor_type == ActorType.DEVICE else None,
        )

    def _audit_admin(self, event: AuditEventType, device: Device, actor: Optional[str], data: dict[str, Any]) -> None:
        self.audit.record(
            event,
            device.full_id,
            device_id=device.id,
            data=data,
            actor_type=ActorType.ADMIN,
            actor_id=actor,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require_operational(device: Device) -> None:
    if device.is_blocked:
        raise Blocked()
    if not device.is_operational:
        raise NotOperational(detail=f"status {device.status.value}")


def _compare_and_swap(conn: Connection, device: Device, values: dict[str, Any]) -> bool:
    result = conn.execute(
        devices.update()
        .where(devices.c.id == device.id)
        .where(devices.c.status == device.status.value)
        .values(**values)
    )
    return result.rowcount == 1


def _fetch_by_full_id(conn: Connection, full_id: str) -> Optional[Device]:
    row = conn.execute(devices.select().where(devices.c.full_id == full_id)).fetchone()
    return _row_to_device(row) if row is not None else None


def _fetch_by_id(conn: Connection, device_id: int) -> Optional[Device]:
    row = conn.execute(devices.select().where(devices.c.id == device_id)).fetchone()
    return _row_to_device(row) if row is not None else None


def _row_to_device(row) -> Device:
    return Device(
        id=row.id,
        full_id=row.full_id,
        short_id=row.short_id,
        status=DeviceStatus(row.status),
        is_active=bool(row.is_active),
        computer_name=row.computer_name,
        os_name=row.os_name,
        os_version=row.os_version,
        ip_address=row.ip_address,
        token_hash=row.token_hash,
        token_issued_at=row.token_issued_at,
        token_expires_at=row.token_expires_at,
        created_at=row.created_at,
        enrolled_at=row.enrolled_at,
        last_check_in=row.last_check_in,
        updated_at=row.updated_at,
        created_by=row.created_by,
        notes=getattr(row, "notes", None),
    )
