"""
commands/queue.py -- Per-device command queue with tracked delivery.

Lifecycle:

    PENDING --check-in--> DELIVERED --progress--> EXECUTING
       |                      |                       |
       |                      +------ ack ------------+--> EXECUTED | FAILED
       +--cancel--> CANCELLED
       +--sweep---> EXPIRED

Terminal states are never left and never re-delivered. Every move is a
compare-and-swap on the observed status, so two concurrent check-ins for the
same device cannot both receive the same command: each row is flipped
PENDING -> DELIVERED individually inside one transaction and only the rows
this caller flipped are returned.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Optional, Union

from sqlalchemy import or_, select
from sqlalchemy.engine import Connection, Engine

from audit.sink import AuditSink
from core.db import commands, devices, parse_iso, to_iso, transaction, utcnow
from core.errors import DeviceNotOperational, InvalidCommandState, NotFound, StoreBusy, ValidationError
from core.models import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    ActorType,
    AuditEventType,
    Command,
    CommandStatus,
    CommandType,
    DeviceStatus,
)
from devices.store import DeviceStore, normalize_full_id

logger = logging.getLogger("mdm.commands")

_CAS_ATTEMPTS = 3
_ACK_STATUSES = (CommandStatus.EXECUTED, CommandStatus.FAILED)
_ACKNOWLEDGEABLE = (CommandStatus.DELIVERED, CommandStatus.EXECUTING)
_OPERATIONAL = (DeviceStatus.ENROLLED.value, DeviceStatus.ACTIVE.value)


class CommandQueue:
    def __init__(self, engine: Engine, devices: DeviceStore, audit: AuditSink) -> None:
        self.engine = engine
        self.devices = devices
        self.audit = audit

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, command_id: int) -> Optional[Command]:
        with self.engine.connect() as conn:
            return _fetch(conn, command_id)

    def require(self, command_id: int) -> Command:
        command = self.get(command_id)
        if command is None:
            raise NotFound("Command not found", detail=str(command_id))
        return command

    def list_for_device(self, full_id: str) -> list[Command]:
        """Every command for the device, newest first."""
        device = self.devices.require(full_id)
        with self.engine.connect() as conn:
            rows = conn.execute(
                commands.select()
                .where(commands.c.device_id == device.id)
                .order_by(commands.c.created_at.desc(), commands.c.id.desc())
            ).fetchall()
        return [_row_to_command(r) for r in rows]

    # ------------------------------------------------------------------
    # Admin side
    # ------------------------------------------------------------------

    def create(
        self,
        full_id: str,
        command_type: Union[CommandType, str],
        payload: Optional[dict[str, Any]] = None,
        priority: int = 0,
        expires_at: Optional[datetime] = None,
        created_by: Optional[str] = None,
    ) -> Command:
        """Queue a command for an ENROLLED or ACTIVE device."""
        try:
            ctype = CommandType(command_type)
        except ValueError as exc:
            raise ValidationError("Unknown command type", detail=str(command_type)) from exc
        if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValidationError(
                "Priority out of range", detail=f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}"
            )
        now = utcnow()
        if expires_at is not None and parse_iso(to_iso(expires_at)) <= now:
            raise ValidationError("expires_at is in the past", detail=to_iso(expires_at))

        key = normalize_full_id(full_id)
        payload = payload or {}
        with transaction(self.engine) as conn:
            device = conn.execute(
                select(devices.c.id, devices.c.status).where(devices.c.full_id == key)
            ).fetchone()
            if device is None:
                raise NotFound("Device not found", detail=key)
            if device.status not in _OPERATIONAL:
                raise DeviceNotOperational(detail=f"status {device.status}")
            result = conn.execute(
                commands.insert().values(
                    device_id=device.id,
                    command_type=ctype.value,
                    payload=json.dumps(payload),
                    status=CommandStatus.PENDING.value,
                    priority=priority,
                    expires_at=to_iso(expires_at),
                    created_by=created_by,
                    created_at=to_iso(now),
                    updated_at=to_iso(now),
                )
            )
            command_id = result.inserted_primary_key[0]

        logger.info("Command %d %s queued for %s (priority %d)", command_id, ctype.value, key, priority)
        self.audit.record(
            AuditEventType.COMMAND_CREATED,
            key,
            device_id=device.id,
            data={"command_id": command_id, "command_type": ctype.value, "priority": priority},
            actor_type=ActorType.ADMIN,
            actor_id=created_by,
        )
        return self.require(command_id)

    def cancel(self, command_id: int, actor: Optional[str] = None) -> Command:
        """PENDING -> CANCELLED. Anything already delivered or finished cannot be cancelled."""
        command = self._move(command_id, (CommandStatus.PENDING,), CommandStatus.CANCELLED, {}, None)
        logger.info("Command %d cancelled by %s", command_id, actor or "-")
        self._audit(
            AuditEventType.COMMAND_CANCELLED,
            command,
            {"command_id": command_id},
            ActorType.ADMIN,
            actor,
        )
        return command

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Mark every PENDING command whose expiry is before now as EXPIRED. Returns the count."""
        now_iso = to_iso(now or utcnow())
        expired: dict[tuple[int, str], list[int]] = defaultdict(list)
        with transaction(self.engine) as conn:
            rows = conn.execute(
                select(commands.c.id, commands.c.device_id, devices.c.full_id)
                .select_from(commands.join(devices, commands.c.device_id == devices.c.id))
                .where(commands.c.status == CommandStatus.PENDING.value)
                .where(commands.c.expires_at.is_not(None))
                .where(commands.c.expires_at < now_iso)
            ).fetchall()
            for row in rows:
                result = conn.execute(
                    commands.update()
                    .where(commands.c.id == row.id)
                    .where(commands.c.status == CommandStatus.PENDING.value)
                    .values(status=CommandStatus.EXPIRED.value, updated_at=now_iso)
                )
                if result.rowcount == 1:
                    expired[(row.device_id, row.full_id)].append(row.id)

        total = sum(len(ids) for ids in expired.values())
        if total:
            logger.info("Expired %d pending command(s)", total)
        for (device_id, full_id), ids in expired.items():
            self.audit.record(
                AuditEventType.COMMANDS_EXPIRED,
                full_id,
                device_id=device_id,
                data={"command_ids": ids},
                actor_type=ActorType.SYSTEM,
            )
        return total

    # ------------------------------------------------------------------
    # Device side
    # ------------------------------------------------------------------

    def pending_for(self, device_id: int, now: Optional[datetime] = None) -> list[Command]:
        """Deliver the device's unexpired PENDING commands, most urgent first.

        Order: priority DESC, created_at ASC, id ASC. Each returned command has
        been moved to DELIVERED by this call and will not be returned again.
        """
        now_iso = to_iso(now or utcnow())
        delivered: list[Command] = []
        with transaction(self.engine) as conn:
            rows = conn.execute(
                commands.select()
                .where(commands.c.device_id == device_id)
                .where(commands.c.status == CommandStatus.PENDING.value)
                .where(or_(commands.c.expires_at.is_(None), commands.c.expires_at > now_iso))
                .order_by(commands.c.priority.desc(), commands.c.created_at, commands.c.id)
            ).fetchall()
            for row in rows:
                result = conn.execute(
                    commands.update()
                    .where(commands.c.id == row.id)
                    .where(commands.c.status == CommandStatus.PENDING.value)
                    .values(status=CommandStatus.DELIVERED.value, delivered_at=now_iso, updated_at=now_iso)
                )
                if result.rowcount == 1:
                    command = _row_to_command(row)
                    command.status = CommandStatus.DELIVERED
                    command.delivered_at = now_iso
                    command.updated_at = now_iso
                    delivered.append(command)

        if delivered:
            device = self.devices.get_by_id(device_id)
            logger.info("Delivered %d command(s) to device %d", len(delivered), device_id)
            if device is not None:
                self.audit.record(
                    AuditEventType.COMMAND_DELIVERED,
                    device.full_id,
                    device_id=device_id,
                    data={"command_ids": [c.id for c in delivered]},
                    actor_type=ActorType.SYSTEM,
                )
        return delivered

    def mark_executing(self, command_id: int, device_id: Optional[int] = None) -> Command:
        """DELIVERED -> EXECUTING, reported by the device when it starts work."""
        command = self._move(command_id, (CommandStatus.DELIVERED,), CommandStatus.EXECUTING, {}, device_id)
        logger.info("Command %d executing", command_id)
        return command

    def acknowledge(
        self,
        command_id: int,
        status: Union[CommandStatus, str],
        result: Optional[dict[str, Any]] = None,
        error_message: Optional[str] = None,
        device_id: Optional[int] = None,
    ) -> Command:
        """Record the device's outcome. Only DELIVERED or EXECUTING commands accept one.

        Not idempotent: a second acknowledgment of the same command raises
        InvalidCommandState.
        """
        try:
            outcome = CommandStatus(status)
        except ValueError as exc:
            raise ValidationError("Invalid acknowledgment status", detail=str(status)) from exc
        if outcome not in _ACK_STATUSES:
            raise ValidationError("Invalid acknowledgment status", detail="status must be EXECUTED or FAILED")

        now_iso = to_iso(utcnow())
        values: dict[str, Any] = {"executed_at": now_iso}
        if result is not None:
            values["result"] = json.dumps(result)
        if outcome == CommandStatus.FAILED:
            values["error_message"] = error_message
        command = self._move(command_id, _ACKNOWLEDGEABLE, outcome, values, device_id)

        logger.info("Command %d acknowledged as %s", command_id, outcome.value)
        self._audit(
            AuditEventType.COMMAND_ACKNOWLEDGED,
            command,
            {"command_id": command_id, "status": outcome.value, "error_message": error_message},
            ActorType.DEVICE,
            None,
        )
        return command

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _move(
        self,
        command_id: int,
        sources: tuple[CommandStatus, ...],
        target: CommandStatus,
        values: dict[str, Any],
        device_id: Optional[int],
    ) -> Command:
        """Compare-and-swap a command from one of sources to target."""
        for _ in range(_CAS_ATTEMPTS):
            command = self.get(command_id)
            # A device asking about another device's command learns nothing.
            if command is None or (device_id is not None and command.device_id != device_id):
                raise NotFound("Command not found", detail=str(command_id))
            if command.status not in sources:
                raise InvalidCommandState(
                    f"Command {command_id} is {command.status.value}",
                    detail=f"expected one of: {', '.join(s.value for s in sources)}",
                )
            with transaction(self.engine) as conn:
                swapped = _compare_and_swap(conn, command, target, values)
            if swapped:
                return self.require(command_id)
        raise StoreBusy()

    def _audit(
        self,
        event: AuditEventType,
        command: Command,
        data: dict[str, Any],
        actor_type: ActorType,
        actor: Optional[str],
    ) -> None:
        device = self.devices.get_by_id(command.device_id)
        if device is None:
            return
        self.audit.record(
            event,
            device.full_id,
            device_id=device.id,
            data=data,
            actor_type=actor_type,
            actor_id=device.full_id if actor_type == ActorType.DEVICE else actor,
        )


def _compare_and_swap(conn: Connection, command: Command, target: CommandStatus, values: dict[str, Any]) -> bool:
    result = conn.execute(
        commands.update()
        .where(commands.c.id == command.id)
        .where(commands.c.status == command.status.value)
        .values(status=target.value, updated_at=to_iso(utcnow()), **values)
    )
    return result.rowcount == 1


def _fetch(conn: Connection, command_id: int) -> Optional[Command]:
    row = conn.execute(commands.select().where(commands.c.id == command_id)).fetchone()
    return _row_to_command(row) if row is not None else None


def _row_to_command(row) -> Command:
    return Command(
        id=row.id,
        device_id=row.device_id,
        command_type=CommandType(row.command_type),
        payload=json.loads(row.payload) if row.payload else {},
        status=CommandStatus(row.status),
        priority=row.priority,
        result=json.loads(row.result) if row.result else None,
        error_message=row.error_message,
        expires_at=row.expires_at,
        created_by=row.created_by,
        created_at=row.created_at,
        delivered_at=row.delivered_at,
        executed_at=row.executed_at,
        updated_at=row.updated_at,
    )
