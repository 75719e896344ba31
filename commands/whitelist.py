"""
commands/whitelist.py -- Latest-wins whitelist rows for COMMAND_MODE=whitelist.

A deployment in whitelist mode has no command lifecycle: the administrator
appends a new whitelist row and every later fetch returns the newest one.
Rows without a device are the system-wide fallback used by any device that
has no whitelist of its own.

Entry shape (stored as a JSON array):
    {"user": "alice", "apps": ["firefox"], "urls": ["https://intranet"]}
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from sqlalchemy.engine import Engine

from audit.sink import AuditSink
from core.db import to_iso, transaction, utcnow, whitelists
from core.errors import ValidationError
from core.models import ActorType, AuditEventType, Device
from devices.store import DeviceStore

logger = logging.getLogger("mdm.commands")

GLOBAL_SCOPE = "global"


def _normalize_entries(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
    normalized = []
    for entry in entries:
        user = entry.get("user")
        if not isinstance(user, str) or not user:
            raise ValidationError("Invalid whitelist entry", detail="every entry needs a non-empty 'user'")
        normalized.append(
            {
                "user": user,
                "apps": [str(a) for a in entry.get("apps") or []],
                "urls": [str(u) for u in entry.get("urls") or []],
            }
        )
    return normalized


class WhitelistStore:
    def __init__(self, engine: Engine, devices: DeviceStore, audit: AuditSink) -> None:
        self.engine = engine
        self.devices = devices
        self.audit = audit

    def replace(
        self,
        full_id: Optional[str],
        entries: list[dict[str, Any]],
        created_by: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Publish a new whitelist for one device, or the global fallback when full_id is None."""
        normalized = _normalize_entries(entries)
        device: Optional[Device] = self.devices.require(full_id) if full_id is not None else None
        with transaction(self.engine) as conn:
            conn.execute(
                whitelists.insert().values(
                    device_id=device.id if device else None,
                    entries=json.dumps(normalized),
                    created_by=created_by,
                    created_at=to_iso(utcnow()),
                )
            )
        scope = device.full_id if device else GLOBAL_SCOPE
        logger.info("Whitelist for %s replaced by %s (%d entries)", scope, created_by or "-", len(normalized))
        self.audit.record(
            AuditEventType.WHITELIST_UPDATED,
            scope,
            device_id=device.id if device else None,
            data={"entries": len(normalized)},
            actor_type=ActorType.ADMIN,
            actor_id=created_by,
        )
        return normalized

    def current_for(self, device_id: Optional[int]) -> list[dict[str, Any]]:
        """The device's newest whitelist, else the newest global one, else []."""
        with self.engine.connect() as conn:
            row = None
            if device_id is not None:
                row = conn.execute(
                    whitelists.select()
                    .where(whitelists.c.device_id == device_id)
                    .order_by(whitelists.c.created_at.desc(), whitelists.c.id.desc())
                    .limit(1)
                ).fetchone()
            if row is None:
                row = conn.execute(
                    whitelists.select()
                    .where(whitelists.c.device_id.is_(None))
                    .order_by(whitelists.c.created_at.desc(), whitelists.c.id.desc())
                    .limit(1)
                ).fetchone()
        return json.loads(row.entries) if row is not None else []

    def fetch_for_device(self, device: Device, source_ip: Optional[str] = None) -> list[dict[str, Any]]:
        """current_for() plus the WHITELIST_FETCHED audit entry for a device-initiated fetch."""
        entries = self.current_for(device.id)
        self.audit.record(
            AuditEventType.WHITELIST_FETCHED,
            device.full_id,
            device_id=device.id,
            data={"entries": len(entries)},
            source_ip=source_ip,
            actor_type=ActorType.DEVICE,
            actor_id=device.full_id,
        )
        return entries
