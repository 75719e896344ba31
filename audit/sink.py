"""
audit/sink.py -- Append-only audit log writer.

Every write runs in its own transaction on its own connection, after the
caller's main transaction has finished. A failing audit write therefore never
rolls back or fails the operation it describes: the error is logged with a
traceback and the entry is parked in a bounded in-memory backlog. The backlog
is retried before the next successful write and by flush_pending(), which the
API maintenance loop calls on every sweep.

There is no query surface for reporting; entries_for() exists for diagnostics
and tests only.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from typing import Any, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from core.db import audit_log, to_iso, utcnow
from core.models import ActorType, AuditEntry, AuditEventType

logger = logging.getLogger("mdm.audit")

_BACKLOG_LIMIT = 1000


class AuditSink:
    def __init__(self, engine: Engine, system_actor: str = "mdm-backend") -> None:
        self.engine = engine
        self.system_actor = system_actor
        self._backlog: deque[AuditEntry] = deque(maxlen=_BACKLOG_LIMIT)
        self._lock = threading.Lock()

    def record(
        self,
        event_type: AuditEventType,
        full_id: str,
        *,
        device_id: Optional[int] = None,
        data: Optional[dict[str, Any]] = None,
        source_ip: Optional[str] = None,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
    ) -> bool:
        """Write one audit entry. Returns False (and keeps the entry) if the write failed."""
        entry = AuditEntry(
            full_id=full_id,
            event_type=event_type,
            actor_type=actor_type,
            actor_id=actor_id or self.system_actor,
            device_id=device_id,
            event_data=data or {},
            ip_address=source_ip,
            created_at=to_iso(utcnow()),
        )
        if not self._write(entry):
            return False
        self.flush_pending()
        return True

    def flush_pending(self) -> int:
        """Retry backlogged entries in order. Returns how many were written."""
        written = 0
        while True:
            with self._lock:
                if not self._backlog:
                    return written
                entry = self._backlog.popleft()
            if not self._insert(entry):
                with self._lock:
                    self._backlog.appendleft(entry)
                return written
            written += 1

    @property
    def pending_count(self) -> int:
        return len(self._backlog)

    def entries_for(self, full_id: str) -> list[AuditEntry]:
        """All entries recorded for full_id, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                audit_log.select()
                .where(audit_log.c.full_id == full_id.lower())
                .order_by(audit_log.c.created_at, audit_log.c.id)
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _write(self, entry: AuditEntry) -> bool:
        if self._insert(entry):
            return True
        with self._lock:
            if len(self._backlog) == self._backlog.maxlen:
                dropped = self._backlog[0]
                logger.error(
                    "Audit backlog full, dropping oldest entry %s for %s",
                    dropped.event_type.value,
                    dropped.full_id,
                )
            self._backlog.append(entry)
        return False

    def _insert(self, entry: AuditEntry) -> bool:
        try:
            self._execute_insert(entry)
        except IntegrityError:
            if entry.device_id is None:
                logger.exception("Rejected audit entry %s for %s", entry.event_type.value, entry.full_id)
                return True
            # The device row was deleted in the meantime; keep the fact, drop the link.
            entry.device_id = None
            return self._insert(entry)
        except SQLAlchemyError:
            logger.exception("Failed to write audit entry %s for %s", entry.event_type.value, entry.full_id)
            return False
        return True

    def _execute_insert(self, entry: AuditEntry) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                audit_log.insert().values(
                    device_id=entry.device_id,
                    full_id=entry.full_id.lower(),
                    event_type=entry.event_type.value,
                    event_data=json.dumps(entry.event_data, default=str),
                    ip_address=entry.ip_address,
                    actor_type=entry.actor_type.value,
                    actor_id=entry.actor_id,
                    created_at=entry.created_at,
                )
            )


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        device_id=row.device_id,
        full_id=row.full_id,
        event_type=AuditEventType(row.event_type),
        event_data=json.loads(row.event_data) if row.event_data else {},
        ip_address=row.ip_address,
        actor_type=ActorType(row.actor_type),
        actor_id=row.actor_id,
        created_at=row.created_at,
    )
