"""Unit tests for audit/sink.py -- append-only writes that never fail their caller.

Covers:
- record() writes one row with actor, IP and JSON data
- a failing write is logged, parked in the backlog, and never raised
- the operation that triggered the audit still succeeds
- flush_pending() drains the backlog once writes work again
- an entry whose device row disappeared is kept without the link
"""

import logging
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from audit.sink import AuditSink
from core.models import ActorType, AuditEntry, AuditEventType, DeviceStatus
from tests.factories import new_ids, provision

FULL_ID = "1b4e28ba-2fa1-11d2-883f-0016d3cca427"


def _broken_insert(*args, **kwargs):
    raise OperationalError("INSERT INTO device_audit_log", {}, Exception("disk I/O error"))


def test_record_writes_row(services):
    assert services.audit.record(
        AuditEventType.ENROLLMENT_ATTEMPT,
        FULL_ID.upper(),
        data={"short_id": "ABCDEFGHIJKLMNO"},
        source_ip="10.1.2.3",
        actor_type=ActorType.DEVICE,
        actor_id=FULL_ID,
    )
    [entry] = services.audit.entries_for(FULL_ID)
    assert entry.full_id == FULL_ID
    assert entry.device_id is None
    assert entry.event_data == {"short_id": "ABCDEFGHIJKLMNO"}
    assert entry.ip_address == "10.1.2.3"
    assert entry.actor_type == ActorType.DEVICE
    assert entry.created_at


def test_system_actor_is_default(services):
    services.audit.record(AuditEventType.COMMANDS_EXPIRED, FULL_ID)
    [entry] = services.audit.entries_for(FULL_ID)
    assert entry.actor_type == ActorType.SYSTEM
    assert entry.actor_id == "mdm-backend"


def test_failed_write_is_logged_not_raised(services, caplog):
    with patch.object(AuditSink, "_execute_insert", side_effect=_broken_insert):
        with caplog.at_level(logging.ERROR, logger="mdm.audit"):
            assert services.audit.record(AuditEventType.CHECK_IN, FULL_ID) is False
    assert "Failed to write audit entry" in caplog.text
    assert services.audit.pending_count == 1
    assert services.audit.entries_for(FULL_ID) == []


def test_operation_succeeds_when_audit_is_down(services):
    full_id, short_id = new_ids()
    with patch.object(AuditSink, "_execute_insert", side_effect=_broken_insert):
        device = services.devices.create(full_id, short_id, created_by="alice")
        result = services.devices.register(full_id, short_id)
    assert device.status == DeviceStatus.PENDING_ENROLLMENT
    assert result.token is not None
    assert services.devices.get(full_id).status == DeviceStatus.ENROLLED
    assert services.audit.pending_count == 4  # created, attempt, success, token issued


def test_backlog_flushed_in_order(services):
    with patch.object(AuditSink, "_execute_insert", side_effect=_broken_insert):
        services.audit.record(AuditEventType.CHECK_IN, FULL_ID)
        services.audit.record(AuditEventType.FIRST_CHECK_IN, FULL_ID)
    assert services.audit.flush_pending() == 2
    assert services.audit.pending_count == 0
    assert [e.event_type for e in services.audit.entries_for(FULL_ID)] == [
        AuditEventType.CHECK_IN,
        AuditEventType.FIRST_CHECK_IN,
    ]


def test_next_successful_write_drains_backlog(services):
    with patch.object(AuditSink, "_execute_insert", side_effect=_broken_insert):
        services.audit.record(AuditEventType.CHECK_IN, FULL_ID)
    services.audit.record(AuditEventType.TOKEN_EXPIRED, FULL_ID)
    assert services.audit.pending_count == 0
    assert len(services.audit.entries_for(FULL_ID)) == 2


def test_backlog_is_bounded(services):
    services.audit._backlog = type(services.audit._backlog)(maxlen=2)
    with patch.object(AuditSink, "_execute_insert", side_effect=_broken_insert):
        for _ in range(5):
            services.audit.record(AuditEventType.CHECK_IN, FULL_ID)
    assert services.audit.pending_count == 2


def test_dangling_device_link_is_dropped(services):
    full_id, _ = provision(services)
    device = services.devices.get(full_id)
    services.devices.delete(full_id, "alice")
    entry = AuditEntry(
        full_id=full_id,
        event_type=AuditEventType.CHECK_IN,
        actor_type=ActorType.DEVICE,
        actor_id=full_id,
        device_id=device.id,
        created_at="2025-01-01T00:00:00.000000+00:00",
    )
    assert services.audit._insert(entry) is True
    stored = [e for e in services.audit.entries_for(full_id) if e.event_type == AuditEventType.CHECK_IN]
    assert stored[0].device_id is None
