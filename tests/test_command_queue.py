"""Unit tests for commands/queue.py -- creation, delivery, acknowledgment, expiry.

Covers:
- create() rejects unknown / non-operational devices, bad priority, past expiry
- pending_for() orders priority DESC then creation order, e.g. [0,5,5,2] -> 5,5,2,0
- a delivered command is never delivered twice, even to concurrent check-ins
- expired commands are skipped by delivery and swept by expire_stale()
- acknowledge() only from DELIVERED / EXECUTING; not idempotent; owner-scoped
- mark_executing() and cancel() state rules
"""

import threading
from datetime import timedelta

import pytest

from core.db import commands as commands_table
from core.db import to_iso, utcnow
from core.errors import DeviceNotOperational, InvalidCommandState, MDMError, NotFound, StoreBusy, ValidationError
from core.models import AuditEventType, CommandStatus, CommandType
from tests.factories import new_ids, provision


def _expire_now(svc, command_id: int) -> None:
    """Backdate a command's expiry; create() refuses past expiries."""
    with svc.engine.begin() as conn:
        conn.execute(
            commands_table.update()
            .where(commands_table.c.id == command_id)
            .values(expires_at=to_iso(utcnow() - timedelta(seconds=1)))
        )


@pytest.fixture
def device(services):
    """An ACTIVE device. Yields (services, full_id, device_id)."""
    full_id, _ = provision(services, activate=True)
    return services, full_id, services.devices.get(full_id).id


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


class TestCreate:
    def test_new_command_is_pending(self, device):
        svc, full_id, device_id = device
        command = svc.commands.create(
            full_id, CommandType.INSTALL_SOFTWARE, {"package_name": "7zip"}, priority=3, created_by="alice"
        )
        assert command.status == CommandStatus.PENDING
        assert command.device_id == device_id
        assert command.payload == {"package_name": "7zip"}
        assert command.priority == 3
        assert command.created_by == "alice"
        assert command.delivered_at is None
        events = [e.event_type for e in svc.audit.entries_for(full_id)]
        assert events[-1] == AuditEventType.COMMAND_CREATED

    def test_accepts_type_by_name(self, device):
        svc, full_id, _ = device
        assert svc.commands.create(full_id, "LOCK_DEVICE").command_type == CommandType.LOCK_DEVICE

    def test_enrolled_device_accepts_commands(self, services):
        full_id, _ = provision(services)
        assert services.commands.create(full_id, CommandType.COLLECT_INFO).status == CommandStatus.PENDING

    def test_unknown_device(self, services):
        with pytest.raises(NotFound):
            services.commands.create(new_ids()[0], CommandType.COLLECT_INFO)

    @pytest.mark.parametrize("action", ["suspend", "block", "wipe"])
    def test_non_operational_device(self, device, action):
        svc, full_id, _ = device
        getattr(svc.devices, action)(full_id, "alice")
        with pytest.raises(DeviceNotOperational) as exc_info:
            svc.commands.create(full_id, CommandType.COLLECT_INFO)
        assert exc_info.value.status_code == 409

    def test_pending_device(self, services):
        full_id, _ = provision(services, enroll=False)
        with pytest.raises(DeviceNotOperational):
            services.commands.create(full_id, CommandType.COLLECT_INFO)

    @pytest.mark.parametrize("priority", [-1, 11])
    def test_priority_out_of_range(self, device, priority):
        svc, full_id, _ = device
        with pytest.raises(ValidationError):
            svc.commands.create(full_id, CommandType.COLLECT_INFO, priority=priority)

    def test_unknown_type(self, device):
        svc, full_id, _ = device
        with pytest.raises(ValidationError):
            svc.commands.create(full_id, "FORMAT_DISK")

    def test_expiry_in_the_past(self, device):
        svc, full_id, _ = device
        with pytest.raises(ValidationError):
            svc.commands.create(full_id, CommandType.COLLECT_INFO, expires_at=utcnow() - timedelta(minutes=1))


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


class TestDelivery:
    def test_priority_order(self, device):
        svc, full_id, device_id = device
        ids = [svc.commands.create(full_id, CommandType.COLLECT_INFO, priority=p).id for p in (0, 5, 5, 2)]
        delivered = svc.commands.pending_for(device_id)
        assert [c.priority for c in delivered] == [5, 5, 2, 0]
        # Equal priorities keep creation order.
        assert [c.id for c in delivered] == [ids[1], ids[2], ids[3], ids[0]]
        assert all(c.status == CommandStatus.DELIVERED for c in delivered)
        assert all(c.delivered_at for c in delivered)

    def test_never_delivered_twice(self, device):
        svc, full_id, device_id = device
        svc.commands.create(full_id, CommandType.RESTART_DEVICE, {"delay_seconds": 60})
        assert len(svc.commands.pending_for(device_id)) == 1
        assert svc.commands.pending_for(device_id) == []

    def test_delivery_via_check_in(self, services):
        full_id, token = provision(services, activate=True)
        command = services.commands.create(full_id, CommandType.UPDATE_CONFIG, {"config_key": "k", "config_value": 1})
        result = services.devices.check_in(token, None, None, commands=services.commands)
        assert [c.id for c in result.commands] == [command.id]
        assert services.commands.get(command.id).status == CommandStatus.DELIVERED
        assert services.devices.check_in(token, None, None, commands=services.commands).commands == []

    def test_only_own_commands(self, services):
        first, _ = provision(services, activate=True)
        second, _ = provision(services, activate=True)
        services.commands.create(second, CommandType.COLLECT_INFO)
        assert services.commands.pending_for(services.devices.get(first).id) == []

    def test_expired_commands_not_delivered(self, device):
        svc, full_id, device_id = device
        stale = svc.commands.create(full_id, CommandType.COLLECT_INFO, expires_at=utcnow() + timedelta(hours=1))
        fresh = svc.commands.create(full_id, CommandType.COLLECT_INFO, expires_at=utcnow() + timedelta(hours=1))
        _expire_now(svc, stale.id)
        assert [c.id for c in svc.commands.pending_for(device_id)] == [fresh.id]
        assert svc.commands.get(stale.id).status == CommandStatus.PENDING

    def test_delivery_is_audited(self, device):
        svc, full_id, device_id = device
        command = svc.commands.create(full_id, CommandType.COLLECT_INFO)
        svc.commands.pending_for(device_id)
        last = svc.audit.entries_for(full_id)[-1]
        assert last.event_type == AuditEventType.COMMAND_DELIVERED
        assert last.event_data["command_ids"] == [command.id]


# ---------------------------------------------------------------------------
# Acknowledgment and progress
# ---------------------------------------------------------------------------


class TestAcknowledge:
    def _delivered(self, device):
        svc, full_id, device_id = device
        command = svc.commands.create(full_id, CommandType.RUN_SCRIPT, {"script_type": "ps1"})
        svc.commands.pending_for(device_id)
        return command.id

    def test_executed(self, device):
        svc, _, device_id = device
        command_id = self._delivered(device)
        acked = svc.commands.acknowledge(command_id, CommandStatus.EXECUTED, result={"exit_code": 0}, device_id=device_id)
        assert acked.status == CommandStatus.EXECUTED
        assert acked.result == {"exit_code": 0}
        assert acked.executed_at is not None
        assert acked.error_message is None

    def test_failed(self, device):
        svc, _, device_id = device
        command_id = self._delivered(device)
        acked = svc.commands.acknowledge(command_id, "FAILED", error_message="exit 1", device_id=device_id)
        assert acked.status == CommandStatus.FAILED
        assert acked.error_message == "exit 1"
        assert acked.executed_at is not None

    def test_from_executing(self, device):
        svc, _, device_id = device
        command_id = self._delivered(device)
        assert svc.commands.mark_executing(command_id, device_id).status == CommandStatus.EXECUTING
        assert svc.commands.acknowledge(command_id, "EXECUTED", device_id=device_id).status == CommandStatus.EXECUTED

    def test_not_idempotent(self, device):
        svc, _, device_id = device
        command_id = self._delivered(device)
        svc.commands.acknowledge(command_id, "EXECUTED", device_id=device_id)
        with pytest.raises(InvalidCommandState) as exc_info:
            svc.commands.acknowledge(command_id, "EXECUTED", device_id=device_id)
        assert exc_info.value.status_code == 409

    def test_pending_cannot_be_acknowledged(self, device):
        svc, full_id, device_id = device
        command = svc.commands.create(full_id, CommandType.COLLECT_INFO)
        with pytest.raises(InvalidCommandState):
            svc.commands.acknowledge(command.id, "EXECUTED", device_id=device_id)

    def test_unknown_command(self, device):
        svc, _, device_id = device
        with pytest.raises(NotFound):
            svc.commands.acknowledge(9999, "EXECUTED", device_id=device_id)

    def test_other_devices_command_is_not_found(self, device):
        svc, _, _ = device
        command_id = self._delivered(device)
        other_full_id, _ = provision(svc, activate=True)
        with pytest.raises(NotFound):
            svc.commands.acknowledge(command_id, "EXECUTED", device_id=svc.devices.get(other_full_id).id)

    @pytest.mark.parametrize("status", ["PENDING", "CANCELLED", "DONE"])
    def test_invalid_outcome(self, device, status):
        svc, _, device_id = device
        command_id = self._delivered(device)
        with pytest.raises(ValidationError):
            svc.commands.acknowledge(command_id, status, device_id=device_id)

    def test_mark_executing_requires_delivered(self, device):
        svc, full_id, device_id = device
        command = svc.commands.create(full_id, CommandType.COLLECT_INFO)
        with pytest.raises(InvalidCommandState):
            svc.commands.mark_executing(command.id, device_id)


class TestCancel:
    def test_cancel_pending(self, device):
        svc, full_id, device_id = device
        command = svc.commands.create(full_id, CommandType.LOCK_DEVICE, {"message": "locked"})
        assert svc.commands.cancel(command.id, "alice").status == CommandStatus.CANCELLED
        assert svc.commands.pending_for(device_id) == []
        assert svc.audit.entries_for(full_id)[-1].event_type == AuditEventType.COMMAND_CANCELLED

    def test_cannot_cancel_delivered(self, device):
        svc, full_id, device_id = device
        command = svc.commands.create(full_id, CommandType.LOCK_DEVICE)
        svc.commands.pending_for(device_id)
        with pytest.raises(InvalidCommandState):
            svc.commands.cancel(command.id, "alice")

    def test_cancel_unknown(self, services):
        with pytest.raises(NotFound):
            services.commands.cancel(424242, "alice")


# ---------------------------------------------------------------------------
# Expiry sweep
# ---------------------------------------------------------------------------


def test_expire_stale_mixed_batch(device):
    svc, full_id, device_id = device
    future = utcnow() + timedelta(hours=1)
    delivered = svc.commands.create(full_id, CommandType.COLLECT_INFO, expires_at=future)
    svc.commands.pending_for(device_id)
    _expire_now(svc, delivered.id)

    overdue = svc.commands.create(full_id, CommandType.COLLECT_INFO, expires_at=future)
    not_yet = svc.commands.create(full_id, CommandType.COLLECT_INFO, expires_at=future)
    no_expiry = svc.commands.create(full_id, CommandType.COLLECT_INFO)
    _expire_now(svc, overdue.id)

    assert svc.commands.expire_stale() == 1
    assert svc.commands.get(overdue.id).status == CommandStatus.EXPIRED
    assert svc.commands.get(delivered.id).status == CommandStatus.DELIVERED
    assert svc.commands.get(not_yet.id).status == CommandStatus.PENDING
    assert svc.commands.get(no_expiry.id).status == CommandStatus.PENDING
    assert svc.commands.expire_stale() == 0

    last = svc.audit.entries_for(full_id)[-1]
    assert last.event_type == AuditEventType.COMMANDS_EXPIRED
    assert last.event_data["command_ids"] == [overdue.id]
    # An expired command is terminal: it cannot be delivered, cancelled or acknowledged.
    assert [c.id for c in svc.commands.pending_for(device_id)] == [not_yet.id, no_expiry.id]
    with pytest.raises(InvalidCommandState):
        svc.commands.cancel(overdue.id, "alice")


def test_list_for_device_newest_first(device):
    svc, full_id, _ = device
    ids = [svc.commands.create(full_id, CommandType.COLLECT_INFO).id for _ in range(3)]
    assert [c.id for c in svc.commands.list_for_device(full_id)] == list(reversed(ids))


def test_concurrent_delivery_never_duplicates(file_services):
    svc = file_services
    full_id, _ = provision(svc, activate=True)
    device_id = svc.devices.get(full_id).id
    created = {svc.commands.create(full_id, CommandType.COLLECT_INFO, priority=p).id for p in (0, 5, 5, 2)}
    barrier = threading.Barrier(6)
    delivered, errors = [], []

    def poll():
        barrier.wait()
        try:
            delivered.extend(c.id for c in svc.commands.pending_for(device_id))
        except MDMError as exc:
            errors.append(exc)

    threads = [threading.Thread(target=poll) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(isinstance(e, StoreBusy) for e in errors)
    assert len(delivered) == len(set(delivered))
    # A poll that gave up rolled back, so whatever it held is still PENDING.
    remaining = [c.id for c in svc.commands.pending_for(device_id)]
    assert set(delivered).isdisjoint(remaining)
    assert set(delivered) | set(remaining) == created
    assert all(svc.commands.get(i).status == CommandStatus.DELIVERED for i in created)
