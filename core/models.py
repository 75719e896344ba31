"""
core/models.py -- Domain enums and dataclasses for the MDM backend.

Pure data containers. The rules that move a device or a command between states
live in core/lifecycle.py, devices/store.py, and commands/queue.py. Timestamps
are ISO 8601 UTC strings, the same representation the stores persist.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

# Canonical device identity. Stored lowercase.
FULL_ID_PATTERN = r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
SHORT_ID_LENGTH = 15

MIN_PRIORITY = 0
MAX_PRIORITY = 10


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class DeviceStatus(str, Enum):
    PENDING_ENROLLMENT = "PENDING_ENROLLMENT"
    ENROLLED = "ENROLLED"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    BLOCKED = "BLOCKED"
    WIPED = "WIPED"


class CommandStatus(str, Enum):
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    EXECUTING = "EXECUTING"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


TERMINAL_COMMAND_STATUSES = frozenset(
    {CommandStatus.EXECUTED, CommandStatus.FAILED, CommandStatus.CANCELLED, CommandStatus.EXPIRED}
)


class CommandType(str, Enum):
    GET_WHITELIST = "GET_WHITELIST"  # payload: {whitelist: [{user, apps, urls}]}
    UPDATE_POLICY = "UPDATE_POLICY"  # payload: {policy_name, settings}
    INSTALL_SOFTWARE = "INSTALL_SOFTWARE"  # payload: {package_name, version, download_url}
    UNINSTALL_SOFTWARE = "UNINSTALL_SOFTWARE"  # payload: {package_name}
    REMOTE_WIPE = "REMOTE_WIPE"  # payload: {wipe_type, preserve_data}
    RESTART_DEVICE = "RESTART_DEVICE"  # payload: {delay_seconds}
    LOCK_DEVICE = "LOCK_DEVICE"  # payload: {message, unlock_code}
    UNLOCK_DEVICE = "UNLOCK_DEVICE"  # payload: {unlock_code}
    COLLECT_INFO = "COLLECT_INFO"  # payload: {info_types}
    RUN_SCRIPT = "RUN_SCRIPT"  # payload: {script_type, script_content, args}
    UPDATE_CONFIG = "UPDATE_CONFIG"  # payload: {config_key, config_value}


class AuditEventType(str, Enum):
    # Device lifecycle
    DEVICE_CREATED = "DEVICE_CREATED"
    DEVICE_DELETED = "DEVICE_DELETED"

    # Enrollment
    ENROLLMENT_ATTEMPT = "ENROLLMENT_ATTEMPT"
    ENROLLMENT_SUCCESS = "ENROLLMENT_SUCCESS"
    ENROLLMENT_FAILED = "ENROLLMENT_FAILED"
    ENROLLMENT_BLOCKED = "ENROLLMENT_BLOCKED"
    RE_ENROLLMENT = "RE_ENROLLMENT"

    # Check-in
    CHECK_IN = "CHECK_IN"
    FIRST_CHECK_IN = "FIRST_CHECK_IN"
    CHECK_IN_REJECTED = "CHECK_IN_REJECTED"

    # Tokens
    TOKEN_ISSUED = "TOKEN_ISSUED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"

    # Admin status changes
    STATUS_CHANGED = "STATUS_CHANGED"
    DEVICE_SUSPENDED = "DEVICE_SUSPENDED"
    DEVICE_REACTIVATED = "DEVICE_REACTIVATED"
    DEVICE_BLOCKED = "DEVICE_BLOCKED"
    DEVICE_WIPED = "DEVICE_WIPED"

    # Commands
    COMMAND_CREATED = "COMMAND_CREATED"
    COMMAND_DELIVERED = "COMMAND_DELIVERED"
    COMMAND_ACKNOWLEDGED = "COMMAND_ACKNOWLEDGED"
    COMMAND_CANCELLED = "COMMAND_CANCELLED"
    COMMANDS_EXPIRED = "COMMANDS_EXPIRED"

    # Whitelist mode
    WHITELIST_UPDATED = "WHITELIST_UPDATED"
    WHITELIST_FETCHED = "WHITELIST_FETCHED"


class ActorType(str, Enum):
    DEVICE = "DEVICE"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass
class DeviceMetadata:
    """Mutable facts a device reports about itself. None means "not reported"."""

    computer_name: Optional[str] = None
    os_name: Optional[str] = None
    os_version: Optional[str] = None


@dataclass
class Device:
    """A managed desktop endpoint.

    full_id and short_id are set at pre-provisioning and never change.
    token_hash is the SHA-256 hex digest of the bearer token; the plaintext is
    never stored. It is None before first enrollment and after a wipe.

    id is None before the record is written to the database.
    """

    full_id: str
    short_id: str
    status: DeviceStatus = DeviceStatus.PENDING_ENROLLMENT
    id: Optional[int] = None
    is_active: bool = False
    computer_name: Optional[str] = None
    os_name: Optional[str] = None
    os_version: Optional[str] = None
    ip_address: Optional[str] = None
    token_hash: Optional[str] = None
    token_issued_at: Optional[str] = None
    token_expires_at: Optional[str] = None
    created_at: str = ""
    enrolled_at: Optional[str] = None
    last_check_in: Optional[str] = None
    updated_at: str = ""
    created_by: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_blocked(self) -> bool:
        return self.status == DeviceStatus.BLOCKED

    @property
    def is_operational(self) -> bool:
        return self.status in (DeviceStatus.ENROLLED, DeviceStatus.ACTIVE)


@dataclass
class Command:
    """A unit of work queued for exactly one device."""

    device_id: int
    command_type: CommandType
    payload: dict[str, Any] = field(default_factory=dict)
    status: CommandStatus = CommandStatus.PENDING
    priority: int = 0
    id: Optional[int] = None
    result: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    expires_at: Optional[str] = None
    created_by: Optional[str] = None
    created_at: str = ""
    delivered_at: Optional[str] = None
    executed_at: Optional[str] = None
    updated_at: str = ""


@dataclass
class AuditEntry:
    """One immutable audit fact. device_id is None when no device row resolves."""

    full_id: str
    event_type: AuditEventType
    actor_type: ActorType
    actor_id: str
    device_id: Optional[int] = None
    event_data: dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    id: Optional[int] = None
    created_at: str = ""


@dataclass
class RegistrationResult:
    """Outcome of a successful register call.

    token is the plaintext bearer token on first enrollment only. On an
    idempotent re-registration it is None: the device must keep using the
    token it received the first time.
    """

    device: Device
    token: Optional[str]
    expires_at: Optional[str]
    newly_enrolled: bool


@dataclass
class CheckInResult:
    device: Device
    commands: list[Command] = field(default_factory=list)
    first_check_in: bool = False
