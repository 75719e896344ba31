"""
API request and response models for the MDM REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire names: device agents speak fulluuid / uuid15 / pushToken / isActive.
Response fields that differ from their Python name carry a serialization_alias;
FastAPI serializes response models by alias, so handlers keep snake_case.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.models import FULL_ID_PATTERN, MAX_PRIORITY, MIN_PRIORITY, SHORT_ID_LENGTH, CommandType, DeviceStatus

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AckStatusEnum(str, Enum):
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"


# ---------------------------------------------------------------------------
# Device-facing requests
# ---------------------------------------------------------------------------


class DeviceMetadataIn(BaseModel):
    """Optional self-reported host facts. Omitted fields leave stored values unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    computer_name: Optional[str] = Field(default=None, max_length=255)
    os_name: Optional[str] = Field(default=None, max_length=100)
    os_version: Optional[str] = Field(default=None, max_length=50)


class RegisterRequest(DeviceMetadataIn):
    """Request body for POST /desktopmdm/register."""

    fulluuid: str = Field(pattern=FULL_ID_PATTERN, description="Canonical device UUID.")
    uuid15: str = Field(min_length=SHORT_ID_LENGTH, max_length=SHORT_ID_LENGTH)


class AcknowledgeRequest(BaseModel):
    """Request body for POST /desktopmdm/acknowledge."""

    command_id: int = Field(ge=1)
    status: AckStatusEnum
    result: Optional[dict[str, Any]] = None
    error_message: Optional[str] = Field(default=None, max_length=2000)


# ---------------------------------------------------------------------------
# Device-facing responses
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str


class RegisterResponse(BaseModel):
    """pushToken is present only on first enrollment."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str
    push_token: Optional[str] = Field(default=None, serialization_alias="pushToken")
    expires_at: Optional[str] = None


class CommandItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    type: CommandType
    payload: dict[str, Any]
    priority: int
    expires_at: Optional[str] = None


class CheckInResponse(BaseModel):
    """Response for GET|POST /desktopmdm/status."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    status: DeviceStatus
    is_active: bool = Field(serialization_alias="isActive")
    last_check_in: Optional[str] = None
    token_expires_at: Optional[str] = None
    poll_interval_seconds: int
    commands: list[CommandItem] = []


class WhitelistEntry(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    user: str = Field(min_length=1, max_length=255)
    apps: list[str] = []
    urls: list[str] = []


class WhitelistResponse(BaseModel):
    """Entries travel under the "commands" key, which is what agents read."""

    success: bool = True
    commands: list[WhitelistEntry]


# ---------------------------------------------------------------------------
# Admin requests
# ---------------------------------------------------------------------------


class DeviceCreate(BaseModel):
    """Request body for POST /admin/devices."""

    model_config = ConfigDict(str_strip_whitespace=True)

    fulluuid: str = Field(pattern=FULL_ID_PATTERN)
    uuid15: str = Field(min_length=SHORT_ID_LENGTH, max_length=SHORT_ID_LENGTH)
    notes: Optional[str] = Field(default=None, max_length=1000)


class StatusChange(BaseModel):
    """Optional body for the admin lifecycle actions."""

    reason: Optional[str] = Field(default=None, max_length=500)


class CommandCreate(BaseModel):
    """Request body for POST /admin/commands."""

    device_fulluuid: str = Field(pattern=FULL_ID_PATTERN)
    command_type: CommandType
    payload: dict[str, Any] = {}
    priority: int = Field(default=0, ge=MIN_PRIORITY, le=MAX_PRIORITY)
    expires_at: Optional[datetime] = None


class WhitelistUpdate(BaseModel):
    """Request body for POST /admin/whitelist[/{fulluuid}]."""

    commands: list[WhitelistEntry]


# ---------------------------------------------------------------------------
# Admin responses
# ---------------------------------------------------------------------------


class DeviceResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    fulluuid: str
    uuid15: str
    status: DeviceStatus
    is_active: bool
    computer_name: Optional[str] = None
    os_name: Optional[str] = None
    os_version: Optional[str] = None
    ip_address: Optional[str] = None
    token_issued_at: Optional[str] = None
    token_expires_at: Optional[str] = None
    created_at: str
    enrolled_at: Optional[str] = None
    last_check_in: Optional[str] = None
    updated_at: str
    created_by: Optional[str] = None
    notes: Optional[str] = None


class DeviceStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    by_status: dict[str, int]


class CommandResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    device_id: int
    command_type: CommandType
    payload: dict[str, Any]
    status: str
    priority: int
    result: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    expires_at: Optional[str] = None
    created_by: Optional[str] = None
    created_at: str
    delivered_at: Optional[str] = None
    executed_at: Optional[str] = None
    updated_at: str


class ExpireResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    expired: int


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    success: bool = False
    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = {}
