"""
api/routes/v1/devices.py -- Device-agent protocol routes.

Routes (mounted under /desktopmdm):
  POST      /register                  -- enroll, returns pushToken once
  GET|POST  /status                    -- check-in, returns pending commands
  POST      /acknowledge               -- report a command outcome      (queue mode)
  POST      /commands/{id}/executing   -- report a command as started   (queue mode)
  GET       /getwhitelist              -- fetch the current whitelist   (whitelist mode)

Every route except /register authenticates with the X-Push-Token header.
Failures are raised as MDMError subclasses and rendered by api/main.py.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from api.models import (
    AcknowledgeRequest,
    CheckInResponse,
    CommandItem,
    DeviceMetadataIn,
    MessageResponse,
    RegisterRequest,
    RegisterResponse,
    WhitelistEntry,
    WhitelistResponse,
)
from auth.dependencies import client_ip, push_token, require_device, require_mode
from commands.queue import CommandQueue
from commands.whitelist import WhitelistStore
from core.models import Device, DeviceMetadata
from devices.store import DeviceStore

router = APIRouter()


def _metadata(body: Optional[DeviceMetadataIn]) -> DeviceMetadata:
    if body is None:
        return DeviceMetadata()
    return DeviceMetadata(computer_name=body.computer_name, os_name=body.os_name, os_version=body.os_version)


# ---------------------------------------------------------------------------
# POST /register -- enrollment
# ---------------------------------------------------------------------------


@router.post("/register", response_model=RegisterResponse, response_model_exclude_none=True)
def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Enroll a pre-provisioned device.

    The plaintext pushToken is in the response only the first time. A repeat
    call for an enrolled device succeeds without one.
    """
    store: DeviceStore = request.app.state.devices
    result = store.register(body.fulluuid, body.uuid15, _metadata(body), client_ip(request))
    message = "Device enrolled" if result.newly_enrolled else "Device already enrolled"
    return RegisterResponse(message=message, push_token=result.token, expires_at=result.expires_at)


# ---------------------------------------------------------------------------
# GET|POST /status -- check-in
# ---------------------------------------------------------------------------


@router.api_route("/status", methods=["GET", "POST"], response_model=CheckInResponse)
def check_in(request: Request, body: Optional[DeviceMetadataIn] = None) -> CheckInResponse:
    """Heartbeat. Refreshes metadata and returns the commands queued since the last call."""
    settings = request.app.state.settings
    store: DeviceStore = request.app.state.devices
    queue: Optional[CommandQueue] = request.app.state.commands if settings.command_mode == "queue" else None
    result = store.check_in(push_token(request), _metadata(body), client_ip(request), commands=queue)
    device = result.device
    return CheckInResponse(
        status=device.status,
        is_active=device.is_active,
        last_check_in=device.last_check_in,
        token_expires_at=device.token_expires_at,
        poll_interval_seconds=settings.poll_interval_seconds,
        commands=[
            CommandItem(
                id=c.id,
                type=c.command_type,
                payload=c.payload,
                priority=c.priority,
                expires_at=c.expires_at,
            )
            for c in result.commands
        ],
    )


# ---------------------------------------------------------------------------
# Command outcome reporting (queue mode)
# ---------------------------------------------------------------------------


@router.post("/acknowledge", response_model=MessageResponse, dependencies=[Depends(require_mode("queue"))])
def acknowledge(
    request: Request,
    body: AcknowledgeRequest,
    device: Device = Depends(require_device),
) -> MessageResponse:
    queue: CommandQueue = request.app.state.commands
    command = queue.acknowledge(
        body.command_id,
        body.status.value,
        result=body.result,
        error_message=body.error_message,
        device_id=device.id,
    )
    return MessageResponse(message=f"Command {command.id} marked {command.status.value}")


@router.post(
    "/commands/{command_id}/executing",
    response_model=MessageResponse,
    dependencies=[Depends(require_mode("queue"))],
)
def mark_executing(
    request: Request,
    command_id: int,
    device: Device = Depends(require_device),
) -> MessageResponse:
    queue: CommandQueue = request.app.state.commands
    command = queue.mark_executing(command_id, device_id=device.id)
    return MessageResponse(message=f"Command {command.id} marked {command.status.value}")


# ---------------------------------------------------------------------------
# GET /getwhitelist (whitelist mode)
# ---------------------------------------------------------------------------


@router.get("/getwhitelist", response_model=WhitelistResponse, dependencies=[Depends(require_mode("whitelist"))])
def get_whitelist(request: Request, device: Device = Depends(require_device)) -> WhitelistResponse:
    store: WhitelistStore = request.app.state.whitelists
    entries = store.fetch_for_device(device, client_ip(request))
    return WhitelistResponse(commands=[WhitelistEntry(**e) for e in entries])
