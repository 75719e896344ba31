"""
api/routes/v1/admin_devices.py -- Device provisioning and lifecycle routes.

Routes (mounted under /admin, in registration order to avoid path capture):
  POST    /devices                         -- pre-provision a device
  GET     /devices                         -- list, optional ?status=
  GET     /devices/stats                   -- counts per status
  GET     /devices/stale                   -- ACTIVE devices silent for ?minutes=
  GET     /devices/{fulluuid}              -- detail
  POST    /devices/{fulluuid}/suspend
  POST    /devices/{fulluuid}/reactivate
  POST    /devices/{fulluuid}/block
  POST    /devices/{fulluuid}/wipe
  DELETE  /devices/{fulluuid}              -- remove with cascade

The acting operator comes from X-Admin-Id (see auth.dependencies.admin_actor).
"""

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import DeviceCreate, DeviceResponse, DeviceStats, MessageResponse, StatusChange
from auth.dependencies import admin_actor
from core.db import utcnow
from core.models import Device, DeviceStatus
from devices.store import DeviceStore

router = APIRouter()


def device_response(device: Device) -> DeviceResponse:
    return DeviceResponse(
        id=device.id,
        fulluuid=device.full_id,
        uuid15=device.short_id,
        status=device.status,
        is_active=device.is_active,
        computer_name=device.computer_name,
        os_name=device.os_name,
        os_version=device.os_version,
        ip_address=device.ip_address,
        token_issued_at=device.token_issued_at,
        token_expires_at=device.token_expires_at,
        created_at=device.created_at,
        enrolled_at=device.enrolled_at,
        last_check_in=device.last_check_in,
        updated_at=device.updated_at,
        created_by=device.created_by,
        notes=device.notes,
    )


@router.post("/devices", response_model=DeviceResponse, status_code=201)
def create_device(request: Request, body: DeviceCreate, actor: str = Depends(admin_actor)) -> DeviceResponse:
    store: DeviceStore = request.app.state.devices
    device = store.create(body.fulluuid, body.uuid15, created_by=actor, notes=body.notes)
    return device_response(device)


@router.get("/devices", response_model=list[DeviceResponse])
def list_devices(request: Request, status: Optional[DeviceStatus] = None) -> list[DeviceResponse]:
    store: DeviceStore = request.app.state.devices
    return [device_response(d) for d in store.list_devices(status)]


@router.get("/devices/stats", response_model=DeviceStats)
def device_stats(request: Request) -> DeviceStats:
    store: DeviceStore = request.app.state.devices
    counts = store.count_by_status()
    return DeviceStats(total=sum(counts.values()), by_status=counts)


@router.get("/devices/stale", response_model=list[DeviceResponse])
def stale_devices(
    request: Request,
    minutes: Optional[int] = Query(default=None, ge=1, le=60 * 24 * 365),
) -> list[DeviceResponse]:
    """ACTIVE devices that have not checked in for `minutes` (default STALE_AFTER_MINUTES)."""
    store: DeviceStore = request.app.state.devices
    window = minutes or request.app.state.settings.stale_after_minutes
    return [device_response(d) for d in store.list_stale(utcnow() - timedelta(minutes=window))]


@router.get("/devices/{fulluuid}", response_model=DeviceResponse)
def get_device(request: Request, fulluuid: str) -> DeviceResponse:
    store: DeviceStore = request.app.state.devices
    return device_response(store.require(fulluuid))


# ---------------------------------------------------------------------------
# Lifecycle actions
# ---------------------------------------------------------------------------


@router.post("/devices/{fulluuid}/suspend", response_model=DeviceResponse)
def suspend_device(
    request: Request,
    fulluuid: str,
    body: Optional[StatusChange] = None,
    actor: str = Depends(admin_actor),
) -> DeviceResponse:
    store: DeviceStore = request.app.state.devices
    return device_response(store.suspend(fulluuid, actor, body.reason if body else None))


@router.post("/devices/{fulluuid}/reactivate", response_model=DeviceResponse)
def reactivate_device(
    request: Request,
    fulluuid: str,
    body: Optional[StatusChange] = None,
    actor: str = Depends(admin_actor),
) -> DeviceResponse:
    store: DeviceStore = request.app.state.devices
    return device_response(store.reactivate(fulluuid, actor, body.reason if body else None))


@router.post("/devices/{fulluuid}/block", response_model=DeviceResponse)
def block_device(
    request: Request,
    fulluuid: str,
    body: Optional[StatusChange] = None,
    actor: str = Depends(admin_actor),
) -> DeviceResponse:
    store: DeviceStore = request.app.state.devices
    return device_response(store.block(fulluuid, actor, body.reason if body else None))


@router.post("/devices/{fulluuid}/wipe", response_model=DeviceResponse)
def wipe_device(
    request: Request,
    fulluuid: str,
    body: Optional[StatusChange] = None,
    actor: str = Depends(admin_actor),
) -> DeviceResponse:
    """Irreversible. The device's token stops working immediately."""
    store: DeviceStore = request.app.state.devices
    return device_response(store.wipe(fulluuid, actor, body.reason if body else None))


@router.delete("/devices/{fulluuid}", response_model=MessageResponse)
def delete_device(request: Request, fulluuid: str, actor: str = Depends(admin_actor)) -> MessageResponse:
    store: DeviceStore = request.app.state.devices
    store.delete(fulluuid, actor)
    return MessageResponse(message=f"Device {fulluuid.lower()} deleted")
