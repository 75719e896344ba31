"""
api/routes/v1/whitelist.py -- Whitelist administration (whitelist mode only).

Routes (mounted under /admin):
  POST  /whitelist              -- publish the global fallback whitelist
  POST  /whitelist/{fulluuid}   -- publish a device's whitelist
  GET   /whitelist/{fulluuid}   -- what the device would receive right now

Publishing appends a row; the newest row wins.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from api.models import WhitelistEntry, WhitelistResponse, WhitelistUpdate
from auth.dependencies import admin_actor, require_mode
from commands.whitelist import WhitelistStore
from devices.store import DeviceStore

router = APIRouter(dependencies=[Depends(require_mode("whitelist"))])


def _publish(request: Request, fulluuid: Optional[str], body: WhitelistUpdate, actor: str) -> WhitelistResponse:
    store: WhitelistStore = request.app.state.whitelists
    entries = store.replace(fulluuid, [e.model_dump() for e in body.commands], created_by=actor)
    return WhitelistResponse(commands=[WhitelistEntry(**e) for e in entries])


@router.post("/whitelist", response_model=WhitelistResponse, status_code=201)
def publish_global(request: Request, body: WhitelistUpdate, actor: str = Depends(admin_actor)) -> WhitelistResponse:
    return _publish(request, None, body, actor)


@router.post("/whitelist/{fulluuid}", response_model=WhitelistResponse, status_code=201)
def publish_for_device(
    request: Request,
    fulluuid: str,
    body: WhitelistUpdate,
    actor: str = Depends(admin_actor),
) -> WhitelistResponse:
    return _publish(request, fulluuid, body, actor)


@router.get("/whitelist/{fulluuid}", response_model=WhitelistResponse)
def current_whitelist(request: Request, fulluuid: str) -> WhitelistResponse:
    devices: DeviceStore = request.app.state.devices
    store: WhitelistStore = request.app.state.whitelists
    device = devices.require(fulluuid)
    return WhitelistResponse(commands=[WhitelistEntry(**e) for e in store.current_for(device.id)])
