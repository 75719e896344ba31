"""
auth/dependencies.py -- FastAPI Depends() helpers for device authentication.

The device bearer token is read in priority order:
  1. X-Push-Token header -- what desktop agents send.
  2. Authorization: Bearer <token> header -- generic HTTP clients.

require_device() resolves the token to an operational Device through the
DeviceStore on app.state and lets the store's MDMError subclasses propagate;
api/main.py renders them. The error wording does not distinguish a malformed
token from an unknown one.

Admin routes are not authenticated in this service. admin_actor() only names
the operator for the audit trail (X-Admin-Id header, else the configured
default).

Layer rule: may import from fastapi, core/ and devices/. Never from api/.
"""

from __future__ import annotations

import ipaddress
from typing import Callable, Optional

from fastapi import Request

from core.errors import ModeDisabled
from core.models import Device

_MAX_ACTOR_LENGTH = 100
_MAX_IP_LENGTH = 45


def _parsed_ip(value: str) -> Optional[str]:
    try:
        parsed = str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None
    # IPv6 zone ids can push an otherwise valid address past the column width.
    return parsed if len(parsed) <= _MAX_IP_LENGTH else None


def client_ip(request: Request) -> Optional[str]:
    """Source address: first X-Forwarded-For hop, then X-Real-IP, then the peer.

    Header values that do not parse as an IP address are ignored. The result
    always fits the 45-character ip_address columns.
    """
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        first = _parsed_ip(forwarded.split(",")[0])
        if first:
            return first
    real_ip = _parsed_ip(request.headers.get("X-Real-IP", ""))
    if real_ip:
        return real_ip
    return request.client.host[:_MAX_IP_LENGTH] if request.client else None


def push_token(request: Request) -> Optional[str]:
    token = request.headers.get("X-Push-Token", "").strip()
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def require_device(request: Request) -> Device:
    """Authenticate the calling device. Raises InvalidToken, TokenExpired, Blocked or NotOperational."""
    return request.app.state.devices.authenticate(push_token(request), client_ip(request))


def admin_actor(request: Request) -> str:
    actor = request.headers.get("X-Admin-Id", "").strip()[:_MAX_ACTOR_LENGTH]
    return actor or request.app.state.settings.default_admin_actor


def require_mode(mode: str) -> Callable[[Request], None]:
    """Dependency factory: 404 mode_disabled unless the deployment runs the given command mode."""

    def _check(request: Request) -> None:
        if request.app.state.settings.command_mode != mode:
            raise ModeDisabled(detail=f"COMMAND_MODE is {request.app.state.settings.command_mode}")

    return _check
