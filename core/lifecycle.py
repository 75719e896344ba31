"""
core/lifecycle.py -- Device status workflow.

Each administrative or protocol action owns exactly one edge set. An action is
allowed only from the states listed for it; everything else is rejected with
InvalidTransition. block and wipe are idempotent when the device already sits
in their target state. WIPED has no outgoing edges.

The stores apply a planned transition with a compare-and-swap UPDATE
(WHERE status = <the state this plan was computed from>), so a plan is only
ever applied to the state it was validated against.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from core.errors import InvalidTransition
from core.models import DeviceStatus


class DeviceAction(str, Enum):
    ENROLL = "enroll"
    ACTIVATE = "activate"
    SUSPEND = "suspend"
    REACTIVATE = "reactivate"
    BLOCK = "block"
    WIPE = "wipe"


_S = DeviceStatus

# action -> (allowed source states, target state)
TRANSITIONS: dict[DeviceAction, tuple[frozenset[DeviceStatus], DeviceStatus]] = {
    DeviceAction.ENROLL: (frozenset({_S.PENDING_ENROLLMENT}), _S.ENROLLED),
    DeviceAction.ACTIVATE: (frozenset({_S.ENROLLED}), _S.ACTIVE),
    DeviceAction.SUSPEND: (frozenset({_S.ENROLLED, _S.ACTIVE}), _S.SUSPENDED),
    DeviceAction.REACTIVATE: (frozenset({_S.SUSPENDED}), _S.ENROLLED),
    DeviceAction.BLOCK: (
        frozenset({_S.PENDING_ENROLLMENT, _S.ENROLLED, _S.ACTIVE, _S.SUSPENDED}),
        _S.BLOCKED,
    ),
    DeviceAction.WIPE: (
        frozenset({_S.PENDING_ENROLLMENT, _S.ENROLLED, _S.ACTIVE, _S.SUSPENDED, _S.BLOCKED}),
        _S.WIPED,
    ),
}

# Actions that succeed as no-ops when the device is already in the target state.
_IDEMPOTENT = {DeviceAction.BLOCK, DeviceAction.WIPE}

# is_active value written alongside each target state.
ACTIVE_FLAG_AFTER: dict[DeviceAction, bool] = {
    DeviceAction.ENROLL: False,
    DeviceAction.ACTIVATE: True,
    DeviceAction.SUSPEND: False,
    DeviceAction.REACTIVATE: True,
    DeviceAction.BLOCK: False,
    DeviceAction.WIPE: False,
}


def plan_transition(action: DeviceAction, current: DeviceStatus) -> Optional[DeviceStatus]:
    """Return the target state for action applied to current.

    Returns None when the action is an idempotent no-op (block on BLOCKED,
    wipe on WIPED). Raises InvalidTransition for every edge not in TRANSITIONS.
    """
    sources, target = TRANSITIONS[action]
    if current == target and action in _IDEMPOTENT:
        return None
    if current not in sources:
        raise InvalidTransition(
            f"Cannot {action.value} device in status {current.value}",
            detail=f"allowed from: {', '.join(sorted(s.value for s in sources))}",
        )
    return target
