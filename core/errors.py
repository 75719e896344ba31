"""
core/errors.py -- Error taxonomy for the MDM core.

Every precondition failure in the device store, token checks, and command queue
raises one of these. Each carries a stable machine-readable code and the HTTP
status the API layer reports it with, so api/main.py can render the whole family
through a single exception handler.

State-precondition violations are conflicts (409). Device authentication
problems are 401 with short, uniform messages so a caller cannot tell a
malformed token from an unknown one by wording alone.

Layer rule: no imports from api/, auth/, audit/, devices/, or commands/.
"""

from __future__ import annotations


class MDMError(Exception):
    """Base class for all expected, caller-visible failures."""

    code = "mdm_error"
    status_code = 400
    default_message = "Request could not be completed."

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class ValidationError(MDMError):
    code = "validation_error"
    status_code = 422
    default_message = "Request validation failed."


class NotFound(MDMError):
    code = "not_found"
    status_code = 404
    default_message = "Resource not found."


class NotProvisioned(MDMError):
    code = "not_provisioned"
    status_code = 404
    default_message = "Device not registered"


class DeviceExists(MDMError):
    code = "device_exists"
    status_code = 409
    default_message = "Device already exists"


class Blocked(MDMError):
    code = "blocked"
    status_code = 403
    default_message = "Device blocked by administrator"


class InvalidTransition(MDMError):
    code = "invalid_transition"
    status_code = 409
    default_message = "Device status transition not allowed"


class InvalidToken(MDMError):
    code = "invalid_token"
    status_code = 401
    default_message = "Invalid or expired pushToken"


class TokenExpired(MDMError):
    code = "token_expired"
    status_code = 401
    default_message = "pushToken expired"


class NotOperational(MDMError):
    code = "not_operational"
    status_code = 401
    default_message = "Device is not operational"


class DeviceNotOperational(MDMError):
    code = "device_not_operational"
    status_code = 409
    default_message = "Device is not operational"


class InvalidCommandState(MDMError):
    code = "invalid_command_state"
    status_code = 409
    default_message = "Command is not in a valid state for this operation"


class StoreBusy(MDMError):
    """The persistence layer did not grant a lock within the configured bound. Retryable."""

    code = "store_busy"
    status_code = 503
    default_message = "Storage is busy, retry shortly."


class ModeDisabled(MDMError):
    """The route belongs to the command mode this deployment does not run."""

    code = "mode_disabled"
    status_code = 404
    default_message = "Not available in this command mode."
