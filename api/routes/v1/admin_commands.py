"""
api/routes/v1/admin_commands.py -- Command queue administration (queue mode only).

Routes (mounted under /admin):
  POST    /commands                     -- queue a command for a device
  GET     /commands?device_fulluuid=    -- a device's commands, newest first
  POST    /commands/expire              -- run the expiry sweep now
  GET     /commands/{command_id}        -- detail
  DELETE  /commands/{command_id}        -- cancel a PENDING command
"""

from fastapi import APIRouter, Depends, Query, Request

from api.models import CommandCreate, CommandResponse, ExpireResponse
from auth.dependencies import admin_actor, require_mode
from commands.queue import CommandQueue
from core.models import FULL_ID_PATTERN, Command

router = APIRouter(dependencies=[Depends(require_mode("queue"))])


def command_response(command: Command) -> CommandResponse:
    return CommandResponse(
        id=command.id,
        device_id=command.device_id,
        command_type=command.command_type,
        payload=command.payload,
        status=command.status.value,
        priority=command.priority,
        result=command.result,
        error_message=command.error_message,
        expires_at=command.expires_at,
        created_by=command.created_by,
        created_at=command.created_at,
        delivered_at=command.delivered_at,
        executed_at=command.executed_at,
        updated_at=command.updated_at,
    )


@router.post("/commands", response_model=CommandResponse, status_code=201)
def create_command(request: Request, body: CommandCreate, actor: str = Depends(admin_actor)) -> CommandResponse:
    queue: CommandQueue = request.app.state.commands
    command = queue.create(
        body.device_fulluuid,
        body.command_type,
        payload=body.payload,
        priority=body.priority,
        expires_at=body.expires_at,
        created_by=actor,
    )
    return command_response(command)


@router.get("/commands", response_model=list[CommandResponse])
def list_commands(
    request: Request,
    device_fulluuid: str = Query(pattern=FULL_ID_PATTERN),
) -> list[CommandResponse]:
    queue: CommandQueue = request.app.state.commands
    return [command_response(c) for c in queue.list_for_device(device_fulluuid)]


@router.post("/commands/expire", response_model=ExpireResponse)
def expire_commands(request: Request) -> ExpireResponse:
    queue: CommandQueue = request.app.state.commands
    return ExpireResponse(expired=queue.expire_stale())


@router.get("/commands/{command_id}", response_model=CommandResponse)
def get_command(request: Request, command_id: int) -> CommandResponse:
    queue: CommandQueue = request.app.state.commands
    return command_response(queue.require(command_id))


@router.delete("/commands/{command_id}", response_model=CommandResponse)
def cancel_command(request: Request, command_id: int, actor: str = Depends(admin_actor)) -> CommandResponse:
    queue: CommandQueue = request.app.state.commands
    return command_response(queue.cancel(command_id, actor))
