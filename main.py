#!/usr/bin/env python3
"""
Desktop MDM -- administrator command line.

Operates directly on the configured database (DATABASE_URL, or --db).

Usage:
  python main.py create-device 1b4e28ba-2fa1-11d2-883f-0016d3cca427 1B4E28BA2FA111D --notes "Lab PC"
  python main.py list-devices
  python main.py list-devices --status ACTIVE --json
  python main.py suspend 1b4e28ba-2fa1-11d2-883f-0016d3cca427 --reason "left company"
  python main.py reactivate 1b4e28ba-2fa1-11d2-883f-0016d3cca427
  python main.py block 1b4e28ba-2fa1-11d2-883f-0016d3cca427
  python main.py wipe 1b4e28ba-2fa1-11d2-883f-0016d3cca427
  python main.py delete-device 1b4e28ba-2fa1-11d2-883f-0016d3cca427
  python main.py expire-commands
  python main.py serve --port 8000
"""

import argparse
import json
import logging
import sys
from dataclasses import asdict
from typing import Optional

from audit.sink import AuditSink
from auth.tokens import TokenService
from commands.queue import CommandQueue
from core.config import get_settings
from core.db import make_engine
from core.errors import MDMError
from core.models import DeviceStatus
from devices.store import DeviceStore

logger = logging.getLogger("mdm.cli")

_TRANSITIONS = ("suspend", "reactivate", "block", "wipe")


def _build(db_url: Optional[str]) -> tuple[DeviceStore, CommandQueue]:
    settings = get_settings()
    engine = make_engine(db_url or settings.database_url, settings.db_lock_timeout_seconds)
    audit = AuditSink(engine, system_actor=settings.system_actor)
    devices = DeviceStore(engine, TokenService(settings), audit)
    return devices, CommandQueue(engine, devices, audit)


def _print_devices(devices: list, as_json: bool) -> None:
    if as_json:
        rows = []
        for d in devices:
            row = asdict(d)
            row.pop("token_hash")
            rows.append(row)
        print(json.dumps(rows, indent=2, default=str))
        return
    if not devices:
        print("  No devices.")
        return
    print(f"  {'FULL ID':<38} {'SHORT ID':<16} {'STATUS':<20} LAST CHECK-IN")
    for d in devices:
        print(f"  {d.full_id:<38} {d.short_id:<16} {d.status.value:<20} {d.last_check_in or '-'}")


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mdm",
        description="Administer the Desktop MDM device registry.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--db", metavar="URL", help="SQLAlchemy database URL (default: DATABASE_URL setting)")
    parser.add_argument("--actor", default=None, help="Operator name recorded in the audit log")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-device", help="Pre-provision a device in PENDING_ENROLLMENT")
    create.add_argument("full_id", metavar="FULLUUID")
    create.add_argument("short_id", metavar="UUID15")
    create.add_argument("--notes", default=None)

    listing = sub.add_parser("list-devices", help="List devices")
    listing.add_argument("--status", choices=[s.value for s in DeviceStatus], default=None)
    listing.add_argument("--json", action="store_true", help="Output JSON")

    for name in _TRANSITIONS:
        action = sub.add_parser(name, help=f"{name.capitalize()} a device")
        action.add_argument("full_id", metavar="FULLUUID")
        action.add_argument("--reason", default=None)

    delete = sub.add_parser("delete-device", help="Delete a device and everything attached to it")
    delete.add_argument("full_id", metavar="FULLUUID")

    sub.add_parser("expire-commands", help="Mark overdue PENDING commands as EXPIRED")

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = _parser().parse_args(argv)
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "serve":
        import uvicorn

        uvicorn.run("api.main:app", host=args.host, port=args.port)
        return 0

    actor = args.actor or get_settings().default_admin_actor
    devices, queue = _build(args.db)
    try:
        if args.command == "create-device":
            device = devices.create(args.full_id, args.short_id, created_by=actor, notes=args.notes)
            print(f"  Created {device.full_id} ({device.status.value})")
        elif args.command == "list-devices":
            status = DeviceStatus(args.status) if args.status else None
            _print_devices(devices.list_devices(status), args.json)
        elif args.command in _TRANSITIONS:
            device = getattr(devices, args.command)(args.full_id, actor, args.reason)
            print(f"  {device.full_id} is now {device.status.value}")
        elif args.command == "delete-device":
            devices.delete(args.full_id, actor)
            print(f"  Deleted {args.full_id.lower()}")
        elif args.command == "expire-commands":
            print(f"  Expired {queue.expire_stale()} command(s)")
    except MDMError as exc:
        detail = f" ({exc.detail})" if exc.detail else ""
        print(f"  [!] {exc.message}{detail}", file=sys.stderr)
        return 1
    finally:
        devices.engine.dispose()
    return 0


if __name__ == "__main__":
    sys.exit(main())
