"""
core/db.py -- SQLAlchemy Core schema, engine factory, and transaction helper.

Pattern: one shared MetaData for every table, because commands, whitelists, and
audit entries all carry a foreign key to devices (ON DELETE CASCADE). The
stores in devices/, commands/, and audit/ import the Table objects from here
and own all the SQL that touches them.

Security:
  All queries use bound parameters. No f-strings in SQL except the migration
  helper, whose column names are hardcoded constants.

Timestamps:
  Stored as ISO 8601 UTC strings with fixed microsecond precision, so string
  comparison in SQL (expires_at > :now) orders the same way the datetimes do.

Concurrency:
  Every state change is a compare-and-swap UPDATE issued inside transaction().
  SQLite connections get a bounded busy timeout; when it elapses the driver
  raises OperationalError("database is locked"), which transaction() turns
  into StoreBusy so the API can answer 503 + Retry-After.

Layer rule: core/ is the kernel. No imports from api/, auth/, audit/,
devices/, or commands/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError

from core.errors import StoreBusy
from core.models import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    SHORT_ID_LENGTH,
    CommandStatus,
    CommandType,
    DeviceStatus,
)

logger = logging.getLogger("mdm.db")


def _in_list(column: str, values) -> str:
    quoted = ", ".join(f"'{v.value}'" for v in values)
    return f"{column} IN ({quoted})"


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

devices = Table(
    "devices",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("full_id", String(36), nullable=False, unique=True),
    Column("short_id", String(SHORT_ID_LENGTH), nullable=False),
    Column("computer_name", String(255)),
    Column("os_name", String(100)),
    Column("os_version", String(50)),
    Column("ip_address", String(45)),
    Column("status", String(30), nullable=False, server_default=DeviceStatus.PENDING_ENROLLMENT.value),
    Column("is_active", Integer, nullable=False, server_default="0"),  # boolean stored as 0/1
    Column("token_hash", String(128)),  # SHA-256 hex, never the plaintext
    Column("token_issued_at", String(32)),
    Column("token_expires_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("enrolled_at", String(32)),
    Column("last_check_in", String(32)),
    Column("updated_at", String(32), nullable=False),
    Column("created_by", String(100)),
    Column("notes", Text),
    CheckConstraint(_in_list("status", DeviceStatus), name="ck_devices_status"),
    CheckConstraint(f"length(short_id) = {SHORT_ID_LENGTH}", name="ck_devices_short_id_length"),
)
Index("ix_devices_token_hash", devices.c.token_hash)
Index("ix_devices_status", devices.c.status)
Index("ix_devices_last_check_in", devices.c.last_check_in)

commands = Table(
    "commands",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("device_id", Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False),
    Column("command_type", String(50), nullable=False),
    Column("payload", Text, nullable=False),  # JSON object
    Column("status", String(30), nullable=False, server_default=CommandStatus.PENDING.value),
    Column("result", Text),  # JSON object, set on acknowledgment
    Column("error_message", Text),
    Column("priority", Integer, nullable=False, server_default="0"),
    Column("expires_at", String(32)),
    Column("created_by", String(100)),
    Column("created_at", String(32), nullable=False),
    Column("delivered_at", String(32)),
    Column("executed_at", String(32)),
    Column("updated_at", String(32), nullable=False),
    CheckConstraint(_in_list("status", CommandStatus), name="ck_commands_status"),
    CheckConstraint(_in_list("command_type", CommandType), name="ck_commands_type"),
    CheckConstraint(f"priority >= {MIN_PRIORITY} AND priority <= {MAX_PRIORITY}", name="ck_commands_priority"),
)
Index("ix_commands_device_status", commands.c.device_id, commands.c.status)
Index("ix_commands_expires", commands.c.status, commands.c.expires_at)

audit_log = Table(
    "device_audit_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    # Nullable: enrollment attempts for unknown identities have no device row.
    Column("device_id", Integer, ForeignKey("devices.id", ondelete="CASCADE")),
    Column("full_id", String(36), nullable=False),
    Column("event_type", String(50), nullable=False),
    Column("event_data", Text),  # JSON object
    Column("ip_address", String(45)),
    Column("actor_type", String(20), nullable=False),
    Column("actor_id", String(100), nullable=False),
    Column("created_at", String(32), nullable=False),
)
Index("ix_audit_full_id", audit_log.c.full_id)
Index("ix_audit_device_id", audit_log.c.device_id)

whitelists = Table(
    "whitelists",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    # NULL device_id = system-wide fallback whitelist.
    Column("device_id", Integer, ForeignKey("devices.id", ondelete="CASCADE")),
    Column("entries", Text, nullable=False),  # JSON array of {user, apps, urls}
    Column("created_by", String(100)),
    Column("created_at", String(32), nullable=False),
)
Index("ix_whitelists_device_id", whitelists.c.device_id)


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as a fixed-width UTC ISO string. Naive values are treated as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ---------------------------------------------------------------------------
# Connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys on every new SQLite connection.

    SQLite PRAGMAs are per-connection and not inherited from the pool.
    foreign_keys=ON is required for ON DELETE CASCADE to fire.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _migrate_devices_table(conn: Connection) -> None:
    """Add columns introduced after the first schema to an existing devices table.

    is_active was added after launch; rows already in ACTIVE status are
    back-filled so the flag matches their state.
    """
    existing = {row[1] for row in conn.execute(text("PRAGMA table_info(devices)"))}
    if "notes" not in existing:
        conn.execute(text("ALTER TABLE devices ADD COLUMN notes TEXT"))  # nosemgrep
    if "is_active" not in existing:
        conn.execute(text("ALTER TABLE devices ADD COLUMN is_active INTEGER NOT NULL DEFAULT 0"))  # nosemgrep
        conn.execute(devices.update().where(devices.c.status == DeviceStatus.ACTIVE.value).values(is_active=1))
    conn.commit()


def make_engine(db_url: str, lock_timeout: float = 5.0) -> Engine:
    """Create an engine, ensure the schema exists, and run in-place migrations."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        # FastAPI runs sync handlers in a thread pool, so a pooled connection
        # may be used from a different thread than the one that opened it.
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = lock_timeout
    elif db_url.startswith("postgresql"):
        connect_args["options"] = f"-c lock_timeout={int(lock_timeout * 1000)}"
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    metadata.create_all(engine)
    if engine.dialect.name == "sqlite":
        with engine.connect() as conn:
            _migrate_devices_table(conn)
    return engine


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


def _is_lock_timeout(exc: OperationalError) -> bool:
    message = str(exc.orig).lower() if exc.orig is not None else str(exc).lower()
    return "locked" in message or "lock timeout" in message or "could not obtain lock" in message


@contextmanager
def transaction(engine: Engine) -> Iterator[Connection]:
    """Yield a connection inside BEGIN ... COMMIT, rolling back on any exception.

    Lock-acquisition timeouts become StoreBusy. Every other error propagates
    unchanged.
    """
    try:
        with engine.begin() as conn:
            yield conn
    except OperationalError as exc:
        if _is_lock_timeout(exc):
            logger.warning("Lock wait exceeded: %s", exc.orig)
            raise StoreBusy() from exc
        raise


def check_database(engine: Engine) -> bool:
    """Return True if a trivial query succeeds. Used by the health endpoint."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except OperationalError:
        logger.exception("Database health check failed")
        return False
