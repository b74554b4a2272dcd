import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy import exc as sa_exc

from buddyup import config
from buddyup.errors import TransientStoreError
from buddyup.models import metadata
from buddyup.services.realtime import ChangeEvent, feed

log = logging.getLogger(__name__)

# Get connection URL from config
connection_url = config.get_settings().DATABASE_URL

# Normalise driver names to psycopg2
if connection_url.startswith("postgres://"):
    connection_url = connection_url.replace("postgres://", "postgresql+psycopg2://", 1)
elif "postgresql+psycopg:" in connection_url and "postgresql+psycopg2:" not in connection_url:
    connection_url = connection_url.replace("postgresql+psycopg:", "postgresql+psycopg2:")

# Supabase: use the transaction pooler (port 6543) instead of session mode (port 5432)
if "supabase.com" in connection_url and ":5432" in connection_url:
    log.warning("[Database] Supabase Session Mode detected (port 5432) - switching to Transaction Mode (port 6543)")
    connection_url = connection_url.replace(":5432", ":6543")

# Add SSL mode for Supabase if not already present
if "supabase.com" in connection_url and "sslmode=" not in connection_url:
    separator = "&" if "?" in connection_url else "?"
    connection_url = f"{connection_url}{separator}sslmode=require"

IS_SQLITE = connection_url.startswith("sqlite")

if IS_SQLITE:
    engine = create_engine(
        connection_url,
        connect_args={"check_same_thread": False, "timeout": 30},
        echo=False,
    )

    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself (see _sqlite_begin)
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        # Take the write lock up front so conditional updates serialise like row locks
        conn.exec_driver_sql("BEGIN IMMEDIATE")
else:
    engine = create_engine(
        connection_url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=3,
        max_overflow=7,
        pool_recycle=300,  # Recycle connections after 5 minutes (transaction pooler preference)
        echo=False,  # Set to True for SQL debugging
    )

log.info(f"[Database] SQLAlchemy engine created for {connection_url.split('://')[0]}")

_TRANSIENT_ERRORS = (
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
    sa_exc.DisconnectionError,
)


@contextmanager
def begin():
    """Open one transaction on the shared engine.

    Connectivity failures surface as TransientStoreError. Change events recorded
    with `record_change` are published to the realtime feed after commit only.
    """
    changes: list[ChangeEvent] = []
    try:
        with engine.begin() as connection:
            connection.info["pending_changes"] = changes
            try:
                yield connection
            finally:
                connection.info.pop("pending_changes", None)
    except _TRANSIENT_ERRORS as e:
        log.error(f"[Database] Store unavailable: {e}")
        raise TransientStoreError(str(e)) from e

    for change in changes:
        feed.publish(change)


def record_change(connection, table: str, kind: str, row: dict, **context) -> None:
    """Queue a change event to be published when the connection's transaction commits."""
    pending = connection.info.get("pending_changes")
    if pending is None:
        # Not opened through begin(); nothing to publish
        return
    pending.append(ChangeEvent(table=table, kind=kind, row=dict(row), context=context))


def create_tables() -> None:
    """Create all tables (development and tests; production uses Alembic)."""
    metadata.create_all(engine)


def drop_tables() -> None:
    metadata.drop_all(engine)
