"""
Synchronous engine used by the whole billing core.

SQLite runs in WAL mode with foreign keys on. Transactions open with
BEGIN IMMEDIATE so that two writers on the same bill serialize instead of
failing halfway; the pysqlite driver's own transaction handling is disabled
for that reason.
"""
import logging
from typing import Generator, Optional

from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine

from ..core.config import get_settings

logger = logging.getLogger(__name__)

_engine = None


def _install_sqlite_hooks(engine) -> None:
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: Optional[str] = None, **kwargs):
    """Create an engine for ``url`` (defaults to the configured database)."""
    settings = get_settings()
    url = url or settings.resolved_database_url()

    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", settings.sqlite_busy_timeout)
        engine = create_engine(url, echo=False, connect_args=connect_args, **kwargs)
        _install_sqlite_hooks(engine)
    else:
        engine = create_engine(url, echo=False, pool_pre_ping=True, **kwargs)

    logger.debug(f"Engine created for {engine.url.render_as_string(hide_password=True)}")
    return engine


def get_engine():
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def get_sync_session() -> Generator[Session, None, None]:
    """FastAPI dependency: one session per request."""
    with Session(get_engine(), expire_on_commit=False) as session:
        yield session


def create_sync_db_and_tables(engine=None):
    """Create all tables and seed the default business settings."""
    from .. import models  # noqa: F401  registers every table on the metadata
    from ..services.settings_service import SettingsService

    engine = engine or get_engine()
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        SettingsService(session).seed_defaults()
