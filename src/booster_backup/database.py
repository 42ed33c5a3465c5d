"""SQLAlchemy engine construction for PostgreSQL (production) and SQLite (local/test).

The dump, registry and restore paths each check out their own connection from
the engine, so a rolled-back restore never shares a session with a backup read.
"""

from __future__ import annotations

from typing import Any, Dict
from urllib.parse import urlsplit, urlunsplit

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

from .config import DatabaseConfig
from .logger import get_logger

log = get_logger(__name__)


def create_database_engine(config: DatabaseConfig) -> Engine:
    """Create an engine for ``config.url``.

    PostgreSQL connections require TLS unless the URL already carries an
    ``sslmode`` or ``require_ssl`` is off. SQLite connections get real
    transactional DDL so restores can roll back ``DROP``/``CREATE``.
    """
    connect_args: Dict[str, Any] = {}
    if config.is_postgres and config.require_ssl and "sslmode=" not in config.url:
        connect_args["sslmode"] = "require"
    if config.is_sqlite:
        # dump and archive work runs on a worker thread
        connect_args["check_same_thread"] = False

    engine = create_engine(config.url, future=True, pool_pre_ping=True, connect_args=connect_args)
    if engine.dialect.name == "sqlite":
        enable_sqlite_transactional_ddl(engine)

    log.info("Database engine created for %s", obfuscate_password(config.url))
    return engine


def enable_sqlite_transactional_ddl(engine: Engine) -> None:
    """Let SQLAlchemy own BEGIN so DDL participates in transactions and savepoints."""

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN")


def database_identity(engine: Engine) -> str:
    """Name the database for dump headers without leaking credentials."""
    url = engine.url
    if engine.dialect.name == "sqlite":
        return f"sqlite:{url.database or ':memory:'}"
    host = url.host or "localhost"
    port = f":{url.port}" if url.port else ""
    return f"{engine.dialect.name}://{host}{port}/{url.database or ''}"


def obfuscate_password(database_url: str) -> str:
    """Mask the password portion of a database URL."""

    parsed = urlsplit(database_url)
    if "@" not in parsed.netloc:
        return database_url

    creds, host = parsed.netloc.split("@", 1)
    if ":" in creds:
        username, _password = creds.split(":", 1)
        creds = f"{username}:***"
    else:
        creds = f"{creds}:***"

    obfuscated = parsed._replace(netloc=f"{creds}@{host}")
    return urlunsplit(obfuscated)
