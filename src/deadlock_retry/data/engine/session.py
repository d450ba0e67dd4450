# deadlock_retry/data/engine/session.py
from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool


def _configure_sqlite(engine: Engine, sqlite_busy_timeout_ms: int = 5000) -> None:
    """
    Apply SQLite pragmas on every DB-API connection and let SQLAlchemy emit
    BEGIN itself. The pysqlite driver otherwise defers BEGIN until the first
    DML statement, which breaks SAVEPOINT (nested transaction) handling.
    """

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, _connection_record) -> None:
        dbapi_connection.isolation_level = None
        cur = dbapi_connection.cursor()
        try:
            cur.execute("PRAGMA foreign_keys=ON;")
            cur.execute(f"PRAGMA busy_timeout={int(sqlite_busy_timeout_ms)};")  # ms
        finally:
            cur.close()

    @event.listens_for(engine, "begin")
    def _emit_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")


def make_engine(
    db_url: str,
    *,
    echo: bool = False,
    sqlite_timeout_s: int = 30,
    sqlite_busy_timeout_ms: int = 5000,
    sqlite_use_null_pool: bool = True,
    mysql_lock_wait_timeout_s: int | None = None,
) -> Engine:
    """
    Create a SQLAlchemy engine.

    Notes:
      - For SQLite, we default to NullPool to avoid lingering pooled connections
        that can increase locking issues in CLI / short-lived runs.
      - For MySQL, mysql_lock_wait_timeout_s sets innodb_lock_wait_timeout per
        connection, which bounds how long a blocked statement waits before the
        "Lock wait timeout exceeded" error that deadlock retry recovers from.
    """
    if db_url.startswith("sqlite:"):
        engine = create_engine(
            db_url,
            echo=echo,
            connect_args={
                "check_same_thread": False,
                "timeout": int(sqlite_timeout_s),  # seconds (sqlite busy handler)
            },
            poolclass=NullPool if sqlite_use_null_pool else None,
            pool_pre_ping=True,
        )

        _configure_sqlite(engine, sqlite_busy_timeout_ms=sqlite_busy_timeout_ms)
        return engine

    engine = create_engine(db_url, echo=echo, pool_pre_ping=True)

    if mysql_lock_wait_timeout_s is not None and engine.dialect.name in ("mysql", "mariadb"):

        @event.listens_for(engine, "connect")
        def _set_lock_wait_timeout(dbapi_connection, _connection_record) -> None:
            cur = dbapi_connection.cursor()
            try:
                cur.execute(
                    f"SET SESSION innodb_lock_wait_timeout = {int(mysql_lock_wait_timeout_s)}"
                )
            finally:
                cur.close()

    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    """
    Returns a sessionmaker. Sessions autobegin; run_transaction opens the
    transaction boundary explicitly so retries restart from a clean state.
    """
    return sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
    )
