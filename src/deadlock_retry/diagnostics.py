# deadlock_retry/diagnostics.py

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.orm import Session, sessionmaker

from deadlock_retry.config import LogSink

logger = logging.getLogger(__name__)

ENGINE_STATUS_SQL = "SHOW ENGINE INNODB STATUS"


def engine_for(context: Any) -> Optional[Engine]:
    """Resolve the Engine behind a Session, Connection, sessionmaker or Engine."""
    if isinstance(context, Engine):
        return context
    if isinstance(context, Connection):
        return context.engine
    if isinstance(context, Session):
        bind = context.get_bind()
        return bind.engine if isinstance(bind, Connection) else bind
    if isinstance(context, sessionmaker):
        bind = context.kw.get("bind")
        return bind.engine if isinstance(bind, Connection) else bind
    return None


def read_engine_status(engine: Engine) -> str:
    # A separate connection keeps the probe out of the failed transaction
    with engine.connect() as conn:
        row = conn.execute(text(ENGINE_STATUS_SQL)).first()
    if row is None:
        return ""
    # Rows are (Type, Name, Status)
    return str(row[-1] or "")


def log_engine_status(context: Any, log_sink: LogSink, log_context: Mapping[str, Any]) -> None:
    """
    Best-effort dump of the InnoDB status report, the only view into why a
    transaction deadlocked. Never raises.
    """
    try:
        engine = engine_for(context)
        if engine is None:
            log_sink("InnoDB status unavailable: no engine bound to transaction context", log_context)
            return
        status = read_engine_status(engine)
        log_sink("InnoDB status follows:", log_context)
        for line in status.splitlines():
            log_sink(line, log_context)
    except Exception as e:
        logger.debug("Engine status probe failed", exc_info=True)
        try:
            log_sink(f"Failed to log InnoDB status: {e}", log_context)
        except Exception:
            logger.warning(f"Failed to log InnoDB status: {e}", exc_info=True)
