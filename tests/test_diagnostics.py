"""
Unit tests for the InnoDB status dump.

Run with: pytest tests/test_diagnostics.py -v
"""

from unittest.mock import MagicMock

from sqlalchemy.orm import Session

from deadlock_retry.diagnostics import (
    ENGINE_STATUS_SQL,
    engine_for,
    log_engine_status,
    read_engine_status,
)


class TestEngineFor:

    def test_engine(self, engine):
        assert engine_for(engine) is engine

    def test_connection(self, engine):
        with engine.connect() as conn:
            assert engine_for(conn) is engine

    def test_session(self, session_maker, engine):
        with session_maker() as session:
            assert engine_for(session) is engine

    def test_sessionmaker(self, session_maker, engine):
        assert engine_for(session_maker) is engine

    def test_unknown_context(self):
        assert engine_for(None) is None
        assert engine_for("not a bind") is None


class TestReadEngineStatus:

    def test_returns_status_column(self):
        engine = MagicMock()
        conn = engine.connect.return_value.__enter__.return_value
        conn.execute.return_value.first.return_value = ("InnoDB", "", "line one\nline two")

        assert read_engine_status(engine) == "line one\nline two"
        (statement,), _ = conn.execute.call_args
        assert str(statement) == ENGINE_STATUS_SQL

    def test_empty_result(self):
        engine = MagicMock()
        conn = engine.connect.return_value.__enter__.return_value
        conn.execute.return_value.first.return_value = None

        assert read_engine_status(engine) == ""


class TestLogEngineStatus:

    def test_logs_header_then_each_line(self, engine, sink, monkeypatch):
        monkeypatch.setattr(
            "deadlock_retry.diagnostics.read_engine_status",
            lambda e: "LATEST DETECTED DEADLOCK\n*** (1) TRANSACTION:",
        )

        log_engine_status(engine, sink, {"event": "diagnostics"})

        assert sink.messages == [
            "InnoDB status follows:",
            "LATEST DETECTED DEADLOCK",
            "*** (1) TRANSACTION:",
        ]
        assert all(c == {"event": "diagnostics"} for _, c in sink.calls)

    def test_query_failure_is_swallowed(self, engine, sink):
        # SQLite has no SHOW ENGINE statement
        log_engine_status(engine, sink, {})

        (message,) = sink.messages
        assert message.startswith("Failed to log InnoDB status:")

    def test_unbound_session_is_swallowed(self, sink):
        log_engine_status(Session(), sink, {})

        (message,) = sink.messages
        assert message.startswith("Failed to log InnoDB status:")

    def test_missing_engine_logs_notice(self, sink):
        log_engine_status(None, sink, {})

        assert sink.messages == [
            "InnoDB status unavailable: no engine bound to transaction context"
        ]
