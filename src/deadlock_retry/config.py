# deadlock_retry/config.py
"""
Configuration for deadlock retry.

Features:
- Loads from deadlock_retry.toml
- ENV fallbacks
- Immutable config object, validated on construction
- Automatic logging setup when loaded from the environment

Configure once at startup and hand the object to TransactionRetrier.
Replacing it while transactions are in flight is not supported.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Pattern, Tuple, Type, Union

from sqlalchemy.exc import DBAPIError

logger = logging.getLogger(__name__)

LogSink = Callable[[str, Mapping[str, Any]], None]
ErrorPattern = Union[str, Pattern[str]]

DEFAULT_DEADLOCK_ERROR_PATTERNS: Tuple[str, ...] = (
    "Deadlock found when trying to get lock",
    "Lock wait timeout exceeded",
)

_sink_logger = logging.getLogger("deadlock_retry")


def as_pattern_tuple(patterns: Any) -> Tuple[ErrorPattern, ...]:
    """A lone string or compiled pattern is one pattern, not a sequence of characters."""
    if isinstance(patterns, (str, re.Pattern)):
        return (patterns,)
    return tuple(patterns)


def default_log_sink(message: str, context: Mapping[str, Any]) -> None:
    _sink_logger.warning(message, extra={"deadlock_retry": dict(context)})


# ---------------------------------------------------------
# LOGGING SETUP (called once when config is loaded from env)
# ---------------------------------------------------------

def _ensure_logging():
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        handler.setFormatter(formatter)
        root.addHandler(handler)
        root.setLevel(logging.INFO)
        logging.getLogger("sqlalchemy").setLevel(logging.WARNING)

        logger.debug("Default logging configured (no prior handlers)")

# ---------------------------------------------------------
# TOML LOADER
# ---------------------------------------------------------

def _read_toml(path: Path) -> dict:
    if not path.exists():
        logger.debug("TOML file %s not found, using empty config", path)
        return {}

    import tomllib

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
        logger.debug("Loaded TOML from %s", path)
        return data
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning("Failed to load TOML %s: %s", path, e)
        return {}


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)

# ---------------------------------------------------------
# CONFIG OBJECT
# ---------------------------------------------------------

@dataclass(frozen=True)
class RetryConfig:

    # Attempts before giving up (the initial attempt is not counted)
    max_retries: int = 3

    # Backoff bounds; max_wait_ms == 0 disables backoff
    min_wait_ms: int = 0
    max_wait_ms: int = 0

    # Which statement errors count as transient
    error_patterns: Tuple[ErrorPattern, ...] = DEFAULT_DEADLOCK_ERROR_PATTERNS
    statement_error_types: Tuple[Type[BaseException], ...] = (DBAPIError,)

    # Where retry and diagnostic messages go
    log_sink: LogSink = field(default=default_log_sink, compare=False)
    log_engine_status: bool = True

    def __post_init__(self):
        for name in ("max_retries", "min_wait_ms", "max_wait_ms"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(f"{name} must be an integer, got {value!r}")
            if value < 0:
                raise ValueError(f"{name} must be >= 0, got {value}")
        if self.max_wait_ms < self.min_wait_ms:
            raise ValueError(
                f"max_wait_ms ({self.max_wait_ms}) must be >= min_wait_ms ({self.min_wait_ms})"
            )
        if not self.statement_error_types:
            raise ValueError("statement_error_types must name at least one exception type")
        # Lists from TOML and lone patterns are normalised so the config stays hashable
        object.__setattr__(self, "error_patterns", as_pattern_tuple(self.error_patterns))
        object.__setattr__(self, "statement_error_types", tuple(self.statement_error_types))

    @property
    def backoff_enabled(self) -> bool:
        return self.max_wait_ms > 0

    @classmethod
    def from_env(
        cls,
        path: Union[str, Path] = "deadlock_retry.toml",
        *,
        log_sink: Optional[LogSink] = None,
    ) -> "RetryConfig":
        _ensure_logging()

        logger.debug("Loading deadlock retry configuration from environment and TOML")
        toml_data = _read_toml(Path(path))
        section = toml_data.get("deadlock_retry", {})

        def get_value(key, env_var=None, default=None):
            value = section.get(key)
            source = "TOML"
            if value is None and env_var:
                value = os.getenv(env_var)
                source = "ENV"
            if value is None:
                value = default
                source = "default"
            logger.debug("Config %s = %s (source: %s)", key, value, source)
            return value

        max_retries = int(get_value(
            "max_retries", env_var="DEADLOCK_RETRY_MAX_RETRIES", default=3
        ))
        min_wait_ms = int(get_value(
            "min_wait_ms", env_var="DEADLOCK_RETRY_MIN_WAIT_MS", default=0
        ))
        max_wait_ms = int(get_value(
            "max_wait_ms", env_var="DEADLOCK_RETRY_MAX_WAIT_MS", default=0
        ))
        log_engine_status = _as_bool(get_value(
            "log_engine_status", env_var="DEADLOCK_RETRY_LOG_ENGINE_STATUS", default=True
        ))
        error_patterns = as_pattern_tuple(get_value(
            "error_patterns", default=DEFAULT_DEADLOCK_ERROR_PATTERNS
        ))

        config = cls(
            max_retries=max_retries,
            min_wait_ms=min_wait_ms,
            max_wait_ms=max_wait_ms,
            error_patterns=error_patterns,
            log_sink=log_sink or default_log_sink,
            log_engine_status=log_engine_status,
        )
        logger.debug(f"Deadlock retry config loaded: {config.to_dict()}")
        return config

    # ---------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "min_wait_ms": self.min_wait_ms,
            "max_wait_ms": self.max_wait_ms,
            "error_patterns": [
                p.pattern if hasattr(p, "pattern") else p for p in self.error_patterns
            ],
            "statement_error_types": [t.__name__ for t in self.statement_error_types],
            "log_engine_status": self.log_engine_status,
            "backoff_enabled": self.backoff_enabled,
        }
