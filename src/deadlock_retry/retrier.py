# deadlock_retry/retrier.py
"""
Retry loop around a transactional operation.

Each call to `execute` runs the operation, and when it fails with a
deadlock or lock wait timeout outside a nested transaction, runs it again from
the start, up to `max_retries` more times. Every other failure, and the final
one once retries are exhausted, is re-raised untouched.

The operation may run more than once. Anything it does outside the database
transaction must be safe to repeat.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, TypeVar

from deadlock_retry.backoff import BackoffPolicy, make_backoff
from deadlock_retry.classifier import ErrorClassifier
from deadlock_retry.config import RetryConfig
from deadlock_retry.diagnostics import log_engine_status
from deadlock_retry.guard import NestedTransactionGuard, SessionNestingGuard
from deadlock_retry.schemas.retry_event import RetryEvent, RetryEventKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class AttemptState:
    """Per-invocation bookkeeping. Never shared between calls."""

    retry_count: int = 0
    started_at: float = field(default_factory=time.monotonic)

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000.0


class TransactionRetrier:

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        *,
        classifier: Optional[ErrorClassifier] = None,
        guard: Optional[NestedTransactionGuard] = None,
        backoff: Optional[BackoffPolicy] = None,
    ):
        self.config = config or RetryConfig()
        self.classifier = classifier or ErrorClassifier.from_config(self.config)
        self.guard = guard or SessionNestingGuard()
        self.backoff = backoff or make_backoff(self.config)

    def execute(self, operation: Callable[[], T], *, context: Any = None) -> T:
        """
        Run `operation` with deadlock retry.

        `context` is the Session/Connection (or sessionmaker/Engine) the
        transaction runs on. It drives the nested transaction check and the
        engine status dump on final failure.
        """
        state = AttemptState()
        cfg = self.config

        while True:
            try:
                return operation()
            except Exception as error:
                if self.guard.is_nested(context):
                    logger.debug(f"Not retrying {type(error).__name__}: nested transaction")
                    raise

                if not self.classifier.classify(error).retryable:
                    raise

                if state.retry_count >= cfg.max_retries:
                    self._log_exhausted(error, state, context)
                    raise

                state.retry_count += 1
                delay_ms = int(self.backoff.next_delay(
                    state.retry_count, cfg.min_wait_ms, cfg.max_wait_ms
                ))
                self._emit(
                    f"Deadlock detected, restarting transaction "
                    f"(retry {state.retry_count}/{cfg.max_retries}, delay {delay_ms}ms)",
                    "retry",
                    error,
                    state,
                    delay_ms=delay_ms,
                )
                if delay_ms > 0:
                    time.sleep(delay_ms / 1000.0)

    __call__ = execute

    def _log_exhausted(self, error: BaseException, state: AttemptState, context: Any) -> None:
        cfg = self.config
        log_context = self._emit(
            f"Deadlock retries exhausted after {state.retry_count} "
            f"retr{'y' if state.retry_count == 1 else 'ies'}, giving up",
            "exhausted",
            error,
            state,
        )
        if cfg.log_engine_status:
            log_engine_status(context, cfg.log_sink, {**log_context, "event": "diagnostics"})

    def _emit(
        self,
        message: str,
        kind: RetryEventKind,
        error: BaseException,
        state: AttemptState,
        **fields: Any,
    ) -> Dict[str, Any]:
        # Neither building the event nor a broken sink may replace the database error
        log_context: Dict[str, Any] = {"event": kind, "retry_count": state.retry_count}
        try:
            log_context = RetryEvent.for_error(
                kind,
                error,
                retry_count=state.retry_count,
                max_retries=self.config.max_retries,
                elapsed_ms=state.elapsed_ms,
                **fields,
            ).model_dump()
            self.config.log_sink(message, log_context)
        except Exception:
            logger.warning(f"Deadlock retry log sink failed for: {message}", exc_info=True)
        return log_context
