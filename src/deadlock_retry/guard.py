# deadlock_retry/guard.py
"""
Nested transaction detection.

Retrying an inner block is unsafe: rolling back a SAVEPOINT and re-running it
cannot undo what the outer transaction already did, so a failure inside a
nested transaction always propagates.

Two scopes are available:

- SessionNestingGuard (default) asks only the Session or Connection the
  transaction ran on whether it still has an open transaction once the failed
  block has rolled back.
- ActiveSessionsNestingGuard asks every Session/Connection the application
  reports through a provider callable. Any open transaction anywhere blocks
  the retry, even one unrelated to the failed block.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Protocol

logger = logging.getLogger(__name__)


class NestedTransactionGuard(Protocol):

    def is_nested(self, context: Any) -> bool:
        ...


def has_open_transaction(target: Any) -> bool:
    """True when a Session or Connection reports an open transaction."""
    in_transaction = getattr(target, "in_transaction", None)
    if in_transaction is None:
        return False
    return bool(in_transaction())


class SessionNestingGuard:

    def is_nested(self, context: Any) -> bool:
        if context is None:
            return False
        nested = has_open_transaction(context)
        if nested:
            logger.debug(f"Outer transaction still open on {type(context).__name__}")
        return nested


class ActiveSessionsNestingGuard:
    """
    provider() returns the live Sessions/Connections to inspect, e.g. those
    tracked by an application-level registry. The failing context is checked
    as well.
    """

    def __init__(self, provider: Callable[[], Iterable[Any]]):
        self.provider = provider

    def is_nested(self, context: Any) -> bool:
        if context is not None and has_open_transaction(context):
            return True
        for target in self.provider():
            if has_open_transaction(target):
                logger.debug(f"Open transaction found on {type(target).__name__}")
                return True
        return False
