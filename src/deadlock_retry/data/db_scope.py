# deadlock_retry/data/db_scope.py
from __future__ import annotations

import functools
import logging
from contextlib import contextmanager
from typing import Any, Callable, Concatenate, Optional, ParamSpec, TypeVar

from sqlalchemy.orm import Session, sessionmaker

from deadlock_retry.retrier import TransactionRetrier

log = logging.getLogger(__name__)

T = TypeVar("T")
P = ParamSpec("P")


@contextmanager
def session_scope(session_maker: sessionmaker):
    s = session_maker()
    try:
        yield s
        s.commit()
    except Exception as e:
        log.error(f"Session error: {e}")
        s.rollback()
        raise
    finally:
        s.close()


def run_transaction(session: Session, fn: Callable[[Session], T]) -> T:
    """
    Run fn inside a transaction on `session`.

    A session that already has a transaction open gets a SAVEPOINT instead,
    making this call a nested transaction of the outer one.
    """
    if session.in_transaction():
        with session.begin_nested():
            return fn(session)
    with session.begin():
        return fn(session)


class RetryingTransaction:
    """Drop-in for run_transaction that restarts the transaction on deadlock."""

    def __init__(
        self,
        retrier: Optional[TransactionRetrier] = None,
        primitive: Callable[[Session, Callable[[Session], Any]], Any] = run_transaction,
    ):
        self.retrier = retrier or TransactionRetrier()
        self.primitive = primitive

    def __call__(self, session: Session, fn: Callable[[Session], T]) -> T:
        return self.retrier.execute(lambda: self.primitive(session, fn), context=session)


def with_deadlock_retry(
    retrier: Optional[TransactionRetrier] = None,
) -> Callable[[Callable[Concatenate[Session, P], T]], Callable[Concatenate[Session, P], T]]:
    """
    Decorator for functions taking a Session first. The body runs inside
    run_transaction and is retried as a whole on deadlock.

        @with_deadlock_retry(retrier)
        def transfer(session, src_id, dst_id, amount): ...
    """
    transaction = RetryingTransaction(retrier)

    def decorate(fn: Callable[Concatenate[Session, P], T]) -> Callable[Concatenate[Session, P], T]:
        @functools.wraps(fn)
        def wrapper(session: Session, *args: P.args, **kwargs: P.kwargs) -> T:
            return transaction(session, lambda s: fn(s, *args, **kwargs))

        return wrapper

    return decorate


def run_in_session(
    session_maker: sessionmaker,
    fn: Callable[[Session], T],
    retrier: Optional[TransactionRetrier] = None,
) -> T:
    """
    Short-lived session per attempt: every retry gets a fresh session from
    `session_maker`, committed on success and rolled back on error.
    """
    retrier = retrier or TransactionRetrier()

    def op() -> T:
        with session_scope(session_maker) as s:
            return fn(s)

    return retrier.execute(op, context=session_maker)
