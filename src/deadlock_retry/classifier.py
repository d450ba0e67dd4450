# deadlock_retry/classifier.py

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Iterable, List, Pattern, Tuple, Type

from sqlalchemy.exc import DBAPIError

from deadlock_retry.config import (
    DEFAULT_DEADLOCK_ERROR_PATTERNS,
    ErrorPattern,
    RetryConfig,
    as_pattern_tuple,
)


class Verdict(str, enum.Enum):
    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"


@dataclass(frozen=True)
class ClassifiedError:
    verdict: Verdict
    error: BaseException

    @property
    def retryable(self) -> bool:
        return self.verdict is Verdict.RETRYABLE


def compile_patterns(patterns: Iterable[ErrorPattern]) -> List[Pattern[str]]:
    """
    Plain strings are literal substrings. Pre-compiled patterns keep their
    own flags. Every pattern matches case-insensitively.
    """
    compiled = []
    for p in as_pattern_tuple(patterns):
        if isinstance(p, str):
            compiled.append(re.compile(re.escape(p), re.IGNORECASE))
        else:
            compiled.append(re.compile(p.pattern, p.flags | re.IGNORECASE))
    return compiled


class ErrorClassifier:
    """Decides whether a failed statement was a transient deadlock or lock wait timeout."""

    def __init__(
        self,
        patterns: Iterable[ErrorPattern] = DEFAULT_DEADLOCK_ERROR_PATTERNS,
        statement_error_types: Tuple[Type[BaseException], ...] = (DBAPIError,),
    ):
        self.patterns = compile_patterns(patterns)
        self.statement_error_types = tuple(statement_error_types)

    @classmethod
    def from_config(cls, config: RetryConfig) -> "ErrorClassifier":
        return cls(config.error_patterns, config.statement_error_types)

    def is_deadlock(self, error: BaseException) -> bool:
        if not isinstance(error, self.statement_error_types):
            return False
        message = str(error)
        return any(p.search(message) for p in self.patterns)

    def classify(self, error: BaseException) -> ClassifiedError:
        verdict = Verdict.RETRYABLE if self.is_deadlock(error) else Verdict.NON_RETRYABLE
        return ClassifiedError(verdict=verdict, error=error)
