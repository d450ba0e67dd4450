# deadlock_retry/schemas/retry_event.py

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

RetryEventKind = Literal["retry", "exhausted", "diagnostics"]


class RetryEvent(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    event: RetryEventKind

    retry_count: int
    max_retries: int
    delay_ms: int = 0

    error_type: Optional[str] = None
    error_message: Optional[str] = None

    elapsed_ms: float = 0.0

    @classmethod
    def for_error(cls, event: RetryEventKind, error: BaseException, **fields) -> "RetryEvent":
        return cls(
            event=event,
            error_type=type(error).__name__,
            error_message=str(error).splitlines()[0] if str(error) else None,
            **fields,
        )
