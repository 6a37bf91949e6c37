"""
Error hierarchy and transient-retry helper.

Errors are split the way settlement needs to react to them:
- TransientError: may succeed on retry (store busy/locked by another worker)
- PermanentError: will not succeed on retry without a data fix
- DuplicateRecordError: a uniqueness constraint rejected an insert, which
  settlement reads as "this effect was already recorded"

Usage:
    from tote.core.errors import retry_transient, StoreBusyError

    @retry_transient(max_attempts=5)
    async def write_row():
        ...
"""
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random_exponential,
)

log = structlog.get_logger()


class ErrorCategory(str, Enum):
    """Classification of error types for retry decisions."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class ToteError(Exception):
    """Base exception for all tote errors."""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message


class TransientError(ToteError):
    """Error that may succeed on retry."""

    category = ErrorCategory.TRANSIENT


class StoreBusyError(TransientError):
    """The ledger store is locked by another writer."""


class PermanentError(ToteError):
    """Error that will NOT succeed on retry."""

    category = ErrorCategory.PERMANENT


class StoreError(PermanentError):
    """A ledger store statement failed for a non-transient reason."""


class DataIntegrityError(PermanentError):
    """A row violates a domain invariant (e.g. a trade without a side)."""


class ResourceNotFoundError(PermanentError):
    """Requested resource does not exist."""


class GameNotFoundError(ResourceNotFoundError):
    """The game a settlement job points at is missing.

    Permanent from the store's point of view, but the queue still retries it
    with backoff because the row may simply not be replicated yet.
    """

    def __init__(self, game_id: int):
        super().__init__(f"Game not found: {game_id}")
        self.game_id = game_id


class DuplicateRecordError(ToteError):
    """A uniqueness constraint rejected the insert."""

    def __init__(self, table: str, cause: Optional[Exception] = None):
        super().__init__(f"Duplicate record in {table}", cause)
        self.table = table


# Default values
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MIN_WAIT_SECONDS = 0.05
DEFAULT_MAX_WAIT_SECONDS = 2.0
DEFAULT_EXPONENTIAL_MULTIPLIER = 2.0

F = TypeVar("F", bound=Callable[..., Any])


def _log_retry(log_context: dict[str, Any]) -> Callable[[RetryCallState], None]:
    def callback(state: RetryCallState) -> None:
        exception = state.outcome.exception() if state.outcome else None
        log.warning(
            "retry_attempt",
            attempt=state.attempt_number,
            error=str(exception) if exception else None,
            error_type=type(exception).__name__ if exception else None,
            wait_seconds=state.next_action.sleep if state.next_action else 0,
            **log_context,
        )

    return callback


def retry_transient(
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    min_wait: float = DEFAULT_MIN_WAIT_SECONDS,
    max_wait: float = DEFAULT_MAX_WAIT_SECONDS,
    multiplier: float = DEFAULT_EXPONENTIAL_MULTIPLIER,
    jitter: bool = True,
    log_context: Optional[dict[str, Any]] = None,
) -> Callable[[F], F]:
    """Decorator retrying an async function on TransientError with exponential backoff.

    Anything that is not a TransientError (including DuplicateRecordError)
    propagates on the first attempt.
    """
    if jitter:
        wait_strategy = wait_random_exponential(multiplier=multiplier, min=min_wait, max=max_wait)
    else:
        wait_strategy = wait_exponential(multiplier=multiplier, min=min_wait, max=max_wait)
    callback = _log_retry(log_context or {})

    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_strategy,
                retry=retry_if_exception_type(TransientError),
                before_sleep=callback,
                reraise=True,
            ):
                with attempt:
                    return await func(*args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return decorator


def is_retryable(error: BaseException) -> bool:
    """True if the job that raised this error should be retried later."""
    if isinstance(error, ToteError):
        return error.category != ErrorCategory.PERMANENT or isinstance(error, GameNotFoundError)
    return True
