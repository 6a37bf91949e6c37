"""Core framework infrastructure - config, logging, lifecycle, errors."""

from tote.core.config import ConfigManager
from tote.core.errors import (
    DataIntegrityError,
    DuplicateRecordError,
    ErrorCategory,
    GameNotFoundError,
    PermanentError,
    ResourceNotFoundError,
    StoreBusyError,
    StoreError,
    ToteError,
    TransientError,
    is_retryable,
    retry_transient,
)
from tote.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus
from tote.core.logging import get_logger, settlement_context, setup_logging

__all__ = [
    # Config
    "ConfigManager",
    # Logging
    "setup_logging",
    "get_logger",
    "settlement_context",
    # Lifecycle
    "BaseComponent",
    "HealthCheckResult",
    "HealthStatus",
    # Errors
    "ErrorCategory",
    "ToteError",
    "TransientError",
    "StoreBusyError",
    "PermanentError",
    "StoreError",
    "DataIntegrityError",
    "ResourceNotFoundError",
    "GameNotFoundError",
    "DuplicateRecordError",
    # Retry
    "retry_transient",
    "is_retryable",
]
