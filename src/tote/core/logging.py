"""
Structured logging setup using structlog.

Every settlement component logs through a bound structlog logger. A job's
identifiers (worker, queue item, game) are bound once with
settlement_context() and ride along on every event logged while it runs,
including events from the store and the queue.
"""
import logging
import sys
from decimal import Decimal
from typing import Any, ContextManager, MutableMapping, Optional

import structlog


def stringify_decimals(
    logger: Any,
    method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Render Decimal values as plain strings so money is logged exactly."""
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = str(value)
    return event_dict


def settlement_context(**identifiers: Any) -> ContextManager[Any]:
    """Bind job identifiers to every log event inside the block.

    Usage:
        with settlement_context(worker_id="w1", queue_item_id=item.id, game_id=item.game_id):
            await processor.process_settlement(item)

    None values are not bound.
    """
    return structlog.contextvars.bound_contextvars(
        **{key: value for key, value in identifiers.items() if value is not None}
    )


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> structlog.stdlib.BoundLogger:
    """Configure structured logging for tote.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, output JSON formatted logs
        log_file: Optional file path for log output

    Returns:
        Configured logger instance
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handlers: list[logging.Handler] = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    handlers.append(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        handlers.append(file_handler)

    # force: the CLI may configure logging more than once per process
    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        handlers=handlers,
        force=True,
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        stringify_decimals,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(
                colors=sys.stdout.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            ),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger("tote")


def get_logger(name: str = "tote") -> structlog.stdlib.BoundLogger:
    """Get a logger instance; names are prefixed with 'tote.'."""
    if not name.startswith("tote"):
        name = f"tote.{name}"
    return structlog.get_logger(name)
