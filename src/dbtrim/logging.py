"""
Logging for dbtrim.

All records go to stderr because stdout can carry the dump itself. Two
formats are available: a human-readable line for interactive runs and JSON
lines for log collectors. Every call accepts keyword context (table, tenant,
row counts, timings) which both formats render.
"""

import json
import logging
import sys
import time
from contextlib import contextmanager
from typing import Any

ROOT_LOGGER_NAME = "dbtrim"

_loggers: dict[str, logging.Logger] = {}


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter, one object per line.

    Fields: timestamp, level, logger, message, plus ``context`` and
    ``exception`` when present.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Formats records as ``[TIMESTAMP] LEVEL: message (key=value, ...)``."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, self.datefmt)
        message = record.getMessage()

        context_str = ""
        context = getattr(record, "context", None)
        if context:
            context_str = " (" + ", ".join(f"{k}={v}" for k, v in context.items()) + ")"

        exc_str = ""
        if record.exc_info:
            exc_str = "\n" + self.formatException(record.exc_info)

        return f"[{timestamp}] {record.levelname}: {message}{context_str}{exc_str}"


def setup_logging(
    verbose: bool = False,
    no_progress: bool = False,
    structured: bool = False,
) -> None:
    """
    Configure the ``dbtrim`` logger hierarchy.

    Args:
        verbose: Enable DEBUG level logging
        no_progress: Only report warnings and errors
        structured: Emit JSON lines instead of human-readable text
    """
    if verbose:
        level = logging.DEBUG
    elif no_progress:
        level = logging.WARNING
    else:
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)

    formatter: logging.Formatter
    if structured:
        formatter = StructuredFormatter(datefmt="%Y-%m-%d %H:%M:%S")
    else:
        formatter = HumanReadableFormatter(datefmt="%Y-%m-%d %H:%M:%S")
    handler.setFormatter(formatter)

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.propagate = False


def get_logger(name: str) -> "ContextLogger":
    """Return a ContextLogger for a module (pass ``__name__``)."""
    if name not in _loggers:
        if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
            logger_name = name
        else:
            logger_name = f"{ROOT_LOGGER_NAME}.{name}"
        _loggers[name] = logging.getLogger(logger_name)

    return ContextLogger(_loggers[name])


class ContextLogger:
    """
    Logger wrapper that attaches keyword context to every record.

    Example:
        logger = get_logger(__name__)
        tenant_logger = logger.with_context(tenant=3)
        tenant_logger.info("Processing queue", entries=12)
    """

    def __init__(self, logger: logging.Logger):
        self._logger = logger
        self._context: dict[str, Any] = {}

    def _log(
        self, level: int, msg: str, context: dict[str, Any] | None = None, exc_info: Any = None
    ):
        merged_context = {**self._context}
        if context:
            merged_context.update(context)

        extra = {"context": merged_context} if merged_context else {}
        self._logger.log(level, msg, extra=extra, exc_info=exc_info)

    def debug(self, msg: str, **context):
        self._log(logging.DEBUG, msg, context)

    def info(self, msg: str, **context):
        self._log(logging.INFO, msg, context)

    def warning(self, msg: str, exc_info: Any = None, **context):
        self._log(logging.WARNING, msg, context, exc_info=exc_info)

    def error(self, msg: str, exc_info: Any = None, **context):
        self._log(logging.ERROR, msg, context, exc_info=exc_info)

    def with_context(self, **context) -> "ContextLogger":
        """Return a logger that adds ``context`` to every record."""
        new_logger = ContextLogger(self._logger)
        new_logger._context = {**self._context, **context}
        return new_logger

    @contextmanager
    def timed_operation(self, operation: str, **context):
        """
        Log the start, end and duration of a block.

        Failures are logged with their duration and re-raised.
        """
        start_time = time.monotonic()
        self.debug(f"Starting {operation}", **context)

        try:
            yield
        except Exception as e:
            elapsed = time.monotonic() - start_time
            self.error(
                f"Failed {operation}",
                duration_ms=int(elapsed * 1000),
                error=str(e),
                **context,
            )
            raise

        elapsed = time.monotonic() - start_time
        self.info(f"Completed {operation}", duration_ms=int(elapsed * 1000), **context)


def log_export_start(logger: ContextLogger, database_url: str, output: str) -> None:
    """Log the start of an export with the password masked."""
    from dbtrim.utils.connection import parse_database_url

    config = parse_database_url(database_url)
    logger.info(
        "Starting export",
        database=config.database,
        db_type=config.db_type.value,
        url=config.masked_url,
        output=output,
    )


def log_export_complete(
    logger: ContextLogger, output: str, size_bytes: int, table_count: int, duration_ms: int
) -> None:
    logger.info(
        "Export complete",
        output=output,
        size_bytes=size_bytes,
        table_count=table_count,
        duration_ms=duration_ms,
    )


def log_query_execution(
    logger: ContextLogger, query: str, row_count: int | None = None
) -> None:
    """Log a statement at DEBUG level with a shortened preview."""
    query_preview = query[:200] + "..." if len(query) > 200 else query

    context: dict[str, Any] = {"query_preview": " ".join(query_preview.split())}
    if row_count is not None:
        context["row_count"] = row_count

    logger.debug("Executing query", **context)


def log_table_exported(
    logger: ContextLogger,
    table: str,
    row_count: int,
    tenant_id: int | None = None,
    mode: str = "copy",
) -> None:
    context: dict[str, Any] = {"table": table, "mode": mode, "row_count": row_count}
    if tenant_id is not None:
        context["tenant"] = tenant_id

    logger.info(f"Exported {row_count} rows from {table}", **context)
