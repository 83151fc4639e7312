"""Logging for exec-broker.

Modules log through ``get_logger(__name__)`` and pass their context as
``extra={...}``; the package root logger only carries a NullHandler until
an entry point (CLI, server) calls ``configure_logging()``.

Entry-point output renders the execution context after the message, so
interleaved records from concurrent executions stay attributable:

    WARNING [2026-02-25 10:02:54] exec_broker.sandbox - Terminating execution tree (execution_id=4f1c phase=run pid=42)

``EXEC_BROKER_LOG_LEVEL`` sets the initial level of the package logger.
"""

import logging
import os

import click

LIBRARY_LOGGER_NAME: str = "exec_broker"

# Record attributes rendered as key=value, in this order
CONTEXT_FIELDS: tuple[str, ...] = ("execution_id", "context_id", "phase", "pid", "language", "reason")

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

_env_level = logging.getLevelNamesMapping().get(os.environ.get("EXEC_BROKER_LOG_LEVEL", "").strip().upper())
if _env_level:
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level)


class ExecutionContextFormatter(logging.Formatter):
    """Appends the execution context carried in ``extra`` to each line."""

    def __init__(self) -> None:
        super().__init__(fmt="%(levelname)s [%(asctime)s] %(name)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = " ".join(
            f"{field}={getattr(record, field)}" for field in CONTEXT_FIELDS if getattr(record, field, None) is not None
        )
        return f"{line} ({context})" if context else line


class _EchoHandler(logging.Handler):
    """Writes formatted records to stderr through click, dimmed."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), dim=True), err=True)
        except Exception:  # noqa: BLE001
            self.handleError(record)


def get_logger(name: str) -> logging.Logger:
    """Logger for an exec_broker module (pass ``__name__``)."""
    return logging.getLogger(name)


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Attach the stderr handler to the package logger (idempotent).

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"). Overrides the env var.
        quiet: Only errors. Takes precedence over level.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _EchoHandler) for h in lib_logger.handlers):
        handler = _EchoHandler()
        handler.setFormatter(ExecutionContextFormatter())
        lib_logger.addHandler(handler)

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        # setLevel() raises ValueError on unknown names
        lib_logger.setLevel(level.upper() if isinstance(level, str) else level)
