"""Centralized logging for qemu-runner.

Library logging conventions:
- NullHandler attached to the library root logger
- No other handlers unless an entry point asks for them
- QEMU_RUNNER_LOG_LEVEL env var controls the level
- configure_logging() for the CLI

CLI output format:
    WARNING [2026-02-25 10:02:54] qemu_runner.executor - Step exited (step=build exit_code=3)

Only the correlation fields in _CONTEXT_FIELDS are rendered from `extra`;
command lines (which embed secret values) never reach the terminal.

Records are queued and written to stderr via click.echo() from a daemon
thread, so a slow terminal never stalls the event loop driving the VM.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "qemu_runner"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

_env_level = os.environ.get("QEMU_RUNNER_LOG_LEVEL", "").strip().upper()
_env_level_value = logging.getLevelNamesMapping().get(_env_level)
if _env_level_value:  # excludes NOTSET (0) and missing keys (None)
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level_value)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

_QUEUE_CAPACITY = 4096

_CONTEXT_FIELDS = ("context_id", "image", "step", "ssh_port", "port", "exit_code", "returncode", "error")


class _ContextFormatter(logging.Formatter):
    """Appends the record's correlation fields (from `extra=`) to the message."""

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        fields = [f"{name}={record.__dict__[name]}" for name in _CONTEXT_FIELDS if name in record.__dict__]
        if fields:
            text = f"{text} ({' '.join(fields)})"
        return text


class _ClickHandler(logging.Handler):
    """Writes formatted records to stderr via click.echo with dim styling.

    Runs on the QueueListener thread. click.echo() strips ANSI codes when
    stderr is not a TTY.
    """

    def __init__(self) -> None:
        super().__init__()
        self.formatter = _ContextFormatter(fmt=_FMT, datefmt=_DATEFMT)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            click.echo(click.style(msg, dim=True), err=True)
        except BlockingIOError:
            pass  # Stderr buffer full -- drop
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _NonBlockingHandler(logging.handlers.QueueHandler):
    """Queue-backed handler that never blocks the caller.

    When the bounded queue is full, records are dropped.
    """

    def __init__(self) -> None:
        q: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(q)
        self._listener = logging.handlers.QueueListener(q, _ClickHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        """Same-process queue, no pickling needed."""
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module name.

    All qemu_runner modules use this instead of logging.getLogger()
    directly so they share one logger hierarchy.
    """
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Configure library logging for CLI / application entry points.

    Adds a _NonBlockingHandler if none exists (idempotent), then sets the
    log level.

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"). Overrides env var.
        quiet: If True, set level to ERROR. Takes precedence over level.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _NonBlockingHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_NonBlockingHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
