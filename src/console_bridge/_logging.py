"""Diagnostic logging for console-bridge.

Everything logs under the ``console_bridge`` logger, which carries only a
NullHandler until an entry point calls ``configure_logging()``. The level
can be preset with CONSOLE_BRIDGE_LOG_LEVEL.

Records are handed to a bounded queue and written to stderr by a listener
thread, so a slow terminal never stalls the event loop that is tailing the
guest console. When the queue is full the record is dropped. Guest output
goes to stdout; diagnostics never share that stream.

Line format::

    INFO [2026-10-17 09:14:03] console_bridge.discovery - Guest serial console discovered
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "console_bridge"
LOG_LEVEL_ENV: str = "CONSOLE_BRIDGE_LOG_LEVEL"

_QUEUE_CAPACITY = 1024
_formatter = logging.Formatter("%(levelname)s [%(asctime)s] %(name)s - %(message)s", "%Y-%m-%d %H:%M:%S")

_root = logging.getLogger(LIBRARY_LOGGER_NAME)
_root.addHandler(logging.NullHandler())

_preset = logging.getLevelNamesMapping().get(os.environ.get(LOG_LEVEL_ENV, "").strip().upper())
if _preset:
    _root.setLevel(_preset)


class _StderrEcho(logging.Handler):
    """Listener-side sink: one dimmed line per record on stderr."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(_formatter.format(record), dim=True), err=True)
        except BlockingIOError:
            # stderr is non-blocking and full; losing a diagnostic line is acceptable
            pass
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _QueuedStderrHandler(logging.handlers.QueueHandler):
    """Producer-side handler; put_nowait only, never waits on the sink."""

    def __init__(self) -> None:
        records: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(records)
        # Records are filtered by logger level before queuing; the sink takes all of them
        self.listener = logging.handlers.QueueListener(records, _StderrEcho(), respect_handler_level=False)
        self.listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same process: the listener formats the original record
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self.listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Logger for a console_bridge module (pass ``__name__``)."""
    return logging.getLogger(name)


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Route console_bridge diagnostics to stderr.

    Safe to call more than once; the stderr handler is installed a single
    time and later calls only adjust the level.

    Args:
        level: Explicit level, overriding CONSOLE_BRIDGE_LOG_LEVEL
        quiet: Errors only (wins over ``level``)
    """
    if not any(isinstance(h, _QueuedStderrHandler) for h in _root.handlers):
        _root.addHandler(_QueuedStderrHandler())

    if quiet:
        _root.setLevel(logging.ERROR)
    elif level is not None:
        _root.setLevel(level)
    elif _root.level == logging.NOTSET:
        _root.setLevel(logging.INFO)
