"""Structured logging setup: structlog over a queue-backed JSON-lines sink."""

from __future__ import annotations

import atexit
import logging
import logging.handlers
import queue
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Literal

import structlog

_DEFAULT_LOG_FILENAME: Final[str] = "taskwave.jsonl"
_DEFAULT_LOGGER_NAME: Final[str] = "taskwave"

LogFormat = Literal["json", "console"]

_ACTIVE_HANDLE_LOCK = threading.Lock()
_ACTIVE_HANDLE: LoggingHandle | None = None
_ATEXIT_REGISTERED = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Configuration for one run's structured logging."""

    run_id: str
    base_log_dir: Path | str = Path(".taskwave/logs")
    logger_name: str = _DEFAULT_LOGGER_NAME
    level: int | str = "INFO"
    log_format: LogFormat = "json"
    log_to_stdout: bool = True
    log_filename: str = _DEFAULT_LOG_FILENAME

    @classmethod
    def from_config(
        cls,
        observability_config: Mapping[str, object],
        *,
        run_id: str,
        log_to_stdout: bool = True,
    ) -> LoggingConfig:
        """Build from an ``[observability]`` section of the loaded config."""
        raw_level = observability_config.get("log_level", "INFO")
        raw_dir = observability_config.get("log_dir", ".taskwave/logs")
        raw_format = observability_config.get("log_format", "json")
        return cls(
            run_id=run_id,
            base_log_dir=raw_dir if isinstance(raw_dir, (str, Path)) else ".taskwave/logs",
            level=raw_level if isinstance(raw_level, (int, str)) else "INFO",
            log_format="console" if raw_format == "console" else "json",
            log_to_stdout=log_to_stdout,
        )


class _PassthroughQueueHandler(logging.handlers.QueueHandler):
    """Queue handler that leaves the structlog event dict on the record for the sinks."""

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        return record


class LoggingHandle:
    """Runtime handle for an active logging setup."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        run_id: str,
        log_path: Path,
        queue_handler: logging.Handler,
        sink_handlers: tuple[logging.Handler, ...],
        listener: logging.handlers.QueueListener,
    ) -> None:
        self.logger = logger
        self.run_id = run_id
        self.log_path = log_path
        self._queue_handler = queue_handler
        self._sink_handlers = sink_handlers
        self._listener = listener
        self._shutdown_lock = threading.Lock()
        self._is_shutdown = False

    @property
    def is_shutdown(self) -> bool:
        return self._is_shutdown

    def shutdown(self) -> None:
        with self._shutdown_lock:
            if self._is_shutdown:
                return

            # stop() drains every queued record before returning.
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()

            for handler in self._sink_handlers:
                handler.flush()
                handler.close()

            self._is_shutdown = True


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def setup_logging(config: LoggingConfig) -> LoggingHandle:
    """
    Configure structlog and stdlib logging for one run.

    Records go through a queue to a JSON-lines file at
    ``<base_log_dir>/<run_id>/taskwave.jsonl`` and, optionally, to stderr.
    Any handle from an earlier call is shut down first.
    """
    _shutdown_previous_active_handle()

    run_id = _validate_run_id(config.run_id)
    if Path(config.log_filename).name != config.log_filename or not config.log_filename:
        raise ValueError("log_filename must be a bare file name")
    level = _parse_log_level(config.level)

    run_log_dir = Path(config.base_log_dir) / run_id
    run_log_dir.mkdir(parents=True, exist_ok=True)
    log_path = run_log_dir / config.log_filename

    shared = _shared_processors()
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(sort_keys=True),
            foreign_pre_chain=shared,
        )
    )
    sink_handlers: list[logging.Handler] = [file_handler]

    if config.log_to_stdout:
        renderer: Any = (
            structlog.dev.ConsoleRenderer(colors=False)
            if config.log_format == "console"
            else structlog.processors.JSONRenderer(sort_keys=True)
        )
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setLevel(level)
        stream_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=shared)
        )
        sink_handlers.append(stream_handler)

    logger = logging.getLogger(config.logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue()
    queue_handler = _PassthroughQueueHandler(log_queue)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(
        log_queue,
        *sink_handlers,
        respect_handler_level=True,
    )
    listener.start()
    logger.addHandler(queue_handler)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(run_id=run_id)

    handle = LoggingHandle(
        logger=logger,
        run_id=run_id,
        log_path=log_path,
        queue_handler=queue_handler,
        sink_handlers=tuple(sink_handlers),
        listener=listener,
    )
    with _ACTIVE_HANDLE_LOCK:
        global _ACTIVE_HANDLE
        _ACTIVE_HANDLE = handle

    _register_atexit_shutdown()
    return handle


def shutdown_logging(handle: LoggingHandle | None = None) -> None:
    """Drain the queue, close sinks and restore structlog defaults."""
    resolved = handle if handle is not None else get_active_logging_handle()
    if resolved is None:
        return

    resolved.shutdown()
    with _ACTIVE_HANDLE_LOCK:
        global _ACTIVE_HANDLE
        if _ACTIVE_HANDLE is resolved:
            _ACTIVE_HANDLE = None
            structlog.reset_defaults()
            structlog.contextvars.clear_contextvars()


def get_active_logging_handle() -> LoggingHandle | None:
    with _ACTIVE_HANDLE_LOCK:
        return _ACTIVE_HANDLE


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields (run, session, task ids) for log events in scope."""
    bound: dict[str, str] = {}
    for key, value in fields.items():
        if value is None:
            continue
        normalized = value.strip() if isinstance(value, str) else ""
        if not normalized:
            raise ValueError(f"correlation value for {key!r} must be a non-empty string")
        bound[key] = normalized

    with structlog.contextvars.bound_contextvars(**bound):
        yield


def _shutdown_previous_active_handle() -> None:
    existing = get_active_logging_handle()
    if existing is not None:
        existing.shutdown()

    with _ACTIVE_HANDLE_LOCK:
        global _ACTIVE_HANDLE
        _ACTIVE_HANDLE = None


def _register_atexit_shutdown() -> None:
    global _ATEXIT_REGISTERED
    if _ATEXIT_REGISTERED:
        return
    atexit.register(shutdown_logging)
    _ATEXIT_REGISTERED = True


def _validate_run_id(run_id: str) -> str:
    if not isinstance(run_id, str):
        raise ValueError(f"run_id must be a string, got {type(run_id).__name__}")
    normalized = run_id.strip()
    if not normalized:
        raise ValueError("run_id must not be empty")
    if Path(normalized).name != normalized:
        raise ValueError("run_id must not include path separators")
    return normalized


def _parse_log_level(value: int | str) -> int:
    if isinstance(value, int):
        return value

    normalized = value.strip().upper()
    parsed = logging.getLevelName(normalized)
    if isinstance(parsed, int):
        return parsed

    raise ValueError(f"unsupported logging level {value!r}")


__all__ = [
    "LogFormat",
    "LoggingConfig",
    "LoggingHandle",
    "correlation_scope",
    "get_active_logging_handle",
    "setup_logging",
    "shutdown_logging",
]
