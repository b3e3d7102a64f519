"""
Logging Framework for the Multiple-Imputation Regression Engine

This module provides the logging infrastructure with:
- Console and rotating-file output targets
- Configurable log levels and formats (from config.CONFIG)
- Performance tracking for imputation replicates and model fits
- Context tracking (e.g. current replicate) for debugging

Usage:
    from logger import get_logger

    logger = get_logger(__name__)
    logger.info("Imputation started")

    # Performance tracking
    with logger.track_time("replicate_fit"):
        fit = fit_model(table, formula, "linear")
"""

import logging
import logging.handlers
import sys
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, ClassVar, Dict, Optional

from config import CONFIG


class PerformanceLogger:
    """
    Track and log performance metrics.
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.timings: Dict[str, list] = {}
        self._lock = threading.Lock()

    @contextmanager
    def track_time(self, operation: str, log_level: str = "DEBUG"):
        """
        Context manager that measures and logs the elapsed time of a named operation.

        Does nothing when CONFIG['logging.log_performance'] is falsy. Timings are
        stored under `operation`; replicate fits running in worker threads share
        the store, so appends are guarded by a lock.
        """
        if not CONFIG.get('logging.log_performance'):
            yield
            return

        start_time = time.perf_counter()
        try:
            yield
        finally:
            elapsed = time.perf_counter() - start_time

            with self._lock:
                self.timings.setdefault(operation, []).append(elapsed)

            log_method = getattr(self.logger, log_level.lower(), self.logger.debug)
            log_method("%s completed in %.3fs", operation, elapsed)

    def get_timings(self, operation: Optional[str] = None, since: Optional[Dict[str, int]] = None) -> Dict[str, list]:
        """
        Return a copy of the recorded timings, optionally only those of `operation`.

        `since` is a mark from marks(); only timings recorded after it are returned.
        """
        since = since or {}
        with self._lock:
            operations = [operation] if operation else list(self.timings)
            snapshot = {op: self.timings.get(op, [])[since.get(op, 0):] for op in operations}
        if operation:
            return snapshot
        return {op: times for op, times in snapshot.items() if times}

    def marks(self) -> Dict[str, int]:
        """Current number of timings per operation, for use as `since`."""
        with self._lock:
            return {op: len(times) for op, times in self.timings.items()}


class ContextFilter(logging.Filter):
    """
    Add context information (e.g. replicate number) to log records.
    """

    def __init__(self):
        super().__init__()
        self.context: Dict[str, Any] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self.context.items():
            setattr(record, key, value)
        return True

    def set_context(self, **kwargs) -> None:
        self.context.update(kwargs)

    def clear_context(self) -> None:
        self.context.clear()


class LoggerFactory:
    """
    Factory for creating and managing loggers.
    """

    _loggers: ClassVar[Dict[str, 'Logger']] = {}
    _context_filter: Optional[ContextFilter] = None
    _perf_logger: Optional[PerformanceLogger] = None
    _configured = False
    _lock: ClassVar[threading.Lock] = threading.Lock()

    @classmethod
    def configure(cls) -> None:
        """
        Perform one-time configuration of logging from CONFIG['logging'].

        Sets level and format on the root logger and attaches console and
        optional rotating-file handlers. Idempotent. On error a warning is
        printed to stderr and configuration is marked done so that it is not
        retried on every get_logger call.
        """
        if cls._configured:
            return

        try:
            if not CONFIG.get('logging.enabled'):
                logging.disable(logging.CRITICAL)
                cls._configured = True
                return

            log_level = CONFIG.get('logging.level', 'INFO')
            formatter = logging.Formatter(
                CONFIG.get('logging.format'),
                datefmt=CONFIG.get('logging.date_format'),
            )

            root_logger = logging.getLogger()
            numeric_level = getattr(logging, str(log_level).upper(), None)
            if not isinstance(numeric_level, int):
                print(f"[WARNING] Invalid log level '{log_level}', defaulting to INFO", file=sys.stderr)
                numeric_level = logging.INFO
            root_logger.setLevel(numeric_level)

            cls._context_filter = ContextFilter()

            if CONFIG.get('logging.file_enabled'):
                cls._setup_file_logging(root_logger, formatter)

            if CONFIG.get('logging.console_enabled'):
                cls._setup_console_logging(root_logger, formatter)

            cls._configured = True

        except Exception as e:
            print(f"[WARNING] Logging configuration failed: {e}", file=sys.stderr)
            cls._configured = True

    @classmethod
    def _setup_file_logging(cls, root_logger: logging.Logger, formatter: logging.Formatter) -> None:
        """
        Attach a RotatingFileHandler using 'logging.log_dir', 'logging.log_file',
        'logging.max_log_size' and 'logging.backup_count'.
        """
        try:
            log_dir = Path(CONFIG.get('logging.log_dir', 'logs'))
            log_dir.mkdir(exist_ok=True, parents=True)

            handler = logging.handlers.RotatingFileHandler(
                log_dir / CONFIG.get('logging.log_file', 'mireg.log'),
                maxBytes=CONFIG.get('logging.max_log_size', 10485760),
                backupCount=CONFIG.get('logging.backup_count', 5),
            )
            handler.setFormatter(formatter)
            handler.addFilter(cls._context_filter)
            root_logger.addHandler(handler)

        except OSError as e:
            print(f"[WARNING] Failed to setup file logging: {e}", file=sys.stderr)

    @classmethod
    def _setup_console_logging(cls, root_logger: logging.Logger, formatter: logging.Formatter) -> None:
        """
        Attach a stdout StreamHandler at CONFIG['logging.console_level'].
        """
        console_handler = logging.StreamHandler(sys.stdout)
        console_level = CONFIG.get('logging.console_level', 'INFO')
        console_handler.setLevel(getattr(logging, console_level, logging.INFO))
        console_handler.setFormatter(formatter)
        console_handler.addFilter(cls._context_filter)
        root_logger.addHandler(console_handler)

    @classmethod
    def get_logger(cls, name: str) -> 'Logger':
        """
        Retrieve a cached Logger by name, configuring logging on first use.
        """
        if not cls._configured:
            cls.configure()

        with cls._lock:
            if name not in cls._loggers:
                cls._loggers[name] = Logger(logging.getLogger(name), cls._context_filter)
            return cls._loggers[name]

    @classmethod
    def get_performance_logger(cls) -> PerformanceLogger:
        """
        Return the shared PerformanceLogger, creating it on first access.
        """
        if cls._perf_logger is None:
            cls._perf_logger = PerformanceLogger(logging.getLogger('performance'))
        return cls._perf_logger


class Logger:
    """
    Wrapper around standard logger with additional features.
    """

    def __init__(self, standard_logger: logging.Logger, context_filter: Optional[ContextFilter] = None):
        self._logger = standard_logger
        self._context_filter = context_filter
        self._perf_logger = LoggerFactory.get_performance_logger()

    def debug(self, msg: str, *args, **kwargs) -> None:
        """Log debug message."""
        self._logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        """Log info message."""
        self._logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        """Log warning message."""
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        """Log error message."""
        self._logger.error(msg, *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        """Log a message together with the active exception traceback."""
        self._logger.exception(msg, *args, **kwargs)

    def log_operation(self, operation: str, status: str = "started", **details) -> None:
        """
        Log an operation event as a single line.

        The message is "[operation] STATUS key=value | key=value". A "failed"
        status is logged at ERROR level, any other status at INFO.

        Parameters:
            operation (str): Name of the operation (e.g. "imputation").
            status (str): "started", "completed", "failed", ...
            **details: Additional key/value pairs to include.
        """
        msg_parts = [f"[{operation}]"]

        if status:
            msg_parts.append(status.upper())

        if details:
            msg_parts.append(" | ".join(f"{k}={v}" for k, v in details.items()))

        msg = " ".join(msg_parts)

        if status.lower() == "failed":
            self.error(msg)
        else:
            self.info(msg)

    def log_analysis(self, analysis_type: str, outcome: str, n_vars: int, n_samples: int) -> None:
        """
        Log a one-line analysis summary when CONFIG['logging.log_analysis_operations'] is enabled.
        """
        if CONFIG.get('logging.log_analysis_operations'):
            self.info(
                "%s: outcome='%s', predictors=%d, n=%d",
                analysis_type,
                outcome,
                n_vars,
                n_samples,
            )

    @contextmanager
    def track_time(self, operation: str, log_level: str = "DEBUG"):
        """
        Record the elapsed time of the enclosed block under `operation`.
        """
        with self._perf_logger.track_time(operation, log_level):
            yield

    def get_timings(self, since: Optional[Dict[str, int]] = None) -> Dict[str, list]:
        """Return a copy of the recorded timings (operation -> list of seconds), after `since` when given."""
        return self._perf_logger.get_timings(since=since)

    def timing_marks(self) -> Dict[str, int]:
        """Mark to pass as `since` so that get_timings() covers only what follows."""
        return self._perf_logger.marks()

    def set_context(self, **kwargs) -> None:
        """Attach key/value context to subsequent log records."""
        if self._context_filter:
            self._context_filter.set_context(**kwargs)

    def clear_context(self) -> None:
        """Remove all context previously set."""
        if self._context_filter:
            self._context_filter.clear_context()


def get_logger(name: str) -> Logger:
    """
    Obtain a configured logger for the given name (typically `__name__`).
    """
    return LoggerFactory.get_logger(name)
