"""
Centralized logging manager for the application.

Every module obtains its logger through get_logger(). Handlers:

- Console StreamHandler on stdout, always attached.
- Per-worker log file in logs/ (worker_<pid>.log) when LOG_FILE_ENABLED.
- LokiLoggerHandler when LOKI_ENABLED. If the handler cannot be attached,
  records are appended as JSON lines to logs/loki_buffer.log so a log shipper
  can deliver them later.

Security events (key registered, assigned, revoked, authenticated, clone
suspected) flow through the same loggers, see utils/logging_utils.py.
"""

import json
import logging
import os
import socket
import sys
import threading
import traceback

from loki_logger_handler.loki_logger_handler import LokiLoggerHandler

from secure_key_vault.config import settings

LOKI_TAGS: dict[str, str] = {
    "app": settings.APP_NAME,
    "env": settings.ENV,
}
LOG_LEVEL: str = settings.LOG_LEVEL.upper()
LOGS_DIR: str = "logs"
BUFFER_FILE: str = os.path.join(LOGS_DIR, "loki_buffer.log")
BUFFER_LOCK = threading.Lock()
DEFAULT_LOGGER_NAME = "Secure_Key_Vault"


def _ensure_console_handler(logger: logging.Logger, formatter: logging.Formatter) -> bool:
    """
    Ensure logger has a StreamHandler for console output.

    Returns:
        bool: True if a new StreamHandler was added, False if one already existed
    """
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) is sys.stdout:
            return False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logger.level)
    logger.addHandler(console_handler)
    return True


def _write_to_buffer(record: logging.LogRecord) -> None:
    """
    Append a log record to the buffer file as one JSON line.

    Args:
        record: The log record to write.
    """
    log_dict = {
        "ts": record.created,
        "level": record.levelname,
        "logger": record.name,
        "msg": record.getMessage(),
        "process": record.process,
        "filename": record.filename,
        "funcName": record.funcName,
        "lineno": record.lineno,
        "host": socket.gethostname(),
        "app": LOKI_TAGS["app"],
        "env": LOKI_TAGS["env"],
        "exception": None,
        "request_id": getattr(record, "request_id", None),
        "user_id": getattr(record, "user_id", None),
    }
    if record.exc_info:
        log_dict["exception"] = "".join(traceback.format_exception(*record.exc_info))
    try:
        with BUFFER_LOCK:
            os.makedirs(LOGS_DIR, exist_ok=True)
            with open(BUFFER_FILE, "a", encoding="utf-8") as f:
                f.write(json.dumps(log_dict, ensure_ascii=False) + "\n")
    except OSError as e:
        sys.stderr.write(f"[LoggingManager] Failed to write log to buffer file '{BUFFER_FILE}': {e}\n")


class BufferHandler(logging.Handler):
    """Fallback handler used while Loki cannot be reached."""

    def emit(self, record: logging.LogRecord) -> None:
        _write_to_buffer(record)


class PrefixFilter(logging.Filter):
    """Prepend a component prefix such as "[Challenge Store]" to each message."""

    def __init__(self, prefix: str) -> None:
        super().__init__()
        self.prefix = prefix

    def filter(self, record: logging.LogRecord) -> bool:
        if self.prefix and not getattr(record, "_prefix_applied", False):
            record.msg = f"{self.prefix} {record.msg}"
            record._prefix_applied = True
        return True


def get_worker_log_filename() -> str:
    return os.path.join(LOGS_DIR, f"worker_{os.getpid()}.log")


def get_logger(name: str = DEFAULT_LOGGER_NAME, add_loki: bool = True, prefix: str = "") -> logging.Logger:
    """
    Return a configured logger.

    Args:
        name: Logger name. Component loggers pass a prefix instead of a new name
            so they share handlers.
        add_loki: Attach the Loki handler when LOKI_ENABLED is set.
        prefix: Text prepended to every message, e.g. "[Ceremony Engine]".
    """
    if prefix:
        logger = logging.getLogger(f"{name}.{prefix.strip('[]').replace(' ', '_')}")
        logger.propagate = True
        if not any(isinstance(f, PrefixFilter) for f in logger.filters):
            logger.addFilter(PrefixFilter(prefix))
        logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
        get_logger(name, add_loki=add_loki)
        return logger

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    formatter = logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")

    if _ensure_console_handler(logger, formatter):
        logger.debug("[LoggingManager] Console StreamHandler attached to logger '%s'", name)

    if settings.LOG_FILE_ENABLED:
        log_filename = get_worker_log_filename()
        if not any(
            isinstance(h, logging.FileHandler) and getattr(h, "baseFilename", None) == os.path.abspath(log_filename)
            for h in logger.handlers
        ):
            os.makedirs(LOGS_DIR, exist_ok=True)
            file_handler = logging.FileHandler(log_filename)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    has_remote = any(isinstance(h, (LokiLoggerHandler, BufferHandler)) for h in logger.handlers)
    if add_loki and settings.LOKI_ENABLED and not has_remote:
        try:
            loki_handler = LokiLoggerHandler(
                url=settings.LOKI_URL,
                labels=LOKI_TAGS,
                auth=None,
                compressed=settings.LOKI_COMPRESS,
            )
            logger.addHandler(loki_handler)
            logger.info(
                "[LoggingManager] LokiLoggerHandler attached to logger '%s' (url=%s, labels=%s)",
                name,
                settings.LOKI_URL,
                LOKI_TAGS,
            )
        except (ValueError, OSError) as e:
            logger.error(
                "[LoggingManager] Failed to attach LokiLoggerHandler: %s. Falling back to file buffer.",
                e,
                exc_info=True,
            )
            logger.addHandler(BufferHandler())
    return logger
