"""
Logging utilities for safe log output.

Catalog titles, provider responses and rule-builder chat text are all
untrusted and may contain newlines or control characters that forge log
entries (CWE-117). A custom LogRecord factory escapes them before any
handler formats the record.

Install once at startup via install_safe_logging(), then configure_logging().
"""

import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_ORIGINAL_FACTORY = logging.getLogRecordFactory()


def _sanitize_value(value):
    """Strip newlines and carriage returns from a value for safe logging."""
    if isinstance(value, str):
        return value.replace('\r\n', '\\r\\n').replace('\r', '\\r').replace('\n', '\\n')
    return value


def _safe_record_factory(*args, **kwargs):
    """LogRecord factory that sanitizes args to prevent log injection."""
    record = _ORIGINAL_FACTORY(*args, **kwargs)
    if isinstance(record.msg, str):
        record.msg = _sanitize_value(record.msg)
    if record.args:
        if isinstance(record.args, dict):
            record.args = {k: _sanitize_value(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(_sanitize_value(a) for a in record.args)
    return record


def install_safe_logging():
    """
    Install a global LogRecord factory that sanitizes all log messages.

    f-string messages are escaped as a whole; %-style arguments are
    escaped individually.
    """
    logging.setLogRecordFactory(_safe_record_factory)


def configure_logging(level: str = "INFO") -> None:
    """Attach the service stream handler to the root logger."""
    root = logging.getLogger()
    if not any(getattr(h, "_catalog_handler", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._catalog_handler = True
        root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
