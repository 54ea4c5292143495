"""
Logging utilities for safe log output.

Provides a custom LogRecord factory that sanitizes log arguments:

- Newlines and carriage returns are escaped so user-provided values
  (usernames, hosts, stream ids) cannot forge log entries (CWE-117).
- Upstream credentials embedded in URLs are redacted. Xtream URLs carry
  the password either as a path segment (/live/<user>/<pass>/<id>.m3u8)
  or as a query parameter (player_api.php?username=..&password=..), and
  httpx includes the full URL in its exception messages.

Install once at startup via install_safe_logging().
"""

import logging
import re

_ORIGINAL_FACTORY = logging.getLogRecordFactory()

REDACTED = "***"

_PATH_CREDENTIALS_RE = re.compile(r"/(live|movie|series|timeshift)/[^/\s]+/[^/\s]+/")
_QUERY_CREDENTIALS_RE = re.compile(r"([?&](?:username|password)=)[^&\s'\"]*", re.IGNORECASE)


def redact_credentials(text: str) -> str:
    """Mask usernames and passwords inside upstream URLs."""
    text = _PATH_CREDENTIALS_RE.sub(rf"/\1/{REDACTED}/{REDACTED}/", text)
    return _QUERY_CREDENTIALS_RE.sub(rf"\1{REDACTED}", text)


def _sanitize_value(value):
    """Escape line breaks and redact credentials in a value for safe logging."""
    if isinstance(value, BaseException):
        value = str(value)
    if isinstance(value, str):
        value = value.replace('\r\n', '\\r\\n').replace('\r', '\\r').replace('\n', '\\n')
        return redact_credentials(value)
    return value


def _safe_record_factory(*args, **kwargs):
    """LogRecord factory that sanitizes args and message."""
    record = _ORIGINAL_FACTORY(*args, **kwargs)
    if isinstance(record.msg, str):
        record.msg = redact_credentials(record.msg)
    if record.args:
        if isinstance(record.args, dict):
            record.args = {k: _sanitize_value(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(_sanitize_value(a) for a in record.args)
    return record


def install_safe_logging():
    """
    Install a global LogRecord factory that sanitizes all log arguments.

    Call once during application startup, before any logging occurs.
    """
    logging.setLogRecordFactory(_safe_record_factory)


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging and install the sanitizing factory."""
    install_safe_logging()
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
