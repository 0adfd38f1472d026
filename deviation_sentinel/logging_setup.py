"""Logging configuration with structured extras and secret redaction."""

from __future__ import annotations

import logging
import re
import sys
from typing import Any, Callable, Mapping, Optional, TextIO

REDACTED = "***REDACTED***"

_SENSITIVE_KEYS = (
    "apikey",
    "api_key",
    "x_mbx_apikey",
    "secret",
    "signature",
    "password",
    "passphrase",
    "private_key",
    "privatekey",
    "access_token",
    "auth_token",
)

_QUERY_PATTERN = re.compile(
    r"(?i)\b(signature|apikey|api_key|secret|password|passphrase|private_key|privatekey)=([^&\s'\"]+)"
)

_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys() | {"message", "asctime"}
)

_FACTORY_MARKER = "_sentinel_redacting"


def _is_sensitive(key: Any) -> bool:
    normalized = str(key).replace("-", "_").replace(" ", "").lower()
    return any(marker in normalized for marker in _SENSITIVE_KEYS)


def redact(value: Any) -> Any:
    """Return ``value`` with credential-looking entries masked."""

    if isinstance(value, Mapping):
        return {key: (REDACTED if _is_sensitive(key) else redact(item)) for key, item in value.items()}
    if isinstance(value, list):
        return [redact(item) for item in value]
    if isinstance(value, tuple):
        return tuple(redact(item) for item in value)
    if isinstance(value, str):
        return _QUERY_PATTERN.sub(lambda match: f"{match.group(1)}={REDACTED}", value)
    return value


def _redact_record(record: logging.LogRecord) -> None:
    if isinstance(record.args, Mapping):
        record.args = redact(record.args)
    elif isinstance(record.args, tuple):
        record.args = tuple(redact(arg) for arg in record.args)
    try:
        message = record.getMessage()
    except (TypeError, ValueError):
        return
    record.msg = redact(message)
    record.args = ()


def _install_redacting_factory() -> None:
    current: Callable[..., logging.LogRecord] = logging.getLogRecordFactory()
    if getattr(current, _FACTORY_MARKER, False):
        return

    def factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
        record = current(*args, **kwargs)
        _redact_record(record)
        return record

    setattr(factory, _FACTORY_MARKER, True)
    logging.setLogRecordFactory(factory)


class StructuredFormatter(logging.Formatter):
    """Append ``extra=`` fields to the message as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }
        if not extras:
            return base
        rendered = " ".join(f"{key}={redact(value)!r}" for key, value in sorted(extras.items()))
        return f"{base} | {rendered}"


def debug_to_logging_level(debug_level: int) -> int:
    if debug_level <= 0:
        return logging.WARNING
    if debug_level == 1:
        return logging.INFO
    return logging.DEBUG


def configure_logging(debug: int = 1, *, stream_target: Optional[TextIO] = None) -> None:
    """Route all logging to ``stream_target`` (stderr by default) at ``debug`` verbosity."""

    _install_redacting_factory()
    level = debug_to_logging_level(debug)
    handler = logging.StreamHandler(stream_target or sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s"))
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)
    logging.getLogger("deviation_sentinel").setLevel(level)
    # ccxt logs full request headers at DEBUG.
    logging.getLogger("ccxt").setLevel(max(level, logging.INFO))
