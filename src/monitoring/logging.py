"""
Structured logging for operation-log validation.

Every record emitted while a log is folded carries the DID being validated
and the CID of the operation under inspection. Two renderings are available:
one JSON object per line for aggregation, and a colored single-line format
for terminals.

Rotation key material never reaches a handler: PEM private keys and
passphrases are masked in messages and in `extra` fields.

Usage:
    from monitoring.logging import LoggingContext, configure_logging

    configure_logging(level="DEBUG", json_output=True)

    with LoggingContext(did="did:plc:..."):
        logger.info("Validating log")
"""

import json
import logging
import os
import re
import sys
import threading
from datetime import UTC, datetime
from typing import Any

# ============================================================
# Key material masking
# ============================================================

MASK = "[REDACTED]"

SENSITIVE_PATTERNS = [
    (
        re.compile(r"-----BEGIN[^-]+PRIVATE KEY-----.*?-----END[^-]+PRIVATE KEY-----", re.DOTALL),
        "[REDACTED_PRIVATE_KEY]",
    ),
    (
        re.compile(r"\b(passphrase|password|secret)(\s*[:=]\s*)(\S+)", re.IGNORECASE),
        r"\1\2" + MASK,
    ),
]

# Field names whose values are always masked
REDACTED_FIELDS = frozenset((
    "passphrase",
    "password",
    "secret",
    "private_key",
    "private_key_pem",
))

# Attributes every LogRecord has; anything else came from `extra`
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime"}


def redact_string(text: str) -> str:
    """Mask key material in a string."""
    for pattern, replacement in SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def redact_sensitive_data(value: Any, depth: int = 0) -> Any:
    """
    Mask key material in a (possibly nested) value.

    Dict entries named in REDACTED_FIELDS are masked whole; strings are
    scanned for SENSITIVE_PATTERNS. Nesting deeper than 8 levels is cut off.
    """
    if depth > 8:
        return "..."

    if isinstance(value, dict):
        return {
            key: MASK if str(key).lower() in REDACTED_FIELDS else redact_sensitive_data(item, depth + 1)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_sensitive_data(item, depth + 1) for item in value]
    if isinstance(value, str):
        return redact_string(value)
    return value


# ============================================================
# Validation context
# ============================================================

_local = threading.local()


def get_validation_context() -> dict[str, Any]:
    """Context of the fold running on this thread."""
    return getattr(_local, "context", {})


def set_validation_context(**kwargs) -> None:
    """Add values to this thread's validation context."""
    _local.context = {**get_validation_context(), **kwargs}


def clear_validation_context() -> None:
    _local.context = {}


class LoggingContext:
    """
    Scope validation context to a block; the previous context is restored on
    exit, including anything added inside the block with
    set_validation_context().
    """

    def __init__(self, **kwargs):
        self.values = kwargs
        self._saved: dict[str, Any] = {}

    def __enter__(self):
        self._saved = get_validation_context()
        set_validation_context(**self.values)
        return self

    def __exit__(self, _exc_type, _exc_val, _exc_tb):
        _local.context = self._saved
        return False


# ============================================================
# Formatters
# ============================================================

def _extras(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record:

        {"timestamp": "...", "level": "WARNING", "logger": "plc_validator",
         "message": "Rejected operation log: ...",
         "context": {"did": "did:plc:...", "cid": "bafyrei..."},
         "location": {...}, "error": {...}}

    `location` is added from WARNING up; `extra` fields are merged in at the
    top level.
    """

    def __init__(self, include_stack_info: bool = True):
        super().__init__()
        self.include_stack_info = include_stack_info

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_string(record.getMessage()),
        }

        context = get_validation_context()
        if context:
            entry["context"] = dict(context)

        if record.levelno >= logging.WARNING:
            entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info and self.include_stack_info:
            entry["exception"] = self.formatException(record.exc_info)

        entry.update(redact_sensitive_data(_extras(record)))
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Colored single-line output for terminals."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]

        parts = [
            f"{color}{clock} {record.levelname[0]} [{record.name}]{self.RESET}",
            redact_string(record.getMessage()),
        ]

        context = get_validation_context()
        if context:
            parts.append(color + " ".join(f"{k}={v}" for k, v in context.items()) + self.RESET)

        extras = redact_sensitive_data(_extras(record))
        if extras:
            parts.append("[" + ", ".join(f"{k}={v}" for k, v in extras.items()) + "]")

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# ============================================================
# Setup
# ============================================================

def configure_logging(
    level: str = "INFO",
    json_output: bool | None = None,
    log_file: str | None = None,
) -> None:
    """
    Install handlers on the root logger, replacing any existing ones.

    Args:
        level: Root log level name
        json_output: JSON lines on stdout; None reads LOG_FORMAT=json
        log_file: Also append JSON lines to this file
    """
    if json_output is None:
        json_output = os.getenv("LOG_FORMAT", "").lower() == "json"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())
    root.addHandler(stream)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root.addHandler(file_handler)


def configure_from_config(config, log_file: str | None = None) -> None:
    """Apply the log settings of a config.ValidatorConfig."""
    configure_logging(level=config.log_level, json_output=config.json_logs, log_file=log_file)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
