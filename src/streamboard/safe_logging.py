"""Secret-safe logging utilities for streamboard.

Log output never contains credentials:
- Bearer/Basic authorization values and admin secrets are masked in messages
- Sensitive fields in structured data are redacted
- Console output goes through Rich
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

# Fields that should be redacted in logs
REDACT_FIELDS = frozenset(
    {
        "password",
        "secret",
        "token",
        "api_key",
        "authorization",
        "credential",
        "access_token",
        "client_secret",
        "admin_secret",
    }
)

# (pattern, replacement) pairs applied in order to every log message
MESSAGE_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\b(Bearer|Basic)\s+[A-Za-z0-9._~+/=-]+", re.I), r"\1 [REDACTED]"),
    (re.compile(r"\b(access_token|client_secret|secret|token)=([^&\s]+)", re.I), r"\1=[REDACTED]"),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[EMAIL]"),
]


def redact_value(value: str, visible_chars: int = 4) -> str:
    """Keep the first few characters of a secret, e.g. "BQDa***"."""
    if len(value) <= visible_chars:
        return "***"
    return f"{value[:visible_chars]}***"


def redact_dict(data: Mapping[str, Any], fields: frozenset[str] = REDACT_FIELDS) -> dict[str, Any]:
    """
    Copy of ``data`` with secret-looking string values masked.

    A key is secret when any entry of ``fields`` occurs in it, ignoring case,
    so `spotify.client_secret` and `trigger.admin_secret` both match. Nested
    mappings and lists of mappings are walked.
    """

    def is_secret(key: str) -> bool:
        lowered = key.lower()
        return any(name in lowered for name in fields)

    def walk(value: Any) -> Any:
        if isinstance(value, Mapping):
            return redact_dict(value, fields)
        if isinstance(value, list):
            return [walk(item) for item in value]
        return value

    return {
        key: redact_value(value) if is_secret(key) and isinstance(value, str) else walk(value)
        for key, value in data.items()
    }


def sanitize_message(message: str) -> str:
    """Mask credentials and email addresses in a log message.

    Args:
        message: Log message to sanitize

    Returns:
        Sanitized message
    """
    for pattern, replacement in MESSAGE_RULES:
        message = pattern.sub(replacement, message)
    return message


class SafeLogFormatter(logging.Formatter):
    """Log formatter that masks credentials.

    Sanitizes the message template and any string formatting arguments.
    """

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        sanitize_messages: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.sanitize_messages = sanitize_messages

    def format(self, record: logging.LogRecord) -> str:
        # Copy so other handlers see the original record
        record = logging.makeLogRecord(record.__dict__)

        if self.sanitize_messages:
            record.msg = sanitize_message(str(record.msg))
            if record.args:
                record.args = self._sanitize_args(record.args)

        return super().format(record)

    def _sanitize_args(self, args: tuple[Any, ...] | Mapping[str, Any]) -> tuple[Any, ...] | dict[str, Any]:
        if isinstance(args, Mapping):
            return {k: sanitize_message(v) if isinstance(v, str) else v for k, v in args.items()}
        return tuple(sanitize_message(arg) if isinstance(arg, str) else arg for arg in args)


def configure_rich_logging(
    level: int = logging.WARNING,
    show_time: bool = True,
    show_path: bool = False,
    console: Console | None = None,
) -> Console:
    """Route logging through a Rich handler on stderr.

    Replaces a Rich handler installed by an earlier call, so repeated CLI
    invocations in one process do not duplicate output.

    Args:
        level: Logging level
        show_time: Show timestamps in log lines
        show_path: Show source file and line in log lines
        console: Console to log to; a stderr console is created when omitted

    Returns:
        Console used for regular command output (stdout)
    """
    log_console = console or Console(stderr=True)

    handler = RichHandler(
        console=log_console,
        show_time=show_time,
        show_path=show_path,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setFormatter(SafeLogFormatter(fmt="%(message)s", datefmt="[%X]"))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if isinstance(existing, RichHandler):
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    return Console()


## Tests


def test_redact_value():
    assert redact_value("BQDaSecretToken") == "BQDa***"
    assert redact_value("abc") == "***"


def test_redact_dict():
    data = {
        "client_id": "abc",
        "client_secret": "hunter2hunter2",
        "nested": {"access_token": "BQD12345", "token_type": "bearer"},
    }

    redacted = redact_dict(data)

    assert redacted["client_id"] == "abc"
    assert redacted["client_secret"] == "hunt***"
    assert redacted["nested"]["access_token"] == "BQD1***"


def test_sanitize_message_masks_bearer_token():
    msg = "GET /v1/search with Authorization: Bearer BQDa1b2c3.d4-e5"
    sanitized = sanitize_message(msg)

    assert "BQDa1b2c3" not in sanitized
    assert "Bearer [REDACTED]" in sanitized


def test_sanitize_message_masks_query_secret():
    assert sanitize_message("trigger?secret=abc123&mode=sync") == "trigger?secret=[REDACTED]&mode=sync"


def test_safe_log_formatter_sanitizes_args():
    formatter = SafeLogFormatter(fmt="%(message)s")
    record = logging.LogRecord(
        name="test",
        level=logging.INFO,
        pathname="",
        lineno=0,
        msg="header=%s",
        args=("Basic Zm9vOmJhcg==",),
        exc_info=None,
    )

    assert formatter.format(record) == "header=Basic [REDACTED]"
