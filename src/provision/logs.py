# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Logging setup for provision.

Every line is formatted as ``[ISO8601 timestamp] [LEVEL] message`` and
written to stdout and, during a run, to the run log file. Values of
secret-looking configuration keys never reach either destination.
"""

import logging
import re
import sys
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Mapping, Optional

from provision.config import DEFAULT_REDACT_PATTERNS, is_secret_key

LOGGER_NAMES = ("provision", "provision_workflows")
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
MASK = "***"


class IsoFormatter(logging.Formatter):
    """Formatter with ISO 8601 timestamps including the UTC offset."""

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        return datetime.fromtimestamp(record.created).astimezone().isoformat(timespec="seconds")


class Redactor:
    """Masks secret values and ``SECRET_KEY=value`` pairs in text."""

    def __init__(self, patterns: Optional[List[str]] = None):
        self.patterns = list(patterns or DEFAULT_REDACT_PATTERNS)
        self._values: List[str] = []
        alternatives = "|".join(re.escape(p) for p in self.patterns) or r"(?!x)x"
        self._pair_re = re.compile(
            rf"(\b\w*(?:{alternatives})\w*\s*[=:]\s*)(\"[^\"]*\"|'[^']*'|\S+)",
            re.IGNORECASE,
        )

    def add_secrets(self, config: Mapping[str, object]) -> None:
        """Remember the values of every secret-looking key in ``config``."""
        for key, value in config.items():
            if value is None or not is_secret_key(key, self.patterns):
                continue
            text = str(value)
            if text and text not in self._values:
                self._values.append(text)
        # Longest first so overlapping secrets are fully masked
        self._values.sort(key=len, reverse=True)

    def redact(self, text: str) -> str:
        for value in self._values:
            text = text.replace(value, MASK)
        return self._pair_re.sub(lambda m: m.group(1) + MASK, text)

    def redact_mapping(self, config: Mapping[str, object]) -> dict:
        """Copy of ``config`` with secret values masked, safe to log."""
        return {
            k: (MASK if v and is_secret_key(k, self.patterns) else v)
            for k, v in config.items()
        }


class RedactingFilter(logging.Filter):
    """Logging filter that applies a Redactor to every record."""

    def __init__(self, redactor: Redactor):
        super().__init__()
        self.redactor = redactor

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self.redactor.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


_redactor = Redactor()
_installed: List[logging.Handler] = []


def get_redactor() -> Redactor:
    """Get the process-wide redactor used by provision's handlers."""
    return _redactor


def _make_handler(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(IsoFormatter(LOG_FORMAT))
    handler.addFilter(RedactingFilter(_redactor))
    return handler


def configure_logging(
    level: str = "INFO",
    verbose: bool = False,
    redact_patterns: Optional[Iterable[str]] = None,
) -> Redactor:
    """
    Install the stdout handler on provision's loggers.

    Safe to call repeatedly; handlers installed by an earlier call are
    replaced.

    Args:
        level: Log level name for stdout
        verbose: Force DEBUG level
        redact_patterns: Key name patterns treated as secrets

    Returns:
        The process-wide Redactor, so callers can register secret values.
    """
    global _redactor
    _redactor = Redactor(list(redact_patterns) if redact_patterns else None)

    for handler in list(_installed):
        detach_handler(handler)

    numeric = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    handler = _make_handler(logging.StreamHandler(sys.stdout), numeric)
    for name in LOGGER_NAMES:
        logger = logging.getLogger(name)
        logger.setLevel(logging.DEBUG)
        logger.addHandler(handler)
    _installed.append(handler)
    return _redactor


def attach_run_log(log_file: Path) -> logging.Handler:
    """Add a file handler for one run's log. Returns it for detach_handler()."""
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = _make_handler(logging.FileHandler(log_file, encoding="utf-8"), logging.DEBUG)
    for name in LOGGER_NAMES:
        logger = logging.getLogger(name)
        logger.setLevel(logging.DEBUG)
        logger.addHandler(handler)
    _installed.append(handler)
    return handler


def detach_handler(handler: logging.Handler) -> None:
    for name in LOGGER_NAMES:
        logging.getLogger(name).removeHandler(handler)
    if handler in _installed:
        _installed.remove(handler)
    handler.close()
