from __future__ import annotations

import logging
import os
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOGGER_NAME = "atm_keys"
ENV_PREFIX = "ATM_KEYS_LOG_"

DEFAULT_LOG_FILE = "logs/atm-keys.log"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT = 5

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# PANs are 13-19 digits; key material is logged as 32+ hex characters.
_PAN_PATTERN = re.compile(r"(?<!\d)(\d{6})\d{3,9}(\d{4})(?!\d)")
_KEY_HEX_PATTERN = re.compile(r"(?<![0-9A-Fa-f])[0-9A-Fa-f]{32,}(?![0-9A-Fa-f])")


class SensitiveDataFilter(logging.Filter):
    """Mask PANs and long hex strings before a record reaches a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = _KEY_HEX_PATTERN.sub("[REDACTED]", message)
        masked = _PAN_PATTERN.sub(lambda m: f"{m.group(1)}******{m.group(2)}", masked)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def _env(name: str, default: str) -> str:
    return os.environ.get(ENV_PREFIX + name, default)


def _non_negative(value: int | str, name: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {value}") from exc
    if number < 0:
        raise ValueError(f"{name} must be >= 0, got: {value}")
    return number


def _resolve_level(level: str | int | None) -> int:
    resolved = level or _env("LEVEL", DEFAULT_LOG_LEVEL)
    if not isinstance(resolved, str):
        return int(resolved)
    normalized = resolved.strip().upper()
    if normalized.isdigit():
        return int(normalized)
    numeric = logging.getLevelName(normalized)
    if not isinstance(numeric, int):
        raise ValueError(f"Invalid log level: {resolved}")
    return numeric


def _existing_handler(logger: logging.Logger, log_file: Path) -> RotatingFileHandler | None:
    target = log_file.resolve()
    for handler in logger.handlers:
        if not isinstance(handler, RotatingFileHandler):
            continue
        if Path(handler.baseFilename).resolve() == target:
            return handler
    return None


def configure_logging(
    *,
    log_file: str | Path | None = None,
    level: str | int | None = None,
    max_bytes: int | None = None,
    backup_count: int | None = None,
) -> logging.Logger:
    """
    Configure rotating file logging for the atm_keys logger namespace.

    Every handler installed here masks PANs and key material. Calling this
    again for the same file only updates the level.

    Environment variable overrides:
    - ATM_KEYS_LOG_FILE
    - ATM_KEYS_LOG_LEVEL
    - ATM_KEYS_LOG_MAX_BYTES
    - ATM_KEYS_LOG_BACKUP_COUNT
    """

    path = Path(str(log_file or _env("FILE", DEFAULT_LOG_FILE)))
    numeric_level = _resolve_level(level)
    max_bytes = _non_negative(
        _env("MAX_BYTES", str(DEFAULT_LOG_MAX_BYTES)) if max_bytes is None else max_bytes,
        "max_bytes",
    )
    backup_count = _non_negative(
        _env("BACKUP_COUNT", str(DEFAULT_LOG_BACKUP_COUNT))
        if backup_count is None
        else backup_count,
        "backup_count",
    )

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(numeric_level)
    logger.propagate = False

    existing = _existing_handler(logger, path)
    if existing is not None:
        existing.setLevel(numeric_level)
        return logger

    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setLevel(numeric_level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(SensitiveDataFilter())
    logger.addHandler(handler)

    logger.info(
        "Configured key management logging path=%s level=%s max_bytes=%d backups=%d",
        path,
        logging.getLevelName(numeric_level),
        max_bytes,
        backup_count,
    )
    return logger
