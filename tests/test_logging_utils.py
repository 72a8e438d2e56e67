from __future__ import annotations

import logging
from pathlib import Path

import pytest

from atm_keys import configure_logging


def _read_log(logger: logging.Logger, log_file: Path) -> str:
    for handler in logger.handlers:
        handler.flush()
    return log_file.read_text(encoding="utf-8")


def test_configure_logging_creates_rotating_log_file(tmp_path: Path) -> None:
    log_file = tmp_path / "atm-keys.log"
    logger = configure_logging(
        log_file=log_file,
        level="INFO",
        max_bytes=1024,
        backup_count=2,
    )
    logging.getLogger("atm_keys.rotation").info("logging test message")

    assert log_file.exists()
    contents = _read_log(logger, log_file)
    assert "logging test message" in contents
    assert "| INFO | atm_keys.rotation |" in contents


def test_configure_logging_is_idempotent_per_file(tmp_path: Path) -> None:
    log_file = tmp_path / "atm-keys.log"
    first = configure_logging(log_file=log_file, level="INFO")
    second = configure_logging(log_file=log_file, level="DEBUG")

    assert first is second
    assert len(second.handlers) == 1
    assert second.level == logging.DEBUG


def test_configure_logging_reads_environment(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    log_file = tmp_path / "nested" / "env.log"
    monkeypatch.setenv("ATM_KEYS_LOG_FILE", str(log_file))
    monkeypatch.setenv("ATM_KEYS_LOG_LEVEL", "warning")

    logger = configure_logging()
    logging.getLogger("atm_keys.store").info("not written")
    logging.getLogger("atm_keys.store").warning("written")

    contents = _read_log(logger, log_file)
    assert "written" in contents
    assert "not written" not in contents


def test_configure_logging_rejects_invalid_level(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        configure_logging(log_file=tmp_path / "x.log", level="LOUD")


def test_log_records_mask_pan_and_key_material(tmp_path: Path) -> None:
    log_file = tmp_path / "atm-keys.log"
    logger = configure_logging(log_file=log_file, level="INFO")
    key_hex = "00112233445566778899AABBCCDDEEFF00112233445566778899AABBCCDDEEFF"

    logging.getLogger("atm_keys.auth").info("pan=%s key=%s", "4111111111111111", key_hex)

    contents = _read_log(logger, log_file)
    assert "411111******1111" in contents
    assert "4111111111111111" not in contents
    assert key_hex not in contents
    assert "key=[REDACTED]" in contents
