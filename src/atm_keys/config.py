from __future__ import annotations

import os
from dataclasses import dataclass

from .exceptions import ConfigurationError
from .mac import MacAlgorithm
from .pin_block import PinEncryptionAlgorithm, PinFormat


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got: {raw}") from exc
    if value < 0:
        raise ConfigurationError(f"{name} must be >= 0, got: {raw}")
    return value


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got: {raw}") from exc
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got: {raw}")
    return value


@dataclass(frozen=True)
class HsmConfig:
    """Connection settings for the HSM's JSON/HTTP interface."""

    base_url: str
    connect_timeout: float = 5.0
    read_timeout: float = 30.0
    rotation_path: str = "/api/hsm/terminal/{terminal_id}/request-rotation"
    confirm_path: str = "/api/hsm/terminal/{terminal_id}/confirm-key-update"
    pin_translation_path: str = "/api/hsm/pin/verify-with-translation"
    pin_pvv_path: str = "/api/hsm/pin/verify-with-pvv"
    confirmed_by: str = "ATM_SERVER_v1.0"
    confirm_attempts: int = 3
    confirm_backoff_seconds: float = 0.5

    def __post_init__(self) -> None:
        if not self.base_url:
            raise ConfigurationError("HSM base URL is required.")
        if self.confirm_attempts < 1:
            raise ConfigurationError(
                f"confirm_attempts must be >= 1, got: {self.confirm_attempts}"
            )
        for name in ("rotation_path", "confirm_path"):
            if "{terminal_id}" not in getattr(self, name):
                raise ConfigurationError(f"{name} must contain a {{terminal_id}} placeholder.")

    @classmethod
    def from_env(cls) -> "HsmConfig":
        base_url = os.environ.get("ATM_KEYS_HSM_URL")
        if not base_url:
            raise ConfigurationError("ATM_KEYS_HSM_URL is required.")
        defaults = cls(base_url=base_url)
        return cls(
            base_url=base_url.rstrip("/"),
            connect_timeout=_env_float("ATM_KEYS_HSM_CONNECT_TIMEOUT", defaults.connect_timeout),
            read_timeout=_env_float("ATM_KEYS_HSM_READ_TIMEOUT", defaults.read_timeout),
            rotation_path=os.environ.get("ATM_KEYS_HSM_ROTATION_PATH", defaults.rotation_path),
            confirm_path=os.environ.get("ATM_KEYS_HSM_CONFIRM_PATH", defaults.confirm_path),
            pin_translation_path=os.environ.get(
                "ATM_KEYS_HSM_PIN_TRANSLATION_PATH", defaults.pin_translation_path
            ),
            pin_pvv_path=os.environ.get("ATM_KEYS_HSM_PIN_PVV_PATH", defaults.pin_pvv_path),
            confirmed_by=os.environ.get("ATM_KEYS_HSM_CONFIRMED_BY", defaults.confirmed_by),
            confirm_attempts=_env_int(
                "ATM_KEYS_HSM_CONFIRM_ATTEMPTS", defaults.confirm_attempts, minimum=1
            ),
            confirm_backoff_seconds=_env_float(
                "ATM_KEYS_HSM_CONFIRM_BACKOFF", defaults.confirm_backoff_seconds
            ),
        )


@dataclass(frozen=True)
class KeyManagerConfig:
    """Algorithm choices and storage location for the key manager."""

    mac_algorithm: MacAlgorithm = MacAlgorithm.AES_CMAC
    pin_algorithm: PinEncryptionAlgorithm = PinEncryptionAlgorithm.AES_128
    pin_format: PinFormat = PinFormat.ISO_0
    grace_period_hours: int = 24
    store_path: str = "data/atm-keys.db"

    @classmethod
    def from_env(cls) -> "KeyManagerConfig":
        try:
            mac_algorithm = MacAlgorithm.parse(
                os.environ.get("ATM_KEYS_MAC_ALGORITHM", MacAlgorithm.AES_CMAC.value)
            )
            pin_algorithm = PinEncryptionAlgorithm.parse(
                os.environ.get("ATM_KEYS_PIN_ALGORITHM", PinEncryptionAlgorithm.AES_128.value)
            )
            pin_format = PinFormat.parse(
                os.environ.get("ATM_KEYS_PIN_FORMAT", PinFormat.ISO_0.value)
            )
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

        if pin_format is PinFormat.ISO_4 and pin_algorithm.block_size != 16:
            raise ConfigurationError("ISO-4 PIN blocks require an AES PIN algorithm.")

        return cls(
            mac_algorithm=mac_algorithm,
            pin_algorithm=pin_algorithm,
            pin_format=pin_format,
            grace_period_hours=_env_int("ATM_KEYS_GRACE_PERIOD_HOURS", 24, minimum=1),
            store_path=os.environ.get("ATM_KEYS_STORE_PATH", "data/atm-keys.db"),
        )
