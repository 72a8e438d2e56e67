from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Union
from urllib.parse import quote

import httpx

from .config import HsmConfig
from .exceptions import (
    HsmOperationError,
    HsmProtocolError,
    HsmTransportError,
    format_exception,
)
from .models import KeyType
from .pin_block import PinEncryptionAlgorithm, PinFormat

_logger = logging.getLogger("atm_keys.hsm")

_FRACTION = re.compile(r"(\.\d{6})\d+")
_ERROR_BODY_LIMIT = 200


def _require(payload: Mapping[str, Any], name: str) -> Any:
    value = payload.get(name)
    if value is None or value == "":
        raise ValueError(f"Missing required field: {name}")
    return value


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse an HSM timestamp.

    Accepts ISO-8601 with or without offset (a trailing ``Z`` means UTC) and
    up to nanosecond fractions. Naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        text = _FRACTION.sub(r"\1", text)
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class KeyRotationRequest:
    key_type: KeyType
    rotation_type: str = "SCHEDULED"
    grace_period_hours: int | None = None
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "keyType": self.key_type.value,
            "rotationType": self.rotation_type,
        }
        if self.grace_period_hours is not None:
            payload["gracePeriodHours"] = self.grace_period_hours
        if self.description:
            payload["description"] = self.description
        return payload


@dataclass(frozen=True)
class KeyRotationResponse:
    """A new key issued by the HSM, encrypted under the terminal's current master key."""

    rotation_id: str
    key_type: KeyType
    encrypted_new_key: str = field(repr=False)
    new_key_checksum: str
    grace_period_ends_at: datetime | None = None
    rotation_status: str | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "KeyRotationResponse":
        return cls(
            rotation_id=str(_require(payload, "rotationId")),
            key_type=KeyType.parse(_require(payload, "keyType")),
            encrypted_new_key=str(_require(payload, "encryptedNewKey")),
            new_key_checksum=str(_require(payload, "newKeyChecksum")),
            grace_period_ends_at=parse_timestamp(payload.get("gracePeriodEndsAt")),
            rotation_status=payload.get("rotationStatus"),
        )


@dataclass(frozen=True)
class KeyRotationConfirmation:
    rotation_id: str
    confirmed_by: str

    def to_dict(self) -> dict[str, str]:
        return {"rotationId": self.rotation_id, "confirmedBy": self.confirmed_by}


@dataclass(frozen=True)
class TranslationMethod:
    """Compare the terminal PIN block against the stored LMK-encrypted block."""

    pin_block_under_lmk: str = field(repr=False)
    encryption_algorithm: PinEncryptionAlgorithm = PinEncryptionAlgorithm.AES_128


@dataclass(frozen=True)
class PvvMethod:
    """Derive a PVV from the PIN and compare it with the stored one."""

    stored_pvv: str = field(repr=False)


PinVerificationMethod = Union[TranslationMethod, PvvMethod]


@dataclass(frozen=True)
class PinVerificationRequest:
    pin_block_under_tpk: str = field(repr=False)
    terminal_id: str
    pan: str = field(repr=False)
    pin_format: PinFormat
    method: PinVerificationMethod

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "pinBlockUnderTPK": self.pin_block_under_tpk,
            "terminalId": self.terminal_id,
            "pan": self.pan,
            "pinFormat": self.pin_format.value,
        }
        if isinstance(self.method, TranslationMethod):
            payload["pinBlockUnderLMK"] = self.method.pin_block_under_lmk
            payload["encryptionAlgorithm"] = self.method.encryption_algorithm.name
        elif isinstance(self.method, PvvMethod):
            payload["storedPVV"] = self.method.stored_pvv
        else:
            raise TypeError(f"Unsupported PIN verification method: {type(self.method).__name__}")
        return payload


@dataclass(frozen=True)
class PinVerificationResult:
    valid: bool
    method: str
    message: str | None = None
    tpk_key_id: str | None = None
    verifier_key_id: str | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, method: str) -> "PinVerificationResult":
        if "valid" not in payload:
            raise ValueError("Missing required field: valid")
        verifier_field = "lmkKeyId" if method == "TRANSLATION" else "pvkKeyId"
        return cls(
            valid=bool(payload["valid"]),
            method=method,
            message=payload.get("message"),
            tpk_key_id=payload.get("tpkKeyId"),
            verifier_key_id=payload.get(verifier_field),
        )


class HsmClient:
    """
    Blocking JSON/HTTP client for the HSM.

    Timeouts and connection failures raise HsmTransportError (retryable),
    4xx answers HsmOperationError, malformed bodies HsmProtocolError.
    """

    def __init__(
        self,
        config: HsmConfig,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._config = config
        self._client = httpx.Client(
            base_url=config.base_url,
            timeout=httpx.Timeout(config.read_timeout, connect=config.connect_timeout),
            headers={"Accept": "application/json"},
            transport=transport,
        )

    def __enter__(self) -> "HsmClient":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    @property
    def config(self) -> HsmConfig:
        return self._config

    def close(self) -> None:
        self._client.close()

    def _terminal_path(self, template: str, terminal_id: str) -> str:
        return template.format(terminal_id=quote(terminal_id, safe=""))

    def _post(self, path: str, payload: Mapping[str, Any]) -> Any:
        try:
            response = self._client.post(path, json=dict(payload))
        except httpx.TimeoutException as exc:
            _logger.warning("HSM request timed out path=%s", path)
            raise HsmTransportError(
                f"HSM request to '{path}' timed out: {format_exception(exc)}"
            ) from exc
        except httpx.TransportError as exc:
            _logger.warning("HSM request failed path=%s error=%s", path, type(exc).__name__)
            raise HsmTransportError(
                f"HSM request to '{path}' failed: {format_exception(exc)}"
            ) from exc

        if response.status_code >= 500:
            raise HsmTransportError(
                f"HSM returned {response.status_code} for '{path}': "
                f"{response.text[:_ERROR_BODY_LIMIT]}"
            )
        if response.status_code >= 400:
            raise HsmOperationError(
                f"HSM rejected '{path}' with {response.status_code}: "
                f"{response.text[:_ERROR_BODY_LIMIT]}"
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise HsmProtocolError(
                f"HSM returned a non-JSON body for '{path}': {format_exception(exc)}"
            ) from exc

    def request_rotation(
        self, terminal_id: str, request: KeyRotationRequest
    ) -> KeyRotationResponse:
        path = self._terminal_path(self._config.rotation_path, terminal_id)
        _logger.info(
            "Requesting key rotation terminal=%s key_type=%s",
            terminal_id,
            request.key_type.value,
        )
        body = self._post(path, request.to_dict())
        if not isinstance(body, Mapping):
            raise HsmProtocolError(
                f"HSM returned no rotation payload for terminal '{terminal_id}'."
            )
        try:
            response = KeyRotationResponse.from_dict(body)
        except ValueError as exc:
            raise HsmProtocolError(
                f"Invalid rotation response for terminal '{terminal_id}': {format_exception(exc)}"
            ) from exc
        if response.key_type is not request.key_type:
            raise HsmProtocolError(
                f"HSM issued a {response.key_type.value} key for a "
                f"{request.key_type.value} rotation request."
            )
        _logger.info(
            "Received rotation terminal=%s rotation_id=%s status=%s",
            terminal_id,
            response.rotation_id,
            response.rotation_status,
        )
        return response

    def confirm_rotation(self, terminal_id: str, confirmation: KeyRotationConfirmation) -> None:
        """Confirm key installation. The HSM treats repeats of a rotation_id as no-ops."""
        path = self._terminal_path(self._config.confirm_path, terminal_id)
        self._post(path, confirmation.to_dict())
        _logger.info(
            "Confirmed rotation terminal=%s rotation_id=%s",
            terminal_id,
            confirmation.rotation_id,
        )

    def verify_pin(self, request: PinVerificationRequest) -> PinVerificationResult:
        if isinstance(request.method, TranslationMethod):
            path, method = self._config.pin_translation_path, "TRANSLATION"
        elif isinstance(request.method, PvvMethod):
            path, method = self._config.pin_pvv_path, "PVV"
        else:
            raise TypeError(
                f"Unsupported PIN verification method: {type(request.method).__name__}"
            )
        body = self._post(path, request.to_dict())
        if not isinstance(body, Mapping):
            raise HsmProtocolError(f"HSM returned no PIN verification payload for '{path}'.")
        try:
            result = PinVerificationResult.from_dict(body, method=method)
        except ValueError as exc:
            raise HsmProtocolError(
                f"Invalid PIN verification response: {format_exception(exc)}"
            ) from exc
        _logger.info(
            "PIN verification terminal=%s method=%s valid=%s",
            request.terminal_id,
            method,
            result.valid,
        )
        return result
