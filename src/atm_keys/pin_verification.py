from __future__ import annotations

import logging

from .derivation import bytes_to_hex, hex_to_bytes
from .exceptions import InvalidPinBlockInputError
from .hsm import (
    HsmClient,
    PinVerificationMethod,
    PinVerificationRequest,
    PinVerificationResult,
    PvvMethod,
    TranslationMethod,
)
from .pin_block import MAX_PAN_LENGTH, MIN_PAN_LENGTH, PinEncryptionAlgorithm, PinFormat

_logger = logging.getLogger("atm_keys.pin_verification")


class PinVerifier:
    """
    Verify terminal PIN blocks through the HSM.

    The PIN never leaves the HSM in clear. Translation compares the block
    against the account's LMK-encrypted block; PVV derives a verification
    value and compares it with the stored one.
    """

    def __init__(
        self,
        hsm: HsmClient,
        *,
        pin_format: PinFormat = PinFormat.ISO_0,
        algorithm: PinEncryptionAlgorithm = PinEncryptionAlgorithm.AES_128,
    ) -> None:
        self._hsm = hsm
        self._pin_format = PinFormat.parse(pin_format)
        self._algorithm = PinEncryptionAlgorithm.parse(algorithm)

    def _normalize_block(self, pin_block: bytes | str) -> str:
        raw = hex_to_bytes(pin_block, name="PIN block") if isinstance(pin_block, str) else pin_block
        if len(raw) != self._algorithm.field_length:
            raise InvalidPinBlockInputError(
                f"{self._algorithm.value} PIN blocks are {self._algorithm.field_length} bytes, "
                f"got: {len(raw)}"
            )
        return bytes_to_hex(raw)

    def verify(
        self,
        terminal_id: str,
        pan: str,
        pin_block: bytes | str,
        method: PinVerificationMethod,
    ) -> PinVerificationResult:
        if not pan.isdigit() or not MIN_PAN_LENGTH <= len(pan) <= MAX_PAN_LENGTH:
            raise InvalidPinBlockInputError(
                f"PAN must be {MIN_PAN_LENGTH}-{MAX_PAN_LENGTH} digits."
            )
        if not isinstance(method, (TranslationMethod, PvvMethod)):
            raise TypeError(f"Unsupported PIN verification method: {type(method).__name__}")
        request = PinVerificationRequest(
            pin_block_under_tpk=self._normalize_block(pin_block),
            terminal_id=terminal_id,
            pan=pan,
            pin_format=self._pin_format,
            method=method,
        )
        result = self._hsm.verify_pin(request)
        if not result.valid:
            _logger.warning(
                "PIN verification rejected terminal=%s method=%s message=%s",
                terminal_id,
                result.method,
                result.message,
            )
        return result

    def verify_with_translation(
        self, terminal_id: str, pan: str, pin_block: bytes | str, stored_pin_block: str
    ) -> PinVerificationResult:
        if not stored_pin_block:
            raise InvalidPinBlockInputError("No LMK-encrypted PIN block stored for the account.")
        method = TranslationMethod(
            pin_block_under_lmk=stored_pin_block, encryption_algorithm=self._algorithm
        )
        return self.verify(terminal_id, pan, pin_block, method)

    def verify_with_pvv(
        self, terminal_id: str, pan: str, pin_block: bytes | str, stored_pvv: str
    ) -> PinVerificationResult:
        if not stored_pvv:
            raise InvalidPinBlockInputError("No PVV stored for the account.")
        return self.verify(terminal_id, pan, pin_block, PvvMethod(stored_pvv=stored_pvv))
