"""
ISO 9564 PIN blocks.

Blocks are built as nibble strings: format tag, PIN length, PIN digits,
then fill. The block length follows the cipher block size of the configured
algorithm, so TDES yields the classic 8-byte blocks and AES 16-byte blocks.
"""

from __future__ import annotations

import enum
import logging
import secrets
from typing import Callable

from cryptography.hazmat.decrepit.ciphers.algorithms import TripleDES
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .derivation import derive_operational_key
from .exceptions import InvalidInputError, InvalidPinBlockInputError
from .models import KeyType

MIN_PIN_LENGTH = 4
MAX_PIN_LENGTH = 12
MIN_PAN_LENGTH = 13
MAX_PAN_LENGTH = 19

_CBC_IV_LENGTH = 16

_logger = logging.getLogger("atm_keys.pin_block")


class PinFormat(str, enum.Enum):
    ISO_0 = "ISO-0"
    ISO_1 = "ISO-1"
    ISO_3 = "ISO-3"
    ISO_4 = "ISO-4"

    @property
    def tag(self) -> int:
        return int(self.value[-1])

    @classmethod
    def parse(cls, value: str | int | PinFormat) -> PinFormat:
        if isinstance(value, PinFormat):
            return value
        text = str(value).strip().upper()
        for member in cls:
            if text in (member.value, member.name, str(member.tag)):
                return member
        raise ValueError(f"Unknown PIN format: {value}")


class PinEncryptionAlgorithm(str, enum.Enum):
    """
    PIN block ciphers.

    TDES and AES_128 encrypt a single block in ECB mode so the field length
    equals the block size. AES_256 uses CBC with a random IV prepended,
    matching the HSM's IV || ciphertext layout.
    """

    TDES = "3DES"
    AES_128 = "AES-128"
    AES_256 = "AES-256"

    @property
    def block_size(self) -> int:
        return 8 if self is PinEncryptionAlgorithm.TDES else 16

    @property
    def key_length(self) -> int:
        return {
            PinEncryptionAlgorithm.TDES: 24,
            PinEncryptionAlgorithm.AES_128: 16,
            PinEncryptionAlgorithm.AES_256: 32,
        }[self]

    @property
    def uses_iv(self) -> bool:
        return self is PinEncryptionAlgorithm.AES_256

    @property
    def field_length(self) -> int:
        return self.block_size + (_CBC_IV_LENGTH if self.uses_iv else 0)

    @classmethod
    def parse(cls, value: str | PinEncryptionAlgorithm) -> PinEncryptionAlgorithm:
        if isinstance(value, PinEncryptionAlgorithm):
            return value
        text = str(value).strip().upper().replace("_", "-")
        for member in cls:
            if text in (member.value, member.name.replace("_", "-")):
                return member
        raise ValueError(f"Unknown PIN encryption algorithm: {value}")


def _validate_pin(pin: str) -> None:
    if not isinstance(pin, str) or not pin.isdigit() or not pin.isascii():
        raise InvalidPinBlockInputError("PIN must contain decimal digits only.")
    if not MIN_PIN_LENGTH <= len(pin) <= MAX_PIN_LENGTH:
        raise InvalidPinBlockInputError(
            f"PIN length must be {MIN_PIN_LENGTH}-{MAX_PIN_LENGTH} digits, got: {len(pin)}"
        )


def _validate_pan(pan: str) -> None:
    if not isinstance(pan, str) or not pan.isdigit() or not pan.isascii():
        raise InvalidPinBlockInputError("PAN must contain decimal digits only.")
    if not MIN_PAN_LENGTH <= len(pan) <= MAX_PAN_LENGTH:
        raise InvalidPinBlockInputError(
            f"PAN must be {MIN_PAN_LENGTH}-{MAX_PAN_LENGTH} digits, got: {len(pan)}"
        )


def _pack_nibbles(nibbles: list[int]) -> bytes:
    return bytes((high << 4) | low for high, low in zip(nibbles[0::2], nibbles[1::2]))


def _unpack_nibbles(block: bytes) -> list[int]:
    nibbles: list[int] = []
    for byte in block:
        nibbles.extend((byte >> 4, byte & 0x0F))
    return nibbles


def _fill_for(pin_format: PinFormat) -> Callable[[], int]:
    if pin_format is PinFormat.ISO_0:
        return lambda: 0xF
    if pin_format is PinFormat.ISO_4:
        return lambda: secrets.randbelow(16)
    return lambda: secrets.randbelow(10)


class PinBlockCodec:
    """Build, encrypt, decrypt, and read ISO 9564 PIN blocks."""

    def __init__(
        self, algorithm: PinEncryptionAlgorithm = PinEncryptionAlgorithm.AES_128
    ) -> None:
        self._algorithm = PinEncryptionAlgorithm.parse(algorithm)

    @property
    def algorithm(self) -> PinEncryptionAlgorithm:
        return self._algorithm

    @property
    def block_size(self) -> int:
        return self._algorithm.block_size

    def derive_pin_key(self, master_key: bytes, bank_context: str) -> bytes:
        """Derive the TPK operational key sized for the configured cipher."""
        return derive_operational_key(
            master_key,
            KeyType.TPK,
            bank_context,
            output_bits=self._algorithm.key_length * 8,
        )

    def _pan_mask(self, pan: str) -> list[int]:
        # 0000 + the 12 PAN digits left of the check digit, zero-extended.
        account_digits = [int(digit) for digit in pan[-13:-1]]
        mask = [0, 0, 0, 0] + account_digits
        return mask + [0] * (self.block_size * 2 - len(mask))

    def build_clear_block(self, pin: str, pan: str, pin_format: PinFormat | str) -> bytes:
        pin_format = PinFormat.parse(pin_format)
        _validate_pin(pin)
        _validate_pan(pan)
        if pin_format is PinFormat.ISO_4 and self.block_size != 16:
            raise InvalidPinBlockInputError("ISO-4 PIN blocks require a 16-byte block cipher.")

        total = self.block_size * 2
        fill = _fill_for(pin_format)
        nibbles = [pin_format.tag, len(pin)] + [int(digit) for digit in pin]
        nibbles.extend(fill() for _ in range(total - len(nibbles)))

        if pin_format is PinFormat.ISO_0:
            nibbles = [a ^ b for a, b in zip(nibbles, self._pan_mask(pan))]
        return _pack_nibbles(nibbles)

    def extract_pin(self, clear_block: bytes, pan: str, pin_format: PinFormat | str) -> str:
        pin_format = PinFormat.parse(pin_format)
        if len(clear_block) != self.block_size:
            raise InvalidPinBlockInputError(
                f"Clear PIN block must be {self.block_size} bytes, got: {len(clear_block)}"
            )
        _validate_pan(pan)

        nibbles = _unpack_nibbles(clear_block)
        if pin_format is PinFormat.ISO_0:
            nibbles = [a ^ b for a, b in zip(nibbles, self._pan_mask(pan))]

        if nibbles[0] != pin_format.tag:
            raise InvalidPinBlockInputError(
                f"PIN block format nibble {nibbles[0]:X} does not match {pin_format.value}."
            )
        pin_length = nibbles[1]
        if not MIN_PIN_LENGTH <= pin_length <= MAX_PIN_LENGTH:
            raise InvalidPinBlockInputError(f"Invalid PIN length in block: {pin_length}")

        digits = nibbles[2 : 2 + pin_length]
        if any(digit > 9 for digit in digits):
            raise InvalidPinBlockInputError("PIN block contains non-decimal PIN digits.")
        if pin_format is PinFormat.ISO_0 and any(
            nibble != 0xF for nibble in nibbles[2 + pin_length :]
        ):
            raise InvalidPinBlockInputError("ISO-0 PIN block padding is not F-filled.")
        return "".join(str(digit) for digit in digits)

    def _cipher(self, key: bytes, iv: bytes | None = None) -> Cipher:
        if len(key) != self._algorithm.key_length:
            raise InvalidInputError(
                f"{self._algorithm.value} requires a {self._algorithm.key_length}-byte derived "
                f"PIN key, got: {len(key)} bytes. Derive it with derive_pin_key()."
            )
        if self._algorithm is PinEncryptionAlgorithm.TDES:
            return Cipher(TripleDES(key), modes.ECB())
        if iv is not None:
            return Cipher(algorithms.AES(key), modes.CBC(iv))
        return Cipher(algorithms.AES(key), modes.ECB())

    def encrypt(self, clear_block: bytes, derived_key: bytes) -> bytes:
        if len(clear_block) != self.block_size:
            raise InvalidPinBlockInputError(
                f"Clear PIN block must be {self.block_size} bytes, got: {len(clear_block)}"
            )
        iv = secrets.token_bytes(_CBC_IV_LENGTH) if self._algorithm.uses_iv else None
        encryptor = self._cipher(derived_key, iv).encryptor()
        ciphertext = encryptor.update(clear_block) + encryptor.finalize()
        _logger.debug(
            "Encrypted PIN block algorithm=%s field_size=%d",
            self._algorithm.value,
            self._algorithm.field_length,
        )
        return (iv or b"") + ciphertext

    def decrypt(self, encrypted_block: bytes, derived_key: bytes) -> bytes:
        if len(encrypted_block) != self._algorithm.field_length:
            raise InvalidPinBlockInputError(
                f"Encrypted PIN block must be {self._algorithm.field_length} bytes "
                f"for {self._algorithm.value}, got: {len(encrypted_block)}"
            )
        iv = None
        if self._algorithm.uses_iv:
            iv, encrypted_block = (
                encrypted_block[:_CBC_IV_LENGTH],
                encrypted_block[_CBC_IV_LENGTH:],
            )
        decryptor = self._cipher(derived_key, iv).decryptor()
        return decryptor.update(encrypted_block) + decryptor.finalize()

    def encrypt_pin(
        self,
        pin: str,
        pan: str,
        pin_format: PinFormat | str,
        master_key: bytes,
        bank_context: str,
    ) -> bytes:
        """Build and encrypt a PIN block under the TPK derived from `master_key`."""
        clear_block = self.build_clear_block(pin, pan, pin_format)
        return self.encrypt(clear_block, self.derive_pin_key(master_key, bank_context))

    def decrypt_pin(
        self,
        encrypted_block: bytes,
        pan: str,
        pin_format: PinFormat | str,
        master_key: bytes,
        bank_context: str,
    ) -> str:
        clear_block = self.decrypt(encrypted_block, self.derive_pin_key(master_key, bank_context))
        return self.extract_pin(clear_block, pan, pin_format)
