from __future__ import annotations

import enum
import logging
from typing import Mapping

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import cmac, constant_time, hashes
from cryptography.hazmat.primitives import hmac as crypto_hmac
from cryptography.hazmat.primitives.ciphers import algorithms

from .derivation import derive_operational_key
from .exceptions import InvalidInputError
from .models import KeyType

MAC_LENGTH = 16
MAC_FIELD = 64
SECONDARY_MAC_FIELD = 128

_ALLOWED_KEY_LENGTHS = (16, 32)

_logger = logging.getLogger("atm_keys.mac")


class MacAlgorithm(str, enum.Enum):
    AES_CMAC = "AES-CMAC"
    HMAC_SHA256_TRUNCATED = "HMAC-SHA256-TRUNCATED"

    @classmethod
    def parse(cls, value: str | MacAlgorithm) -> MacAlgorithm:
        if isinstance(value, MacAlgorithm):
            return value
        text = str(value).strip().upper().replace("_", "-")
        for member in cls:
            if text in (member.value, member.name.replace("_", "-")):
                return member
        available = ", ".join(member.value for member in cls)
        raise ValueError(f"Unknown MAC algorithm '{value}'. Available: {available}")


class MacEngine:
    """
    Generate and verify 16-byte message authentication codes.

    Keys are operational TSKs (16 or 32 bytes). Use `derive_mac_key()` to
    obtain one from a terminal master key.
    """

    def __init__(self, algorithm: MacAlgorithm = MacAlgorithm.AES_CMAC) -> None:
        self._algorithm = MacAlgorithm.parse(algorithm)

    @property
    def algorithm(self) -> MacAlgorithm:
        return self._algorithm

    @staticmethod
    def derive_mac_key(master_key: bytes, bank_context: str) -> bytes:
        return derive_operational_key(master_key, KeyType.TSK, bank_context)

    def generate(self, data: bytes, key: bytes) -> bytes:
        if not data:
            raise InvalidInputError("MAC input data must not be empty.")
        if len(key) not in _ALLOWED_KEY_LENGTHS:
            raise InvalidInputError(
                f"MAC key must be 16 or 32 bytes, got: {len(key)} bytes"
            )
        if self._algorithm is MacAlgorithm.AES_CMAC:
            signer = cmac.CMAC(algorithms.AES(key))
            signer.update(data)
            return signer.finalize()

        signer = crypto_hmac.HMAC(key, hashes.SHA256())
        signer.update(data)
        return signer.finalize()[:MAC_LENGTH]

    def verify(self, data: bytes, mac: bytes, key: bytes) -> bool:
        """Return True when `mac` authenticates `data` under `key`; never raises."""
        if not data:
            return False
        if not mac or len(mac) != MAC_LENGTH:
            _logger.debug("MAC verification rejected mac_length=%d", len(mac or b""))
            return False
        try:
            if self._algorithm is MacAlgorithm.AES_CMAC:
                verifier = cmac.CMAC(algorithms.AES(key))
                verifier.update(data)
                verifier.verify(mac)
                return True
            return constant_time.bytes_eq(self.generate(data, key), mac)
        except InvalidSignature:
            return False
        except (InvalidInputError, ValueError, TypeError) as exc:
            _logger.debug(
                "MAC verification failed algorithm=%s error=%s", self._algorithm.value, exc
            )
            return False


class MacInputRule:
    """
    Canonical MAC input for a message field map.

    Every field except the MAC fields, in ascending field number, encoded as
    a 3-digit field number, a 4-digit byte length, then the value bytes.
    Field 0 carries the MTI and is covered like any other field.
    """

    excluded_fields = frozenset({MAC_FIELD, SECONDARY_MAC_FIELD})

    @classmethod
    def build(cls, fields: Mapping[int, str | bytes]) -> bytes:
        parts: list[bytes] = []
        for number in sorted(fields):
            if number in cls.excluded_fields:
                continue
            if not 0 <= number < 1000:
                raise InvalidInputError(f"Field number out of range: {number}")
            value = fields[number]
            if value is None:
                continue
            raw = value if isinstance(value, bytes) else str(value).encode("utf-8")
            if len(raw) > 9999:
                raise InvalidInputError(f"Field {number} is too long for MAC input.")
            parts.append(f"{number:03d}{len(raw):04d}".encode("ascii") + raw)
        if not parts:
            raise InvalidInputError("Message has no MAC-covered fields.")
        return b"".join(parts)

    @classmethod
    def strip(cls, fields: Mapping[int, str | bytes]) -> dict[int, str | bytes]:
        return {
            number: value
            for number, value in fields.items()
            if number not in cls.excluded_fields
        }
