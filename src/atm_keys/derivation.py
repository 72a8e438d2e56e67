"""Context-bound derivation of operational keys from terminal master keys."""

from __future__ import annotations

import binascii
import logging

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .exceptions import DerivationError, InvalidInputError
from .models import KeyType

PBKDF2_ITERATIONS = 100_000
OPERATIONAL_KEY_BITS = 128
KEY_DELIVERY_CONTEXT = "KEY_DELIVERY:ROTATION"

_KEY_PURPOSES: dict[KeyType, str] = {
    KeyType.TPK: "PIN",
    KeyType.TSK: "MAC",
    KeyType.TMK: "KEK",
}

_logger = logging.getLogger("atm_keys.derivation")


def bytes_to_hex(value: bytes) -> str:
    return value.hex().upper()


def hex_to_bytes(value: str, *, name: str = "value") -> bytes:
    if value is None:
        raise InvalidInputError(f"{name} must not be None.")
    cleaned = value.strip()
    if len(cleaned) % 2 != 0:
        raise InvalidInputError(f"{name} must have an even number of hex characters.")
    try:
        return binascii.unhexlify(cleaned)
    except (binascii.Error, ValueError) as exc:
        raise InvalidInputError(f"{name} is not valid hex.") from exc


def operational_context(key_type: KeyType, bank_context: str) -> str:
    """Build the purpose-bound context, e.g. ``TSK:<bank>:MAC``."""
    return f"{key_type.value}:{bank_context}:{_KEY_PURPOSES[key_type]}"


def derive_key(parent_key: bytes, context: str, output_bits: int = OPERATIONAL_KEY_BITS) -> bytes:
    """
    Derive `output_bits` of key material from `parent_key` bound to `context`.

    PBKDF2-HMAC-SHA256 over the uppercase hex of the parent key, salted with
    the UTF-8 context, at a fixed iteration count. Identical inputs always
    yield identical output. Results are not cached.
    """
    if not parent_key:
        raise DerivationError("Parent key must not be empty.")
    if not isinstance(output_bits, int) or output_bits <= 0 or output_bits % 8 != 0:
        raise DerivationError(
            f"output_bits must be a positive multiple of 8, got: {output_bits}"
        )
    if not context:
        raise DerivationError("Derivation context must not be empty.")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=output_bits // 8,
        salt=context.encode("utf-8"),
        iterations=PBKDF2_ITERATIONS,
    )
    derived = kdf.derive(bytes_to_hex(parent_key).encode("ascii"))
    _logger.debug(
        "Derived %d-bit key from %d-byte parent context=%s",
        output_bits,
        len(parent_key),
        context,
    )
    return derived


def derive_operational_key(
    master_key: bytes,
    key_type: KeyType,
    bank_context: str,
    output_bits: int = OPERATIONAL_KEY_BITS,
) -> bytes:
    return derive_key(master_key, operational_context(key_type, bank_context), output_bits)
