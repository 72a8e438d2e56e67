"""
Encrypted delivery of new terminal master keys.

A delivery is ``hex(IV || AES-128-CBC(PKCS#7(new_key)))`` under a key derived
from the terminal's current master key with the ``KEY_DELIVERY:ROTATION``
context. The HSM sends a short SHA-256 checksum alongside so the terminal can
prove it decrypted the exact key that was issued.
"""

from __future__ import annotations

import hashlib
import logging
import secrets

from cryptography.hazmat.primitives import constant_time, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .derivation import KEY_DELIVERY_CONTEXT, bytes_to_hex, derive_key, hex_to_bytes
from .exceptions import InvalidInputError, KeyDeliveryError, format_exception

IV_LENGTH = 16
CHECKSUM_LENGTH = 16

_logger = logging.getLogger("atm_keys.key_delivery")


def key_checksum(key: bytes) -> str:
    """First 16 uppercase hex characters of SHA-256(key)."""
    return hashlib.sha256(key).hexdigest().upper()[:CHECKSUM_LENGTH]


def verify_key_checksum(key: bytes, expected: str) -> bool:
    if not expected:
        return False
    actual = key_checksum(key).encode("ascii")
    return constant_time.bytes_eq(actual, expected.strip().upper().encode("utf-8"))


def delivery_key(current_master_key: bytes) -> bytes:
    return derive_key(current_master_key, KEY_DELIVERY_CONTEXT, 128)


def encrypt_key_delivery(new_key: bytes, current_master_key: bytes) -> str:
    if not new_key:
        raise InvalidInputError("Key to deliver must not be empty.")
    iv = secrets.token_bytes(IV_LENGTH)
    padder = padding.PKCS7(128).padder()
    padded = padder.update(new_key) + padder.finalize()
    encryptor = Cipher(algorithms.AES(delivery_key(current_master_key)), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return bytes_to_hex(iv + ciphertext)


def decrypt_key_delivery(encrypted_hex: str, current_master_key: bytes) -> bytes:
    """Decrypt a delivery produced by `encrypt_key_delivery` (or the HSM)."""
    try:
        payload = hex_to_bytes(encrypted_hex, name="encryptedNewKey")
    except InvalidInputError as exc:
        raise KeyDeliveryError(f"Encrypted key is not valid hex: {format_exception(exc)}") from exc
    if len(payload) < IV_LENGTH * 2 or len(payload) % IV_LENGTH != 0:
        raise KeyDeliveryError(
            f"Encrypted key has invalid length: {len(payload)} bytes"
        )

    iv, ciphertext = payload[:IV_LENGTH], payload[IV_LENGTH:]
    try:
        decryptor = Cipher(
            algorithms.AES(delivery_key(current_master_key)), modes.CBC(iv)
        ).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        key = unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:
        _logger.warning("Key delivery decryption failed payload_size=%d", len(payload))
        raise KeyDeliveryError(
            f"Failed to decrypt delivered key: {format_exception(exc)}"
        ) from exc
    if not key:
        raise KeyDeliveryError("Delivered key is empty.")
    return key

