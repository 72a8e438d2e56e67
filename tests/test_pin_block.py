from __future__ import annotations

import pytest

from atm_keys import (
    InvalidInputError,
    InvalidPinBlockInputError,
    PinBlockCodec,
    PinEncryptionAlgorithm,
    PinFormat,
)

MASTER_KEY = bytes(range(32))
BANK_CONTEXT = "ISS001"
PAN = "4111111111111111"


@pytest.mark.parametrize("pin_length", range(4, 13))
def test_iso0_round_trip_for_every_pin_length(pin_length: int) -> None:
    codec = PinBlockCodec()
    pin = "123456789012"[:pin_length]

    encrypted = codec.encrypt_pin(pin, PAN, PinFormat.ISO_0, MASTER_KEY, BANK_CONTEXT)

    assert len(encrypted) == 16
    assert codec.decrypt_pin(encrypted, PAN, PinFormat.ISO_0, MASTER_KEY, BANK_CONTEXT) == pin


@pytest.mark.parametrize(
    ("algorithm", "field_length"),
    [
        (PinEncryptionAlgorithm.TDES, 8),
        (PinEncryptionAlgorithm.AES_128, 16),
        (PinEncryptionAlgorithm.AES_256, 32),
    ],
)
@pytest.mark.parametrize("pin", ["0000", "987654321098"])
def test_round_trip_for_each_algorithm(
    algorithm: PinEncryptionAlgorithm, field_length: int, pin: str
) -> None:
    codec = PinBlockCodec(algorithm)

    encrypted = codec.encrypt_pin(pin, PAN, "ISO-0", MASTER_KEY, BANK_CONTEXT)

    assert len(encrypted) == field_length
    assert codec.decrypt_pin(encrypted, PAN, "ISO-0", MASTER_KEY, BANK_CONTEXT) == pin


def test_iso0_clear_block_layout_for_tdes() -> None:
    codec = PinBlockCodec(PinEncryptionAlgorithm.TDES)

    clear = codec.build_clear_block("1234", PAN, PinFormat.ISO_0)

    # 041234FFFFFFFFFF xor 0000111111111111
    assert clear.hex().upper() == "041225EEEEEEEEEE"


def test_iso0_clear_block_layout_for_aes() -> None:
    codec = PinBlockCodec()

    clear = codec.build_clear_block("1234", PAN, PinFormat.ISO_0)

    assert clear.hex().upper() == "041225EEEEEEEEEE" + "F" * 16


@pytest.mark.parametrize("pin_format", [PinFormat.ISO_1, PinFormat.ISO_3, PinFormat.ISO_4])
def test_random_fill_formats_round_trip(pin_format: PinFormat) -> None:
    codec = PinBlockCodec()

    first = codec.build_clear_block("4321", PAN, pin_format)
    second = codec.build_clear_block("4321", PAN, pin_format)

    assert first[0] >> 4 == pin_format.tag
    assert first != second
    assert codec.extract_pin(first, PAN, pin_format) == "4321"
    encrypted = codec.encrypt_pin("4321", PAN, pin_format, MASTER_KEY, BANK_CONTEXT)
    assert codec.decrypt_pin(encrypted, PAN, pin_format, MASTER_KEY, BANK_CONTEXT) == "4321"


def test_iso3_fill_is_decimal() -> None:
    codec = PinBlockCodec()

    clear = codec.build_clear_block("1234", PAN, PinFormat.ISO_3)

    fill = clear.hex()[6:]
    assert fill.isdigit()


def test_iso4_requires_aes_block_size() -> None:
    codec = PinBlockCodec(PinEncryptionAlgorithm.TDES)

    with pytest.raises(InvalidPinBlockInputError):
        codec.build_clear_block("1234", PAN, PinFormat.ISO_4)


def test_aes256_encryption_uses_fresh_iv() -> None:
    codec = PinBlockCodec(PinEncryptionAlgorithm.AES_256)

    first = codec.encrypt_pin("1234", PAN, PinFormat.ISO_0, MASTER_KEY, BANK_CONTEXT)
    second = codec.encrypt_pin("1234", PAN, PinFormat.ISO_0, MASTER_KEY, BANK_CONTEXT)

    assert first[:16] != second[:16]
    assert first != second


@pytest.mark.parametrize("pin", ["123", "1234567890123", "12a4", "", "１２３４"])
def test_invalid_pin_is_rejected(pin: str) -> None:
    codec = PinBlockCodec()

    with pytest.raises(InvalidPinBlockInputError):
        codec.build_clear_block(pin, PAN, PinFormat.ISO_0)


@pytest.mark.parametrize("pan", ["411111111111", "41111111111111111111", "4111-1111-1111-11"])
def test_invalid_pan_is_rejected(pan: str) -> None:
    codec = PinBlockCodec()

    with pytest.raises(InvalidPinBlockInputError):
        codec.encrypt_pin("1234", pan, PinFormat.ISO_0, MASTER_KEY, BANK_CONTEXT)


def test_wrong_pan_does_not_recover_pin() -> None:
    codec = PinBlockCodec()
    encrypted = codec.encrypt_pin("1234", PAN, PinFormat.ISO_0, MASTER_KEY, BANK_CONTEXT)

    with pytest.raises(InvalidPinBlockInputError):
        codec.decrypt_pin(encrypted, "5500000000000004", PinFormat.ISO_0, MASTER_KEY, BANK_CONTEXT)


def test_format_mismatch_is_rejected() -> None:
    codec = PinBlockCodec()
    clear = codec.build_clear_block("1234", PAN, PinFormat.ISO_3)

    with pytest.raises(InvalidPinBlockInputError):
        codec.extract_pin(clear, PAN, PinFormat.ISO_1)


def test_encrypt_rejects_wrong_key_length() -> None:
    codec = PinBlockCodec()
    clear = codec.build_clear_block("1234", PAN, PinFormat.ISO_0)

    with pytest.raises(InvalidInputError):
        codec.encrypt(clear, MASTER_KEY)


def test_decrypt_rejects_wrong_field_length() -> None:
    codec = PinBlockCodec(PinEncryptionAlgorithm.AES_256)
    key = codec.derive_pin_key(MASTER_KEY, BANK_CONTEXT)

    with pytest.raises(InvalidPinBlockInputError):
        codec.decrypt(bytes(16), key)


def test_derive_pin_key_matches_algorithm_key_length() -> None:
    for algorithm in PinEncryptionAlgorithm:
        key = PinBlockCodec(algorithm).derive_pin_key(MASTER_KEY, BANK_CONTEXT)
        assert len(key) == algorithm.key_length


def test_parsers_accept_common_spellings() -> None:
    assert PinFormat.parse("0") is PinFormat.ISO_0
    assert PinFormat.parse("iso_4") is PinFormat.ISO_4
    assert PinEncryptionAlgorithm.parse("aes_256") is PinEncryptionAlgorithm.AES_256
    assert PinEncryptionAlgorithm.parse("3des") is PinEncryptionAlgorithm.TDES

    with pytest.raises(ValueError):
        PinFormat.parse("ISO-2")
