from __future__ import annotations

import hashlib

import pytest

from atm_keys import DerivationError, InvalidInputError, KeyType, derive_key, derive_operational_key
from atm_keys import derivation
from atm_keys.derivation import (
    PBKDF2_ITERATIONS,
    bytes_to_hex,
    hex_to_bytes,
    operational_context,
)

MASTER_KEY = bytes(range(32))


def test_derive_key_matches_pbkdf2_over_hex_master_key() -> None:
    expected = hashlib.pbkdf2_hmac(
        "sha256",
        MASTER_KEY.hex().upper().encode("ascii"),
        b"TSK:ISS001:MAC",
        PBKDF2_ITERATIONS,
        16,
    )

    assert derive_key(MASTER_KEY, "TSK:ISS001:MAC") == expected


def test_derive_key_is_deterministic() -> None:
    first = derive_key(MASTER_KEY, "TPK:ISS001:PIN", 256)
    second = derive_key(bytearray(MASTER_KEY), "TPK:ISS001:PIN", 256)

    assert first == second
    assert len(first) == 32


def test_contexts_separate_derived_keys() -> None:
    mac_key = derive_operational_key(MASTER_KEY, KeyType.TSK, "ISS001")
    pin_key = derive_operational_key(MASTER_KEY, KeyType.TPK, "ISS001")
    other_bank = derive_operational_key(MASTER_KEY, KeyType.TSK, "ISS002")

    assert len({mac_key, pin_key, other_bank}) == 3
    assert all(len(key) == 16 for key in (mac_key, pin_key, other_bank))


def test_operational_context_names_key_purpose() -> None:
    assert operational_context(KeyType.TPK, "ISS001") == "TPK:ISS001:PIN"
    assert operational_context(KeyType.TSK, "ISS001") == "TSK:ISS001:MAC"
    assert operational_context(KeyType.TMK, "ISS001") == "TMK:ISS001:KEK"


@pytest.mark.parametrize(
    ("parent", "context", "bits"),
    [
        (b"", "TSK:ISS001:MAC", 128),
        (MASTER_KEY, "", 128),
        (MASTER_KEY, "TSK:ISS001:MAC", 0),
        (MASTER_KEY, "TSK:ISS001:MAC", 12),
        (MASTER_KEY, "TSK:ISS001:MAC", -128),
    ],
)
def test_derive_key_rejects_invalid_parameters(parent: bytes, context: str, bits: int) -> None:
    with pytest.raises(DerivationError):
        derive_key(parent, context, bits)


def test_derivation_error_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        derive_key(b"", "TSK:ISS001:MAC")


def test_hex_helpers() -> None:
    assert bytes_to_hex(b"\x0a\xbc") == "0ABC"
    assert hex_to_bytes(" 0abc ") == b"\x0a\xbc"

    with pytest.raises(InvalidInputError):
        hex_to_bytes("ABC")
    with pytest.raises(InvalidInputError):
        hex_to_bytes("ZZ")


def test_derive_key_keeps_no_module_state(monkeypatch: pytest.MonkeyPatch) -> None:
    real_kdf = derivation.PBKDF2HMAC
    calls: list[bytes] = []

    def counting_kdf(**kwargs: object) -> derivation.PBKDF2HMAC:
        calls.append(kwargs["salt"])  # type: ignore[arg-type]
        return real_kdf(**kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(derivation, "PBKDF2HMAC", counting_kdf)

    first = derive_key(MASTER_KEY, "TSK:ISS001:MAC")
    second = derive_key(MASTER_KEY, "TSK:ISS001:MAC")

    assert first == second
    assert calls == [b"TSK:ISS001:MAC", b"TSK:ISS001:MAC"]
