from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Callable

import httpx
import pytest

from atm_keys import (
    HsmClient,
    HsmConfig,
    HsmOperationError,
    HsmProtocolError,
    HsmTransportError,
    KeyRotationConfirmation,
    KeyRotationRequest,
    KeyType,
    PinFormat,
    PinVerificationRequest,
    PvvMethod,
    TranslationMethod,
)
from atm_keys.hsm import parse_timestamp

TERMINAL_ID = "TRM-ISS001-ATM-001"

ROTATION_BODY = {
    "rotationId": "ROT-000042",
    "keyType": "TSK",
    "encryptedNewKey": "AB" * 64,
    "newKeyChecksum": "0123456789ABCDEF",
    "gracePeriodEndsAt": "2025-01-02T10:00:00.123456789",
    "rotationStatus": "IN_PROGRESS",
}


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> HsmClient:
    config = HsmConfig(base_url="http://hsm.test")
    return HsmClient(config, transport=httpx.MockTransport(handler))


def test_request_rotation_posts_request_and_parses_response() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=ROTATION_BODY)

    with _client(handler) as client:
        response = client.request_rotation(
            TERMINAL_ID,
            KeyRotationRequest(key_type=KeyType.TSK, grace_period_hours=24, description="due"),
        )

    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == f"/api/hsm/terminal/{TERMINAL_ID}/request-rotation"
    assert json.loads(request.content) == {
        "keyType": "TSK",
        "rotationType": "SCHEDULED",
        "gracePeriodHours": 24,
        "description": "due",
    }
    assert response.rotation_id == "ROT-000042"
    assert response.key_type is KeyType.TSK
    assert response.new_key_checksum == "0123456789ABCDEF"
    assert response.grace_period_ends_at == datetime(
        2025, 1, 2, 10, 0, 0, 123456, tzinfo=timezone.utc
    )
    assert "encrypted_new_key" not in repr(response)


def test_request_rotation_rejects_missing_fields() -> None:
    body = {key: value for key, value in ROTATION_BODY.items() if key != "newKeyChecksum"}

    with _client(lambda request: httpx.Response(200, json=body)) as client:
        with pytest.raises(HsmProtocolError):
            client.request_rotation(TERMINAL_ID, KeyRotationRequest(key_type=KeyType.TSK))


def test_request_rotation_rejects_other_key_type() -> None:
    with _client(lambda request: httpx.Response(200, json=ROTATION_BODY)) as client:
        with pytest.raises(HsmProtocolError):
            client.request_rotation(TERMINAL_ID, KeyRotationRequest(key_type=KeyType.TPK))


def test_request_rotation_rejects_non_json_body() -> None:
    with _client(lambda request: httpx.Response(200, text="<html>")) as client:
        with pytest.raises(HsmProtocolError):
            client.request_rotation(TERMINAL_ID, KeyRotationRequest(key_type=KeyType.TSK))


def test_confirm_rotation_posts_confirmation() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    with _client(handler) as client:
        client.confirm_rotation(
            TERMINAL_ID,
            KeyRotationConfirmation(rotation_id="ROT-000042", confirmed_by="ATM_SERVER_v1.0"),
        )

    assert seen[0].url.path == f"/api/hsm/terminal/{TERMINAL_ID}/confirm-key-update"
    assert json.loads(seen[0].content) == {
        "rotationId": "ROT-000042",
        "confirmedBy": "ATM_SERVER_v1.0",
    }


def test_server_errors_are_retryable_transport_errors() -> None:
    with _client(lambda request: httpx.Response(503, text="busy")) as client:
        with pytest.raises(HsmTransportError) as excinfo:
            client.confirm_rotation(TERMINAL_ID, KeyRotationConfirmation("ROT-1", "test"))

    assert excinfo.value.retryable


def test_client_errors_are_operation_errors() -> None:
    with _client(lambda request: httpx.Response(404, text="unknown terminal")) as client:
        with pytest.raises(HsmOperationError) as excinfo:
            client.request_rotation(TERMINAL_ID, KeyRotationRequest(key_type=KeyType.TSK))

    assert not isinstance(excinfo.value, HsmTransportError)
    assert not excinfo.value.retryable
    assert "404" in str(excinfo.value)


def test_timeouts_become_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with _client(handler) as client:
        with pytest.raises(HsmTransportError) as excinfo:
            client.request_rotation(TERMINAL_ID, KeyRotationRequest(key_type=KeyType.TSK))

    assert isinstance(excinfo.value.__cause__, httpx.ReadTimeout)


def test_connection_failures_become_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with _client(handler) as client:
        with pytest.raises(HsmTransportError):
            client.confirm_rotation(TERMINAL_ID, KeyRotationConfirmation("ROT-1", "test"))


def test_verify_pin_with_translation() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "valid": True,
                "message": "PIN verified",
                "tpkKeyId": "TPK-1",
                "lmkKeyId": "LMK-7",
            },
        )

    request = PinVerificationRequest(
        pin_block_under_tpk="00" * 16,
        terminal_id=TERMINAL_ID,
        pan="4111111111111111",
        pin_format=PinFormat.ISO_0,
        method=TranslationMethod(pin_block_under_lmk="11" * 16),
    )
    with _client(handler) as client:
        result = client.verify_pin(request)

    assert seen[0].url.path == "/api/hsm/pin/verify-with-translation"
    assert json.loads(seen[0].content) == {
        "pinBlockUnderTPK": "00" * 16,
        "terminalId": TERMINAL_ID,
        "pan": "4111111111111111",
        "pinFormat": "ISO-0",
        "pinBlockUnderLMK": "11" * 16,
        "encryptionAlgorithm": "AES_128",
    }
    assert result.valid
    assert result.method == "TRANSLATION"
    assert result.tpk_key_id == "TPK-1"
    assert result.verifier_key_id == "LMK-7"


def test_verify_pin_with_pvv() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"valid": False, "pvkKeyId": "PVK-2"})

    request = PinVerificationRequest(
        pin_block_under_tpk="00" * 16,
        terminal_id=TERMINAL_ID,
        pan="4111111111111111",
        pin_format=PinFormat.ISO_0,
        method=PvvMethod(stored_pvv="1234"),
    )
    with _client(handler) as client:
        result = client.verify_pin(request)

    assert seen[0].url.path == "/api/hsm/pin/verify-with-pvv"
    assert json.loads(seen[0].content)["storedPVV"] == "1234"
    assert not result.valid
    assert result.method == "PVV"
    assert result.verifier_key_id == "PVK-2"


def test_verify_pin_requires_valid_flag() -> None:
    request = PinVerificationRequest(
        pin_block_under_tpk="00" * 16,
        terminal_id=TERMINAL_ID,
        pan="4111111111111111",
        pin_format=PinFormat.ISO_0,
        method=PvvMethod(stored_pvv="1234"),
    )
    with _client(lambda r: httpx.Response(200, json={"message": "?"})) as client:
        with pytest.raises(HsmProtocolError):
            client.verify_pin(request)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("2025-01-02T10:00:00Z", datetime(2025, 1, 2, 10, 0, tzinfo=timezone.utc)),
        ("2025-01-02T10:00:00", datetime(2025, 1, 2, 10, 0, tzinfo=timezone.utc)),
        ("2025-01-02T12:00:00+02:00", datetime(2025, 1, 2, 10, 0, tzinfo=timezone.utc)),
        (None, None),
        ("", None),
    ],
)
def test_parse_timestamp(value: str | None, expected: datetime | None) -> None:
    assert parse_timestamp(value) == expected
