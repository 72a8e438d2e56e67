from __future__ import annotations

import os

import pytest

from atm_keys import (
    HsmClient,
    HsmConfig,
    InMemoryKeyStore,
    KeyStatus,
    KeyType,
    RotationCoordinator,
    RotationStatus,
)

pytestmark = pytest.mark.integration


@pytest.fixture(scope="module")
def hsm_runtime() -> dict[str, str]:
    required = ("ATM_KEYS_HSM_URL", "ATM_KEYS_TEST_TERMINAL_ID", "ATM_KEYS_TEST_MASTER_KEY")
    missing = [name for name in required if not os.environ.get(name)]
    if missing:
        pytest.skip(
            "HSM integration tests need a reachable HSM simulator. "
            f"Set {', '.join(missing)}."
        )
    return {
        "terminal_id": os.environ["ATM_KEYS_TEST_TERMINAL_ID"],
        "master_key": os.environ["ATM_KEYS_TEST_MASTER_KEY"],
        "key_type": os.environ.get("ATM_KEYS_TEST_KEY_TYPE", "TPK"),
        "bank_context": os.environ.get("ATM_KEYS_TEST_BANK_CONTEXT", "ISS001"),
    }


def test_end_to_end_rotation(hsm_runtime: dict[str, str]) -> None:
    terminal_id = hsm_runtime["terminal_id"]
    key_type = KeyType.parse(hsm_runtime["key_type"])
    store = InMemoryKeyStore()
    store.provision(
        terminal_id,
        key_type,
        bytes.fromhex(hsm_runtime["master_key"]),
        hsm_runtime["bank_context"],
    )
    config = HsmConfig.from_env()

    with HsmClient(config) as client:
        coordinator = RotationCoordinator(
            store,
            client,
            confirmed_by=config.confirmed_by,
            confirm_attempts=config.confirm_attempts,
        )
        state = coordinator.rotate(terminal_id, key_type, description="integration test")

    assert state.status is RotationStatus.COMPLETED
    assert state.rotation_id
    records = store.list_terminal_keys(terminal_id)
    assert [r.status for r in records] == [KeyStatus.EXPIRED, KeyStatus.ACTIVE]
    assert records[-1].rotation_id == state.rotation_id
