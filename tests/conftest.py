from __future__ import annotations

import itertools
import logging
import secrets
import threading
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping

import pytest

from atm_keys import (
    HsmTransportError,
    InMemoryKeyStore,
    KeyRotationConfirmation,
    KeyRotationRequest,
    KeyRotationResponse,
    KeyStore,
    KeyType,
    RotationCoordinator,
    SqliteKeyStore,
    encrypt_key_delivery,
    key_checksum,
)

TERMINAL_ID = "TRM-ISS001-ATM-001"
BANK_CONTEXT = "ISS001"
MASTER_KEY = bytes(range(32))
PIN_MASTER_KEY = bytes(range(32, 64))


def flip_hex_char(text: str, index: int = 0) -> str:
    flipped = format(int(text[index], 16) ^ 0x1, "X")
    return text[:index] + flipped + text[index + 1 :]


class FakeHsm:
    """
    In-process stand-in for the HSM.

    Issues fresh keys encrypted under the terminal's current ACTIVE key in
    `store`, the same way the real HSM does.
    """

    def __init__(self, store: KeyStore) -> None:
        self.store = store
        self.requests: list[tuple[str, KeyRotationRequest]] = []
        self.confirmations: list[tuple[str, KeyRotationConfirmation]] = []
        self.issued: dict[str, bytes] = {}
        self.next_key: bytes | None = None
        self.corrupt_key = False
        self.corrupt_checksum = False
        self.request_error: Exception | None = None
        self.confirm_error: Exception | None = None
        self.confirm_failures = 0
        self.on_request: Callable[[], None] | None = None
        self._ids = itertools.count(1)

    def request_rotation(
        self, terminal_id: str, request: KeyRotationRequest
    ) -> KeyRotationResponse:
        self.requests.append((terminal_id, request))
        if self.on_request is not None:
            self.on_request()
        if self.request_error is not None:
            raise self.request_error

        current = self.store.get_active(terminal_id, request.key_type)
        new_key = self.next_key or secrets.token_bytes(32)
        rotation_id = f"ROT-{next(self._ids):06d}"
        self.issued[rotation_id] = new_key

        encrypted = encrypt_key_delivery(new_key, current.value)
        checksum = key_checksum(new_key)
        if self.corrupt_key:
            encrypted = flip_hex_char(encrypted, 0)
        if self.corrupt_checksum:
            checksum = flip_hex_char(checksum, 3)
        return KeyRotationResponse(
            rotation_id=rotation_id,
            key_type=request.key_type,
            encrypted_new_key=encrypted,
            new_key_checksum=checksum,
            rotation_status="IN_PROGRESS",
        )

    def confirm_rotation(self, terminal_id: str, confirmation: KeyRotationConfirmation) -> None:
        if self.confirm_failures > 0:
            self.confirm_failures -= 1
            raise HsmTransportError("Simulated HSM timeout.")
        if self.confirm_error is not None:
            raise self.confirm_error
        self.confirmations.append((terminal_id, confirmation))


class FakeChannel:
    def __init__(self, *, connected: bool = True, error: Exception | None = None) -> None:
        self.connected = connected
        self.error = error
        self.sent: list[Mapping[int, str]] = []

    @property
    def is_connected(self) -> bool:
        return self.connected

    def send(self, message: Mapping[int, str]) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append(dict(message))


class BlockingHook:
    """Holds a call inside the fake HSM until released."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()

    def __call__(self) -> None:
        self.entered.set()
        if not self.release.wait(timeout=10):
            raise TimeoutError("BlockingHook was never released.")


@pytest.fixture(autouse=True)
def _reset_package_logger() -> Iterator[None]:
    yield
    logger = logging.getLogger("atm_keys")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[KeyStore]:
    if request.param == "memory":
        key_store: KeyStore = InMemoryKeyStore()
    else:
        key_store = SqliteKeyStore(tmp_path / "keys.db")
    yield key_store
    key_store.close()


@pytest.fixture
def provisioned_store(store: KeyStore) -> KeyStore:
    store.provision(TERMINAL_ID, KeyType.TSK, MASTER_KEY, BANK_CONTEXT)
    store.provision(TERMINAL_ID, KeyType.TPK, PIN_MASTER_KEY, BANK_CONTEXT)
    return store


@pytest.fixture
def fake_hsm(provisioned_store: KeyStore) -> FakeHsm:
    return FakeHsm(provisioned_store)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def coordinator_factory(
    provisioned_store: KeyStore, fake_hsm: FakeHsm, sleeps: list[float]
) -> Callable[..., RotationCoordinator]:
    def build(**kwargs: Any) -> RotationCoordinator:
        kwargs.setdefault("sleep", sleeps.append)
        return RotationCoordinator(provisioned_store, fake_hsm, **kwargs)  # type: ignore[arg-type]

    return build


@pytest.fixture
def coordinator(coordinator_factory: Callable[..., RotationCoordinator]) -> RotationCoordinator:
    return coordinator_factory()
