from __future__ import annotations

import logging
import secrets
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterator

from .config import HsmConfig, KeyManagerConfig
from .exceptions import (
    ChecksumMismatchError,
    ConfigurationError,
    HsmTransportError,
    InvalidInputError,
    KeyDeliveryError,
    KeyManagementError,
    KeyNotFoundError,
    KeyStateError,
    RotationCancelledError,
    RotationConflictError,
    SelfTestError,
    format_exception,
)
from .hsm import HsmClient, KeyRotationConfirmation, KeyRotationRequest, KeyRotationResponse
from .key_delivery import (
    decrypt_key_delivery,
    encrypt_key_delivery,
    key_checksum,
    verify_key_checksum,
)
from .key_store import KeyStore
from .mac import MacEngine
from .models import (
    MASTER_KEY_LENGTH,
    KeyRecord,
    KeyType,
    RotationState,
    RotationStep,
)
from .pin_block import PinBlockCodec, PinFormat
from .security_control import build_rotation_notice
from .terminals import TerminalRegistry

SELF_TEST_PIN = "1234"
SELF_TEST_PAN = "4111111111111111"
SELF_TEST_MAC_INPUT = b"0800|TERMINAL KEY SELF TEST|000001"

_logger = logging.getLogger("atm_keys.rotation")


@dataclass(frozen=True)
class KeyDelivery:
    """A PENDING key ready to be forwarded to its terminal."""

    terminal_id: str
    key_type: KeyType
    rotation_id: str
    version: int
    encrypted_key: str = field(repr=False)
    checksum: str
    grace_period_ends_at: datetime | None = None


class RotationCoordinator:
    """
    Runs key rotations for terminal key slots.

    Three entry points share one pipeline: `rotate()` (terminal-initiated,
    activates immediately), `distribute()` (server-mediated, leaves the key
    PENDING until the terminal proves it) and `notify_rotation_due()`
    (server-initiated, asks a connected terminal to start a key change).
    """

    def __init__(
        self,
        store: KeyStore,
        hsm: HsmClient,
        *,
        pin_codec: PinBlockCodec | None = None,
        mac_engine: MacEngine | None = None,
        registry: TerminalRegistry | None = None,
        confirmed_by: str = "ATM_SERVER_v1.0",
        confirm_attempts: int = 3,
        confirm_backoff_seconds: float = 0.5,
        grace_period_hours: int = 24,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if confirm_attempts < 1:
            raise ConfigurationError(f"confirm_attempts must be >= 1, got: {confirm_attempts}")
        self._store = store
        self._hsm = hsm
        self._pin_codec = pin_codec or PinBlockCodec()
        self._mac_engine = mac_engine or MacEngine()
        self._registry = registry
        self._confirmed_by = confirmed_by
        self._confirm_attempts = confirm_attempts
        self._confirm_backoff_seconds = confirm_backoff_seconds
        self._grace_period_hours = grace_period_hours
        self._sleep = sleep
        self._claims: set[tuple[str, KeyType]] = set()
        # Announced slot -> ACTIVE version when the notice went out.
        self._notified: dict[tuple[str, KeyType], int | None] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        store: KeyStore,
        hsm: HsmClient,
        hsm_config: HsmConfig,
        manager_config: KeyManagerConfig,
        *,
        registry: TerminalRegistry | None = None,
    ) -> "RotationCoordinator":
        return cls(
            store,
            hsm,
            pin_codec=PinBlockCodec(manager_config.pin_algorithm),
            mac_engine=MacEngine(manager_config.mac_algorithm),
            registry=registry,
            confirmed_by=hsm_config.confirmed_by,
            confirm_attempts=hsm_config.confirm_attempts,
            confirm_backoff_seconds=hsm_config.confirm_backoff_seconds,
            grace_period_hours=manager_config.grace_period_hours,
        )

    @property
    def store(self) -> KeyStore:
        return self._store

    @contextmanager
    def _claim(self, terminal_id: str, key_type: KeyType) -> Iterator[None]:
        slot = (terminal_id, key_type)
        with self._lock:
            if slot in self._claims:
                raise RotationConflictError(
                    f"{key_type.value} rotation already running for terminal '{terminal_id}'."
                )
            self._claims.add(slot)
        try:
            yield
        finally:
            with self._lock:
                self._claims.discard(slot)

    @staticmethod
    def _check_cancelled(cancel: threading.Event | None, state: RotationState) -> None:
        if cancel is not None and cancel.is_set():
            raise RotationCancelledError(
                f"Rotation cancelled terminal={state.terminal_id} "
                f"key_type={state.key_type.value} step={state.step.value}"
            )

    def _request(
        self,
        state: RotationState,
        grace_period_hours: int | None,
        description: str | None,
    ) -> KeyRotationResponse:
        request = KeyRotationRequest(
            key_type=state.key_type,
            grace_period_hours=grace_period_hours or self._grace_period_hours,
            description=description,
        )
        response = self._hsm.request_rotation(state.terminal_id, request)
        state.rotation_id = response.rotation_id
        state.encrypted_key_material = response.encrypted_new_key
        state.expected_checksum = response.new_key_checksum
        state.grace_period_end = response.grace_period_ends_at
        return response

    def _open_delivery(self, state: RotationState, current: KeyRecord) -> bytes:
        state.advance(RotationStep.DECRYPTING)
        try:
            new_key = decrypt_key_delivery(state.encrypted_key_material or "", current.value)
        except KeyDeliveryError:
            _logger.error(
                "SECURITY: key delivery could not be decrypted terminal=%s key_type=%s "
                "rotation_id=%s",
                state.terminal_id,
                state.key_type.value,
                state.rotation_id,
            )
            raise

        state.advance(RotationStep.VERIFYING)
        if not verify_key_checksum(new_key, state.expected_checksum or ""):
            _logger.error(
                "SECURITY: key checksum mismatch terminal=%s key_type=%s rotation_id=%s",
                state.terminal_id,
                state.key_type.value,
                state.rotation_id,
            )
            raise ChecksumMismatchError(
                f"Checksum mismatch for {state.key_type.value} key of terminal "
                f"'{state.terminal_id}' (expected={state.expected_checksum!r}, "
                f"actual={key_checksum(new_key)!r})."
            )
        return new_key

    def _stage(
        self,
        state: RotationState,
        *,
        grace_period_hours: int | None,
        description: str | None,
        cancel: threading.Event | None,
    ) -> tuple[KeyRecord, bytes, KeyRecord]:
        """Steps shared by every flow: request, decrypt, verify, store PENDING."""
        terminal_id, key_type = state.terminal_id, state.key_type
        current = self._store.get_active(terminal_id, key_type)
        if self._store.get_pending(terminal_id, key_type) is not None:
            raise RotationConflictError(
                f"{key_type.value} key for terminal '{terminal_id}' already has a PENDING version."
            )
        self._check_cancelled(cancel, state)

        self._request(state, grace_period_hours, description)
        self._check_cancelled(cancel, state)

        new_key = self._open_delivery(state, current)
        self._check_cancelled(cancel, state)

        pending = self._store.add_pending(
            terminal_id,
            key_type,
            new_key,
            rotation_id=state.rotation_id,
            bank_context=current.bank_context,
        )
        state.pending_version = pending.version
        state.advance(RotationStep.STORED_PENDING)
        return current, new_key, pending

    def _abandon(self, state: RotationState, exc: BaseException) -> None:
        state.fail(format_exception(exc))
        if state.reached_pending:
            self._store.remove_pending(state.terminal_id, state.key_type, state.pending_version)
        _logger.warning(
            "Rotation failed terminal=%s key_type=%s rotation_id=%s step=%s reason=%s",
            state.terminal_id,
            state.key_type.value,
            state.rotation_id,
            state.step.value,
            state.failure,
        )

    def rotate(
        self,
        terminal_id: str,
        key_type: KeyType | str,
        *,
        grace_period_hours: int | None = None,
        description: str | None = None,
        cancel: threading.Event | None = None,
    ) -> RotationState:
        """
        Rotate a terminal key end to end and activate it.

        Failures before the PENDING record is stored leave the slot untouched;
        later failures remove the PENDING record again. `cancel` is honoured
        between steps until activation starts.
        """
        key_type = KeyType.parse(key_type)
        with self._claim(terminal_id, key_type):
            _logger.info("Starting rotation terminal=%s key_type=%s", terminal_id, key_type.value)
            state = RotationState(terminal_id=terminal_id, key_type=key_type)
            try:
                current, new_key, pending = self._stage(
                    state,
                    grace_period_hours=grace_period_hours,
                    description=description,
                    cancel=cancel,
                )
                self._check_cancelled(cancel, state)
                self.self_test(key_type, new_key, current.bank_context, current_key=current.value)
                state.advance(RotationStep.TESTED)

                self._check_cancelled(cancel, state)
                self._confirm(terminal_id, state.rotation_id or "")
                state.advance(RotationStep.CONFIRMED)
            except BaseException as exc:
                self._abandon(state, exc)
                if not isinstance(exc, RotationConflictError):
                    self._forget_notice(terminal_id, key_type)
                raise

            activated = self._store.activate(terminal_id, key_type, pending.version)
            state.advance(RotationStep.ACTIVATED)
            state.complete()
            self._forget_notice(terminal_id, key_type)
        _logger.info(
            "Completed rotation terminal=%s key_type=%s rotation_id=%s version=%d",
            terminal_id,
            key_type.value,
            state.rotation_id,
            activated.version,
        )
        return state

    def distribute(
        self,
        terminal_id: str,
        key_type: KeyType | str,
        *,
        grace_period_hours: int | None = None,
        description: str | None = None,
    ) -> KeyDelivery:
        """
        Obtain and verify a new key for a terminal without activating it.

        The key stays PENDING; both the old and new key authenticate until
        `complete_distribution()` or `fail_distribution()` settles it.
        """
        key_type = KeyType.parse(key_type)
        with self._claim(terminal_id, key_type):
            _logger.info(
                "Starting key distribution terminal=%s key_type=%s", terminal_id, key_type.value
            )
            state = RotationState(terminal_id=terminal_id, key_type=key_type)
            try:
                current, new_key, pending = self._stage(
                    state,
                    grace_period_hours=grace_period_hours,
                    description=description,
                    cancel=None,
                )
                self.self_test(key_type, new_key, current.bank_context, current_key=current.value)
                state.advance(RotationStep.TESTED)
            except BaseException as exc:
                self._abandon(state, exc)
                if not isinstance(exc, RotationConflictError):
                    self._forget_notice(terminal_id, key_type)
                raise

        _logger.info(
            "Key distributed terminal=%s key_type=%s rotation_id=%s version=%d",
            terminal_id,
            key_type.value,
            state.rotation_id,
            pending.version,
        )
        return KeyDelivery(
            terminal_id=terminal_id,
            key_type=key_type,
            rotation_id=state.rotation_id or "",
            version=pending.version,
            encrypted_key=state.encrypted_key_material or "",
            checksum=state.expected_checksum or "",
            grace_period_ends_at=state.grace_period_end,
        )

    def complete_distribution(
        self, terminal_id: str, key_type: KeyType | str, version: int | None = None
    ) -> KeyRecord:
        """
        Activate a distributed key once the terminal has proven it holds it.

        Activation is committed first; a failed HSM confirmation afterwards is
        logged and does not undo it.
        """
        key_type = KeyType.parse(key_type)
        pending = self._store.get_pending(terminal_id, key_type)
        if pending is None:
            raise KeyNotFoundError(
                f"No PENDING {key_type.value} key for terminal '{terminal_id}'."
            )
        if version is not None and pending.version != version:
            raise KeyStateError(
                f"PENDING {key_type.value} key for terminal '{terminal_id}' is version "
                f"{pending.version}, not {version}."
            )
        activated = self._store.activate(terminal_id, key_type, pending.version)
        self._forget_notice(terminal_id, key_type)
        _logger.info(
            "Activated distributed key terminal=%s key_type=%s version=%d",
            terminal_id,
            key_type.value,
            activated.version,
        )
        if pending.rotation_id:
            try:
                self._confirm(terminal_id, pending.rotation_id)
            except KeyManagementError:
                _logger.exception(
                    "HSM confirmation failed after activation terminal=%s rotation_id=%s",
                    terminal_id,
                    pending.rotation_id,
                )
        return activated

    def fail_distribution(
        self, terminal_id: str, key_type: KeyType | str, reason: str | None = None
    ) -> bool:
        """Discard a distributed key the terminal could not install."""
        key_type = KeyType.parse(key_type)
        removed = self._store.remove_pending(terminal_id, key_type)
        self._forget_notice(terminal_id, key_type)
        _logger.warning(
            "Key installation failed terminal=%s key_type=%s removed_pending=%s reason=%s",
            terminal_id,
            key_type.value,
            removed,
            reason,
        )
        return removed

    def notify_rotation_due(self, terminal_id: str, key_type: KeyType | str) -> bool:
        """
        Ask a connected terminal to request a new key.

        Returns False when the terminal is not connected or the send fails.
        A slot already notified is refused until its rotation settles.
        """
        if self._registry is None:
            raise ConfigurationError("A TerminalRegistry is required to notify terminals.")
        key_type = KeyType.parse(key_type)
        if key_type is KeyType.TMK:
            raise InvalidInputError("Master key changes are not announced to terminals.")
        notice = build_rotation_notice(terminal_id, key_type)
        active_version = self._active_version(terminal_id, key_type)
        slot = (terminal_id, key_type)
        with self._lock:
            if self._announcement_open(slot):
                raise RotationConflictError(
                    f"{key_type.value} rotation already announced to terminal '{terminal_id}'."
                )
            self._notified[slot] = active_version

        channel = self._registry.get_channel(terminal_id)
        if channel is None:
            self._forget_notice(terminal_id, key_type)
            _logger.warning(
                "Cannot notify rotation, terminal not connected terminal=%s", terminal_id
            )
            return False

        try:
            channel.send(notice)
        except OSError as exc:
            self._forget_notice(terminal_id, key_type)
            _logger.error(
                "Failed to send rotation notice terminal=%s key_type=%s error=%s",
                terminal_id,
                key_type.value,
                format_exception(exc),
            )
            return False
        except BaseException:
            self._forget_notice(terminal_id, key_type)
            raise
        _logger.info(
            "Sent rotation notice terminal=%s key_type=%s", terminal_id, key_type.value
        )
        return True

    def is_rotation_announced(self, terminal_id: str, key_type: KeyType | str) -> bool:
        with self._lock:
            return self._announcement_open((terminal_id, KeyType.parse(key_type)))

    def _forget_notice(self, terminal_id: str, key_type: KeyType) -> None:
        with self._lock:
            self._notified.pop((terminal_id, key_type), None)

    def _active_version(self, terminal_id: str, key_type: KeyType) -> int | None:
        try:
            return self._store.get_active(terminal_id, key_type).version
        except KeyNotFoundError:
            return None

    def _announcement_open(self, slot: tuple[str, KeyType]) -> bool:
        """Caller holds `_lock`. Drops announcements settled outside this coordinator."""
        if slot not in self._notified:
            return False
        terminal_id, key_type = slot
        if self._store.get_pending(terminal_id, key_type) is None and (
            self._active_version(terminal_id, key_type) != self._notified[slot]
        ):
            del self._notified[slot]
            _logger.info(
                "Rotation notice settled by activation terminal=%s key_type=%s",
                terminal_id,
                key_type.value,
            )
            return False
        return True

    def _confirm(self, terminal_id: str, rotation_id: str) -> None:
        confirmation = KeyRotationConfirmation(
            rotation_id=rotation_id, confirmed_by=self._confirmed_by
        )
        for attempt in range(1, self._confirm_attempts + 1):
            try:
                self._hsm.confirm_rotation(terminal_id, confirmation)
                return
            except HsmTransportError as exc:
                if attempt == self._confirm_attempts:
                    raise
                _logger.warning(
                    "HSM confirmation attempt %d/%d failed rotation_id=%s error=%s",
                    attempt,
                    self._confirm_attempts,
                    rotation_id,
                    format_exception(exc),
                )
                self._sleep(self._confirm_backoff_seconds)

    def self_test(
        self,
        key_type: KeyType | str,
        new_key: bytes,
        bank_context: str,
        *,
        current_key: bytes | None = None,
    ) -> None:
        """
        Prove a delivered key works before anything depends on it.

        TPK keys round-trip an ISO-0 PIN block, TSK keys produce a MAC that
        verifies while a one-bit tamper does not, TMK keys round-trip a key
        delivery. Raises SelfTestError on any failure.
        """
        key_type = KeyType.parse(key_type)
        if len(new_key) != MASTER_KEY_LENGTH:
            raise SelfTestError(
                f"New {key_type.value} key must be {MASTER_KEY_LENGTH} bytes, got: {len(new_key)}"
            )
        if current_key is not None and secrets.compare_digest(new_key, current_key):
            raise SelfTestError(f"New {key_type.value} key is identical to the current key.")

        try:
            if key_type is KeyType.TPK:
                passed = self._test_pin_key(new_key, bank_context)
            elif key_type is KeyType.TSK:
                passed = self._test_mac_key(new_key, bank_context)
            else:
                probe = secrets.token_bytes(MASTER_KEY_LENGTH)
                delivered = encrypt_key_delivery(probe, new_key)
                passed = decrypt_key_delivery(delivered, new_key) == probe
        except (KeyManagementError, ValueError) as exc:
            _logger.error("SECURITY: %s key self-test raised error=%s", key_type.value, exc)
            raise SelfTestError(
                f"{key_type.value} key self-test failed: {format_exception(exc)}"
            ) from exc
        if not passed:
            _logger.error("SECURITY: %s key self-test failed", key_type.value)
            raise SelfTestError(f"{key_type.value} key self-test failed.")
        _logger.debug("Self-test passed key_type=%s", key_type.value)

    def _test_pin_key(self, new_key: bytes, bank_context: str) -> bool:
        encrypted = self._pin_codec.encrypt_pin(
            SELF_TEST_PIN, SELF_TEST_PAN, PinFormat.ISO_0, new_key, bank_context
        )
        recovered = self._pin_codec.decrypt_pin(
            encrypted, SELF_TEST_PAN, PinFormat.ISO_0, new_key, bank_context
        )
        return recovered == SELF_TEST_PIN

    def _test_mac_key(self, new_key: bytes, bank_context: str) -> bool:
        mac_key = self._mac_engine.derive_mac_key(new_key, bank_context)
        mac = self._mac_engine.generate(SELF_TEST_MAC_INPUT, mac_key)
        tampered = bytes([SELF_TEST_MAC_INPUT[0] ^ 0x01]) + SELF_TEST_MAC_INPUT[1:]
        return self._mac_engine.verify(SELF_TEST_MAC_INPUT, mac, mac_key) and not (
            self._mac_engine.verify(tampered, mac, mac_key)
        )
