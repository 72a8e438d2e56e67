from __future__ import annotations

import binascii
import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Mapping

from .derivation import bytes_to_hex
from .exceptions import InvalidInputError, KeyNotFoundError, KeyStateError
from .key_store import KeyStore
from .mac import MAC_FIELD, MAC_LENGTH, MacEngine, MacInputRule
from .models import AuthenticationContext, KeyRecord, KeyStatus, KeyType
from .security_control import join_terminal_id

if TYPE_CHECKING:
    from .rotation import RotationCoordinator

_logger = logging.getLogger("atm_keys.auth")


class AuthOutcome(str, enum.Enum):
    VERIFIED = "VERIFIED"
    AUTH_FAILURE = "AUTH_FAILURE"
    NO_KEY = "NO_KEY"


@dataclass(frozen=True)
class VerificationResult:
    outcome: AuthOutcome
    terminal_id: str
    key_type: KeyType
    key_version: int | None = None
    pending: bool = False

    @property
    def verified(self) -> bool:
        return self.outcome is AuthOutcome.VERIFIED


def _decode_mac(value: str | bytes | None) -> bytes | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value
    try:
        return binascii.unhexlify(value.strip())
    except (binascii.Error, ValueError):
        return None


class AuthenticationOrchestrator:
    """
    MAC verification and signing for terminal traffic.

    During a grace period a terminal may use either its ACTIVE key or the
    PENDING one it was just given. Verification tries ACTIVE first, then
    PENDING, and reports which version matched; the response is signed with
    that same version. A PENDING match is activated in `commit()`, after the
    response has been delivered.
    """

    def __init__(
        self,
        store: KeyStore,
        mac_engine: MacEngine | None = None,
        *,
        coordinator: "RotationCoordinator | None" = None,
    ) -> None:
        self._store = store
        self._mac_engine = mac_engine or MacEngine()
        self._coordinator = coordinator

    def _candidates(self, terminal_id: str, key_type: KeyType) -> list[KeyRecord]:
        valid = self._store.get_valid_keys(terminal_id, key_type)
        active = [r for r in valid if r.status is KeyStatus.ACTIVE]
        pending = [r for r in valid if r.status is KeyStatus.PENDING]
        return active + pending

    def _mac_key(self, record: KeyRecord) -> bytes:
        return self._mac_engine.derive_mac_key(record.value, record.bank_context)

    def verify_inbound(
        self,
        data: bytes,
        mac: bytes,
        terminal_id: str,
        key_type: KeyType | str = KeyType.TSK,
    ) -> VerificationResult:
        key_type = KeyType.parse(key_type)
        candidates = self._candidates(terminal_id, key_type)
        if not candidates:
            _logger.warning(
                "No valid %s key for terminal=%s; cannot verify MAC",
                key_type.value,
                terminal_id,
            )
            return VerificationResult(AuthOutcome.NO_KEY, terminal_id, key_type)

        for record in candidates:
            if self._mac_engine.verify(data, mac, self._mac_key(record)):
                pending = record.status is KeyStatus.PENDING
                if pending:
                    _logger.info(
                        "MAC verified with PENDING key terminal=%s key_type=%s version=%d",
                        terminal_id,
                        key_type.value,
                        record.version,
                    )
                else:
                    _logger.debug(
                        "MAC verified terminal=%s key_type=%s version=%d",
                        terminal_id,
                        key_type.value,
                        record.version,
                    )
                return VerificationResult(
                    AuthOutcome.VERIFIED,
                    terminal_id,
                    key_type,
                    key_version=record.version,
                    pending=pending,
                )

        _logger.warning(
            "MAC verification failed terminal=%s key_type=%s tried_versions=%s",
            terminal_id,
            key_type.value,
            ",".join(str(r.version) for r in candidates),
        )
        return VerificationResult(AuthOutcome.AUTH_FAILURE, terminal_id, key_type)

    def authenticate(self, context: AuthenticationContext) -> VerificationResult:
        """Verify `context` and record the key version that authenticated it."""
        result = self.verify_inbound(
            context.data, context.received_mac, context.terminal_id, context.key_type
        )
        if result.verified:
            context.key_version_used = result.key_version
            context.used_pending_key = result.pending
        return result

    def sign_outbound(
        self,
        data: bytes,
        terminal_id: str,
        key_type: KeyType | str,
        key_version: int,
    ) -> bytes:
        key_type = KeyType.parse(key_type)
        record = self._store.get_by_version(terminal_id, key_type, key_version)
        if not record.is_valid:
            raise KeyStateError(
                f"{key_type.value} version {key_version} for terminal '{terminal_id}' "
                f"is {record.status.value}; refusing to sign."
            )
        return self._mac_engine.generate(data, self._mac_key(record))

    def verify_message(
        self,
        fields: Mapping[int, str | bytes],
        terminal_id: str | None = None,
        key_type: KeyType | str = KeyType.TSK,
    ) -> VerificationResult:
        """Verify field 64 of a field map over its canonical MAC input."""
        key_type = KeyType.parse(key_type)
        terminal_id = terminal_id or join_terminal_id(fields)
        if not terminal_id:
            raise InvalidInputError("Message does not identify a terminal.")
        mac = _decode_mac(fields.get(MAC_FIELD))
        if mac is None or len(mac) != MAC_LENGTH:
            _logger.warning("Missing or malformed MAC field terminal=%s", terminal_id)
            return VerificationResult(AuthOutcome.AUTH_FAILURE, terminal_id, key_type)
        return self.verify_inbound(MacInputRule.build(fields), mac, terminal_id, key_type)

    def sign_message(
        self, fields: Mapping[int, str | bytes], result: VerificationResult
    ) -> dict[int, str | bytes]:
        """Return a copy of `fields` with field 64 set, signed with the request's key version."""
        if not result.verified or result.key_version is None:
            raise KeyStateError("Only responses to verified requests can be signed.")
        signed = MacInputRule.strip(fields)
        mac = self.sign_outbound(
            MacInputRule.build(signed), result.terminal_id, result.key_type, result.key_version
        )
        signed[MAC_FIELD] = bytes_to_hex(mac)
        return signed

    def commit(self, result: VerificationResult) -> KeyRecord | None:
        """
        Activate the PENDING key a delivered response was signed with.

        No-op for results that did not use a PENDING key. A concurrent commit
        that already activated the same version is not an error.
        """
        if not result.verified or not result.pending or result.key_version is None:
            return None
        try:
            if self._coordinator is not None:
                return self._coordinator.complete_distribution(
                    result.terminal_id, result.key_type, result.key_version
                )
            return self._store.activate(result.terminal_id, result.key_type, result.key_version)
        except (KeyNotFoundError, KeyStateError):
            record = self._store.get_by_version(
                result.terminal_id, result.key_type, result.key_version
            )
            if record.status is KeyStatus.ACTIVE:
                _logger.debug(
                    "Key already activated terminal=%s key_type=%s version=%d",
                    result.terminal_id,
                    result.key_type.value,
                    result.key_version,
                )
                return record
            raise
