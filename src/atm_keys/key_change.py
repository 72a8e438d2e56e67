from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from .exceptions import InvalidInputError, KeyManagementError, format_exception
from .models import KeyType
from .rotation import RotationCoordinator
from .security_control import (
    ADDITIONAL_DATA_FIELD,
    KEY_CHANGE_CODE,
    KEY_DATA_FIELD,
    MTI_FIELD,
    NETWORK_MANAGEMENT_FIELD,
    NETWORK_MANAGEMENT_MTI,
    SECURITY_CONTROL_FIELD,
    STAN_FIELD,
    SecurityControl,
    SecurityOperation,
    build_response,
    join_terminal_id,
)

APPROVED = "00"
FORMAT_ERROR = "30"
SYSTEM_ERROR = "96"

_logger = logging.getLogger("atm_keys.key_change")


@dataclass
class KeyChangeResult:
    """
    Response to a key-change message plus the work deferred until it is sent.

    Call `commit()` only after the response reached the terminal.
    """

    response: dict[int, str]
    terminal_id: str | None = None
    key_type: KeyType | None = None
    operation: SecurityOperation | None = None
    on_delivered: Callable[[], Any] | None = field(default=None, repr=False)

    @property
    def response_code(self) -> str:
        return self.response[39]

    def commit(self) -> Any:
        if self.on_delivered is None:
            return None
        try:
            return self.on_delivered()
        except KeyManagementError:
            _logger.exception(
                "Deferred key-change step failed terminal=%s key_type=%s operation=%s",
                self.terminal_id,
                self.key_type.value if self.key_type else None,
                self.operation.name if self.operation else None,
            )
            return None


class KeyChangeHandler:
    """Maps field 53 key-change operations onto the rotation coordinator."""

    def __init__(self, coordinator: RotationCoordinator) -> None:
        self._coordinator = coordinator

    @staticmethod
    def is_key_change(message: Mapping[int, str]) -> bool:
        if message.get(MTI_FIELD) != NETWORK_MANAGEMENT_MTI:
            return False
        if (message.get(NETWORK_MANAGEMENT_FIELD) or "").strip() != KEY_CHANGE_CODE:
            return False
        control = message.get(SECURITY_CONTROL_FIELD) or ""
        return len(control.strip()) >= 2

    def handle(self, message: Mapping[int, str]) -> KeyChangeResult | None:
        """Return None for messages that are not key changes."""
        if not self.is_key_change(message):
            return None

        try:
            control = SecurityControl.parse(message[SECURITY_CONTROL_FIELD])
        except InvalidInputError as exc:
            _logger.error("Rejected key-change message: %s", exc)
            return KeyChangeResult(build_response(message, FORMAT_ERROR))

        terminal_id = join_terminal_id(message)
        if not terminal_id:
            _logger.error(
                "Key-change message without terminal id stan=%s", message.get(STAN_FIELD)
            )
            return KeyChangeResult(
                build_response(message, FORMAT_ERROR), operation=control.operation
            )

        action = control.operation.action
        if action == "REQUEST":
            return self._handle_request(message, terminal_id, control)
        if action == "CONFIRM":
            return self._handle_confirmation(message, terminal_id, control)
        if action == "FAIL":
            return self._handle_failure(message, terminal_id, control)

        _logger.error(
            "Unsupported inbound security operation=%s terminal=%s",
            control.operation.value,
            terminal_id,
        )
        return KeyChangeResult(
            build_response(message, FORMAT_ERROR),
            terminal_id=terminal_id,
            key_type=control.key_type,
            operation=control.operation,
        )

    def _handle_request(
        self, message: Mapping[int, str], terminal_id: str, control: SecurityControl
    ) -> KeyChangeResult:
        _logger.info(
            "Key request terminal=%s key_type=%s stan=%s",
            terminal_id,
            control.key_type.value,
            message.get(STAN_FIELD),
        )
        try:
            delivery = self._coordinator.distribute(terminal_id, control.key_type)
        except KeyManagementError as exc:
            _logger.error(
                "Key distribution failed terminal=%s key_type=%s error=%s",
                terminal_id,
                control.key_type.value,
                format_exception(exc),
            )
            return KeyChangeResult(
                build_response(message, SYSTEM_ERROR),
                terminal_id=terminal_id,
                key_type=control.key_type,
                operation=control.operation,
            )

        response = build_response(message, APPROVED)
        response[ADDITIONAL_DATA_FIELD] = delivery.checksum
        response[KEY_DATA_FIELD] = delivery.encrypted_key
        return KeyChangeResult(
            response,
            terminal_id=terminal_id,
            key_type=control.key_type,
            operation=control.operation,
        )

    def _handle_confirmation(
        self, message: Mapping[int, str], terminal_id: str, control: SecurityControl
    ) -> KeyChangeResult:
        pending = self._coordinator.store.get_pending(terminal_id, control.key_type)
        if pending is None:
            _logger.warning(
                "Key confirmation without PENDING key terminal=%s key_type=%s",
                terminal_id,
                control.key_type.value,
            )
            return KeyChangeResult(
                build_response(message, SYSTEM_ERROR),
                terminal_id=terminal_id,
                key_type=control.key_type,
                operation=control.operation,
            )

        _logger.info(
            "Key confirmation terminal=%s key_type=%s version=%d",
            terminal_id,
            control.key_type.value,
            pending.version,
        )

        def on_delivered() -> Any:
            return self._coordinator.complete_distribution(
                terminal_id, control.key_type, pending.version
            )

        return KeyChangeResult(
            build_response(message, APPROVED),
            terminal_id=terminal_id,
            key_type=control.key_type,
            operation=control.operation,
            on_delivered=on_delivered,
        )

    def _handle_failure(
        self, message: Mapping[int, str], terminal_id: str, control: SecurityControl
    ) -> KeyChangeResult:
        reason = (message.get(ADDITIONAL_DATA_FIELD) or "").strip() or None
        _logger.error(
            "Key installation failed at terminal=%s key_type=%s reason=%s",
            terminal_id,
            control.key_type.value,
            reason,
        )

        def on_delivered() -> Any:
            return self._coordinator.fail_distribution(terminal_id, control.key_type, reason)

        return KeyChangeResult(
            build_response(message, APPROVED),
            terminal_id=terminal_id,
            key_type=control.key_type,
            operation=control.operation,
            on_delivered=on_delivered,
        )
