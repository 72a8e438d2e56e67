"""
Field 53 security-control codes and the network-management messages built on them.

Messages are plain ``dict[int, str]`` field maps; field 0 carries the MTI.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass
from typing import Mapping

from .exceptions import InvalidInputError
from .models import KeyType

MTI_FIELD = 0
STAN_FIELD = 11
RESPONSE_CODE_FIELD = 39
TERMINAL_FIELD = 41
INSTITUTION_FIELD = 42
ADDITIONAL_DATA_FIELD = 48
SECURITY_CONTROL_FIELD = 53
NETWORK_MANAGEMENT_FIELD = 70
KEY_DATA_FIELD = 123

NETWORK_MANAGEMENT_MTI = "0800"
NETWORK_MANAGEMENT_RESPONSE_MTI = "0810"
KEY_CHANGE_CODE = "301"

SECURITY_CONTROL_LENGTH = 16
TERMINAL_ID_FIELD_WIDTH = 15

_KEY_TYPE_CODES = {KeyType.TPK: "01", KeyType.TSK: "02"}
_KEY_TYPES_BY_CODE = {code: key_type for key_type, code in _KEY_TYPE_CODES.items()}


class SecurityOperation(str, enum.Enum):
    REQUEST_TPK = "01"
    REQUEST_TSK = "02"
    CONFIRM_TPK = "03"
    CONFIRM_TSK = "04"
    FAIL_TPK = "05"
    FAIL_TSK = "06"
    ROTATION_NOTICE = "07"

    @property
    def action(self) -> str:
        return self.name.split("_", 1)[0]


_OPERATION_KEY_TYPES = {
    SecurityOperation.REQUEST_TPK: KeyType.TPK,
    SecurityOperation.REQUEST_TSK: KeyType.TSK,
    SecurityOperation.CONFIRM_TPK: KeyType.TPK,
    SecurityOperation.CONFIRM_TSK: KeyType.TSK,
    SecurityOperation.FAIL_TPK: KeyType.TPK,
    SecurityOperation.FAIL_TSK: KeyType.TSK,
}


@dataclass(frozen=True)
class SecurityControl:
    """
    A decoded field 53 value.

    Codes 01-06 carry the key type in the operation itself; the server notice
    (07) names it in the next two digits. The rest of the 16 digits is zero.
    """

    operation: SecurityOperation
    key_type: KeyType

    @classmethod
    def for_key_type(cls, action: str, key_type: KeyType) -> "SecurityControl":
        key_type = KeyType.parse(key_type)
        if key_type not in _KEY_TYPE_CODES:
            raise InvalidInputError(f"{key_type.value} keys are not exchanged through field 53.")
        if action == "NOTICE":
            return cls(SecurityOperation.ROTATION_NOTICE, key_type)
        for operation, operation_key_type in _OPERATION_KEY_TYPES.items():
            if operation.action == action and operation_key_type is key_type:
                return cls(operation, key_type)
        raise InvalidInputError(f"Unknown security-control action: {action}")

    @classmethod
    def parse(cls, value: str | None) -> "SecurityControl":
        if not value or len(value.strip()) < 2:
            raise InvalidInputError("Security control field is missing or too short.")
        value = value.strip()
        try:
            operation = SecurityOperation(value[:2])
        except ValueError as exc:
            raise InvalidInputError(f"Unsupported security operation: {value[:2]}") from exc

        if operation is SecurityOperation.ROTATION_NOTICE:
            key_type = _KEY_TYPES_BY_CODE.get(value[2:4])
            if key_type is None:
                raise InvalidInputError(
                    f"Unknown key type code in rotation notice: {value[2:4]!r}"
                )
            return cls(operation, key_type)
        return cls(operation, _OPERATION_KEY_TYPES[operation])

    def encode(self) -> str:
        if self.operation is SecurityOperation.ROTATION_NOTICE:
            prefix = self.operation.value + _KEY_TYPE_CODES[self.key_type]
        else:
            prefix = self.operation.value
        return prefix.ljust(SECURITY_CONTROL_LENGTH, "0")


def split_terminal_id(terminal_id: str) -> tuple[str | None, str]:
    """
    Split ``TRM-ISS001-ATM-001`` into (``TRM-ISS001``, ``ATM-001``).

    Two-part ids split on the dash; single-part ids have no institution.
    """
    if not terminal_id or not terminal_id.strip():
        raise InvalidInputError("terminal_id must not be empty.")
    parts = terminal_id.strip().split("-", 2)
    if len(parts) == 3:
        return f"{parts[0]}-{parts[1]}", parts[2]
    if len(parts) == 2:
        return parts[0], parts[1]
    return None, parts[0]


def _field_text(fields: Mapping[int, str | bytes], number: int) -> str:
    value = fields.get(number) or ""
    if isinstance(value, bytes):
        value = value.decode("ascii", errors="replace")
    return value.strip()


def join_terminal_id(fields: Mapping[int, str | bytes]) -> str | None:
    terminal = _field_text(fields, TERMINAL_FIELD)
    if not terminal:
        return None
    institution = _field_text(fields, INSTITUTION_FIELD)
    return f"{institution}-{terminal}" if institution else terminal


def terminal_id_fields(terminal_id: str) -> dict[int, str]:
    institution, terminal = split_terminal_id(terminal_id)
    fields = {TERMINAL_FIELD: terminal.ljust(TERMINAL_ID_FIELD_WIDTH)}
    if institution is not None:
        fields[INSTITUTION_FIELD] = institution.ljust(TERMINAL_ID_FIELD_WIDTH)
    return fields


def next_stan() -> str:
    return f"{int(time.time() * 1000) % 1_000_000:06d}"


def build_rotation_notice(
    terminal_id: str, key_type: KeyType, *, stan: str | None = None
) -> dict[int, str]:
    """Build the 0800 message asking a terminal to start a key change."""
    message = {
        MTI_FIELD: NETWORK_MANAGEMENT_MTI,
        STAN_FIELD: stan or next_stan(),
        SECURITY_CONTROL_FIELD: SecurityControl.for_key_type("NOTICE", key_type).encode(),
        NETWORK_MANAGEMENT_FIELD: KEY_CHANGE_CODE,
    }
    message.update(terminal_id_fields(terminal_id))
    return message


def build_response(request: Mapping[int, str], response_code: str) -> dict[int, str]:
    """Echo the routing fields of `request` into an 0810 with `response_code`."""
    response = {
        number: request[number]
        for number in (STAN_FIELD, TERMINAL_FIELD, INSTITUTION_FIELD, SECURITY_CONTROL_FIELD)
        if number in request
    }
    response[MTI_FIELD] = NETWORK_MANAGEMENT_RESPONSE_MTI
    response[RESPONSE_CODE_FIELD] = response_code
    return response
