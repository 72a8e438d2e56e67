from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone

MASTER_KEY_LENGTH = 32


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KeyType(str, enum.Enum):
    """Terminal key slots: PIN key, MAC (session) key, master key."""

    TPK = "TPK"
    TSK = "TSK"
    TMK = "TMK"

    @classmethod
    def parse(cls, value: str | KeyType) -> KeyType:
        if isinstance(value, KeyType):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError as exc:
            available = ", ".join(member.value for member in cls)
            raise ValueError(f"Unknown key type '{value}'. Available: {available}") from exc


class KeyStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PENDING = "PENDING"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class KeyRecord:
    """
    One version of a terminal key.

    `value` is the raw 32-byte master key; operational keys are always
    derived from it and never stored.
    """

    terminal_id: str
    key_type: KeyType
    bank_context: str
    value: bytes = field(repr=False)
    status: KeyStatus
    version: int
    rotation_id: str | None
    effective_from: datetime
    effective_until: datetime | None = None

    @property
    def slot(self) -> tuple[str, KeyType]:
        return self.terminal_id, self.key_type

    @property
    def is_valid(self) -> bool:
        return self.status in (KeyStatus.ACTIVE, KeyStatus.PENDING)


class RotationStatus(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class RotationStep(str, enum.Enum):
    REQUESTED = "REQUESTED"
    DECRYPTING = "DECRYPTING"
    VERIFYING = "VERIFYING"
    STORED_PENDING = "STORED_PENDING"
    TESTED = "TESTED"
    CONFIRMED = "CONFIRMED"
    ACTIVATED = "ACTIVATED"


@dataclass
class RotationState:
    """Progress of a single rotation attempt. Not shared across threads."""

    terminal_id: str
    key_type: KeyType
    rotation_id: str | None = None
    encrypted_key_material: str | None = field(default=None, repr=False)
    expected_checksum: str | None = None
    grace_period_end: datetime | None = None
    status: RotationStatus = RotationStatus.IN_PROGRESS
    step: RotationStep = RotationStep.REQUESTED
    pending_version: int | None = None
    failure: str | None = None

    def advance(self, step: RotationStep) -> None:
        self.step = step

    def complete(self) -> None:
        self.status = RotationStatus.COMPLETED

    def fail(self, reason: str) -> None:
        self.status = RotationStatus.FAILED
        self.failure = reason

    @property
    def reached_pending(self) -> bool:
        return self.pending_version is not None


@dataclass
class AuthenticationContext:
    """Per-message authentication data, kept until the reply is signed."""

    terminal_id: str
    key_type: KeyType
    data: bytes = field(repr=False)
    received_mac: bytes = field(repr=False)
    key_version_used: int | None = None
    used_pending_key: bool = False
