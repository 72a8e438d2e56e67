from __future__ import annotations

import abc
import logging
import operator
import os
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator

from .exceptions import (
    InvalidInputError,
    KeyNotFoundError,
    KeyStateError,
    KeyStoreUnavailableError,
    RotationConflictError,
    format_exception,
)
from .models import MASTER_KEY_LENGTH, KeyRecord, KeyStatus, KeyType, utcnow

_logger = logging.getLogger("atm_keys.store")

Clock = Callable[[], datetime]


def _validate_slot(terminal_id: str, key_type: KeyType | str) -> KeyType:
    if not terminal_id or not terminal_id.strip():
        raise InvalidInputError("terminal_id must not be empty.")
    return KeyType.parse(key_type)


def _validate_value(value: bytes) -> bytes:
    if not isinstance(value, (bytes, bytearray)) or len(value) != MASTER_KEY_LENGTH:
        size = len(value) if isinstance(value, (bytes, bytearray)) else type(value).__name__
        raise InvalidInputError(
            f"Terminal master keys must be {MASTER_KEY_LENGTH} bytes, got: {size}"
        )
    return bytes(value)


def _ordered_valid(records: list[KeyRecord]) -> list[KeyRecord]:
    pending = [r for r in records if r.status is KeyStatus.PENDING]
    active = [r for r in records if r.status is KeyStatus.ACTIVE]
    by_version = operator.attrgetter("version")
    return sorted(pending, key=by_version, reverse=True) + sorted(
        active, key=by_version, reverse=True
    )


class KeyStore(abc.ABC):
    """
    Versioned terminal keys per (terminal, key type) slot.

    A slot holds at most one ACTIVE and at most one PENDING record. Versions
    increase strictly; EXPIRED records are history and never change.
    """

    @abc.abstractmethod
    def get_active(self, terminal_id: str, key_type: KeyType | str) -> KeyRecord:
        """Return the ACTIVE record or raise KeyNotFoundError."""

    @abc.abstractmethod
    def get_valid_keys(self, terminal_id: str, key_type: KeyType | str) -> list[KeyRecord]:
        """PENDING then ACTIVE records, each by version descending."""

    @abc.abstractmethod
    def get_by_version(
        self, terminal_id: str, key_type: KeyType | str, version: int
    ) -> KeyRecord:
        ...

    @abc.abstractmethod
    def get_pending(self, terminal_id: str, key_type: KeyType | str) -> KeyRecord | None:
        ...

    @abc.abstractmethod
    def add_pending(
        self,
        terminal_id: str,
        key_type: KeyType | str,
        value: bytes,
        *,
        rotation_id: str | None = None,
        bank_context: str | None = None,
    ) -> KeyRecord:
        """
        Store `value` as the next version in PENDING state.

        `bank_context` defaults to the current ACTIVE record's context.
        Raises RotationConflictError when the slot already has a PENDING key.
        """

    @abc.abstractmethod
    def activate(self, terminal_id: str, key_type: KeyType | str, version: int) -> KeyRecord:
        """Promote PENDING `version` to ACTIVE and expire the previous ACTIVE atomically."""

    @abc.abstractmethod
    def remove_pending(
        self, terminal_id: str, key_type: KeyType | str, version: int | None = None
    ) -> bool:
        ...

    @abc.abstractmethod
    def provision(
        self,
        terminal_id: str,
        key_type: KeyType | str,
        value: bytes,
        bank_context: str,
        *,
        rotation_id: str | None = None,
    ) -> KeyRecord:
        """Inject the first ACTIVE key for a slot."""

    @abc.abstractmethod
    def list_terminal_keys(self, terminal_id: str) -> list[KeyRecord]:
        ...

    def rotate(
        self,
        terminal_id: str,
        key_type: KeyType | str,
        value: bytes,
        *,
        rotation_id: str | None = None,
    ) -> KeyRecord:
        """Add `value` as PENDING and activate it immediately."""
        pending = self.add_pending(terminal_id, key_type, value, rotation_id=rotation_id)
        return self.activate(terminal_id, key_type, pending.version)

    def close(self) -> None:
        return None


class InMemoryKeyStore(KeyStore):
    """Process-local store. Slot lists are replaced wholesale on every write."""

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._records: dict[tuple[str, KeyType], list[KeyRecord]] = {}
        self._slot_locks: dict[tuple[str, KeyType], threading.Lock] = {}
        self._guard = threading.Lock()

    def _slot_lock(self, slot: tuple[str, KeyType]) -> threading.Lock:
        with self._guard:
            lock = self._slot_locks.get(slot)
            if lock is None:
                lock = self._slot_locks[slot] = threading.Lock()
            return lock

    def _snapshot(self, slot: tuple[str, KeyType]) -> list[KeyRecord]:
        return list(self._records.get(slot, ()))

    def get_active(self, terminal_id: str, key_type: KeyType | str) -> KeyRecord:
        key_type = _validate_slot(terminal_id, key_type)
        for record in self._snapshot((terminal_id, key_type)):
            if record.status is KeyStatus.ACTIVE:
                return record
        raise KeyNotFoundError(
            f"No ACTIVE {key_type.value} key for terminal '{terminal_id}'."
        )

    def get_valid_keys(self, terminal_id: str, key_type: KeyType | str) -> list[KeyRecord]:
        key_type = _validate_slot(terminal_id, key_type)
        return _ordered_valid(self._snapshot((terminal_id, key_type)))

    def get_by_version(
        self, terminal_id: str, key_type: KeyType | str, version: int
    ) -> KeyRecord:
        key_type = _validate_slot(terminal_id, key_type)
        for record in self._snapshot((terminal_id, key_type)):
            if record.version == version:
                return record
        raise KeyNotFoundError(
            f"No {key_type.value} key version {version} for terminal '{terminal_id}'."
        )

    def get_pending(self, terminal_id: str, key_type: KeyType | str) -> KeyRecord | None:
        key_type = _validate_slot(terminal_id, key_type)
        for record in self._snapshot((terminal_id, key_type)):
            if record.status is KeyStatus.PENDING:
                return record
        return None

    def add_pending(
        self,
        terminal_id: str,
        key_type: KeyType | str,
        value: bytes,
        *,
        rotation_id: str | None = None,
        bank_context: str | None = None,
    ) -> KeyRecord:
        key_type = _validate_slot(terminal_id, key_type)
        value = _validate_value(value)
        slot = (terminal_id, key_type)
        with self._slot_lock(slot):
            records = self._snapshot(slot)
            if any(r.status is KeyStatus.PENDING for r in records):
                raise RotationConflictError(
                    f"{key_type.value} rotation already pending for terminal '{terminal_id}'."
                )
            if bank_context is None:
                active = [r for r in records if r.status is KeyStatus.ACTIVE]
                if not active:
                    raise KeyNotFoundError(
                        f"No ACTIVE {key_type.value} key for terminal '{terminal_id}' "
                        "to inherit the bank context from."
                    )
                bank_context = active[0].bank_context
            record = KeyRecord(
                terminal_id=terminal_id,
                key_type=key_type,
                bank_context=bank_context,
                value=value,
                status=KeyStatus.PENDING,
                version=max((r.version for r in records), default=0) + 1,
                rotation_id=rotation_id,
                effective_from=self._clock(),
            )
            self._records[slot] = records + [record]
        _logger.info(
            "Stored PENDING key terminal=%s key_type=%s version=%d rotation_id=%s",
            terminal_id,
            key_type.value,
            record.version,
            rotation_id,
        )
        return record

    def activate(self, terminal_id: str, key_type: KeyType | str, version: int) -> KeyRecord:
        key_type = _validate_slot(terminal_id, key_type)
        slot = (terminal_id, key_type)
        with self._slot_lock(slot):
            records = self._snapshot(slot)
            target = next((r for r in records if r.version == version), None)
            if target is None:
                raise KeyNotFoundError(
                    f"No {key_type.value} key version {version} for terminal '{terminal_id}'."
                )
            if target.status is not KeyStatus.PENDING:
                raise KeyStateError(
                    f"Cannot activate {key_type.value} version {version} for terminal "
                    f"'{terminal_id}': status is {target.status.value}, expected PENDING."
                )
            now = self._clock()
            updated: list[KeyRecord] = []
            activated = replace(target, status=KeyStatus.ACTIVE, effective_from=now)
            for record in records:
                if record is target:
                    updated.append(activated)
                elif record.status is KeyStatus.ACTIVE:
                    updated.append(
                        replace(
                            record,
                            status=KeyStatus.EXPIRED,
                            effective_until=max(now, record.effective_from),
                        )
                    )
                else:
                    updated.append(record)
            self._records[slot] = updated
        _logger.info(
            "Activated key terminal=%s key_type=%s version=%d",
            terminal_id,
            key_type.value,
            version,
        )
        return activated

    def remove_pending(
        self, terminal_id: str, key_type: KeyType | str, version: int | None = None
    ) -> bool:
        key_type = _validate_slot(terminal_id, key_type)
        slot = (terminal_id, key_type)
        with self._slot_lock(slot):
            records = self._snapshot(slot)
            kept = [
                r
                for r in records
                if not (
                    r.status is KeyStatus.PENDING and (version is None or r.version == version)
                )
            ]
            if len(kept) == len(records):
                return False
            self._records[slot] = kept
        _logger.info(
            "Removed PENDING key terminal=%s key_type=%s version=%s",
            terminal_id,
            key_type.value,
            version,
        )
        return True

    def provision(
        self,
        terminal_id: str,
        key_type: KeyType | str,
        value: bytes,
        bank_context: str,
        *,
        rotation_id: str | None = None,
    ) -> KeyRecord:
        key_type = _validate_slot(terminal_id, key_type)
        value = _validate_value(value)
        if not bank_context:
            raise InvalidInputError("bank_context must not be empty.")
        slot = (terminal_id, key_type)
        with self._slot_lock(slot):
            records = self._snapshot(slot)
            if any(r.status is not KeyStatus.EXPIRED for r in records):
                raise KeyStateError(
                    f"{key_type.value} key already provisioned for terminal '{terminal_id}'."
                )
            record = KeyRecord(
                terminal_id=terminal_id,
                key_type=key_type,
                bank_context=bank_context,
                value=value,
                status=KeyStatus.ACTIVE,
                version=max((r.version for r in records), default=0) + 1,
                rotation_id=rotation_id,
                effective_from=self._clock(),
            )
            self._records[slot] = records + [record]
        _logger.info(
            "Provisioned key terminal=%s key_type=%s version=%d",
            terminal_id,
            key_type.value,
            record.version,
        )
        return record

    def list_terminal_keys(self, terminal_id: str) -> list[KeyRecord]:
        with self._guard:
            slots = [slot for slot in self._records if slot[0] == terminal_id]
        records = [r for slot in slots for r in self._snapshot(slot)]
        return sorted(records, key=lambda r: (r.key_type.value, r.version))


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS terminal_keys (
      terminal_id TEXT NOT NULL,
      key_type TEXT NOT NULL,
      version INTEGER NOT NULL,
      bank_context TEXT NOT NULL,
      key_value BLOB NOT NULL,
      status TEXT NOT NULL,
      rotation_id TEXT,
      effective_from TEXT NOT NULL,
      effective_until TEXT,
      PRIMARY KEY (terminal_id, key_type, version)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_terminal_keys_active
      ON terminal_keys (terminal_id, key_type) WHERE status = 'ACTIVE'
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_terminal_keys_pending
      ON terminal_keys (terminal_id, key_type) WHERE status = 'PENDING'
    """,
)

_COLUMNS = (
    "terminal_id, key_type, version, bank_context, key_value, status, "
    "rotation_id, effective_from, effective_until"
)


def _row_to_record(row: sqlite3.Row) -> KeyRecord:
    return KeyRecord(
        terminal_id=row["terminal_id"],
        key_type=KeyType(row["key_type"]),
        bank_context=row["bank_context"],
        value=bytes(row["key_value"]),
        status=KeyStatus(row["status"]),
        version=int(row["version"]),
        rotation_id=row["rotation_id"],
        effective_from=datetime.fromisoformat(row["effective_from"]),
        effective_until=(
            datetime.fromisoformat(row["effective_until"]) if row["effective_until"] else None
        ),
    )


class SqliteKeyStore(KeyStore):
    """
    Durable store on a single SQLite database file.

    Writes run in BEGIN IMMEDIATE transactions, and partial unique indexes
    reject a second ACTIVE or PENDING record per slot even across processes.
    """

    def __init__(
        self, path: str | Path, clock: Clock = utcnow, *, timeout: float = 5.0
    ) -> None:
        self._path = str(path)
        if self._path != ":memory:":
            os.makedirs(os.path.dirname(self._path) or ".", exist_ok=True)
        self._clock = clock
        self._lock = threading.RLock()
        self._db = sqlite3.connect(
            self._path, timeout=timeout, check_same_thread=False, isolation_level=None
        )
        self._db.row_factory = sqlite3.Row
        self._init()

    def _init(self) -> None:
        with self._lock:
            for statement in _SCHEMA:
                self._db.execute(statement)
        _logger.debug("Opened SQLite key store path=%s", self._path)

    def close(self) -> None:
        with self._lock:
            self._db.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                raise KeyStoreUnavailableError(
                    f"Key store {self._path!r} is busy: {format_exception(exc)}"
                ) from exc
            try:
                yield self._db
            except BaseException:
                self._db.execute("ROLLBACK")
                raise
            try:
                self._db.execute("COMMIT")
            except sqlite3.OperationalError as exc:
                self._db.execute("ROLLBACK")
                raise KeyStoreUnavailableError(
                    f"Key store {self._path!r} could not commit: {format_exception(exc)}"
                ) from exc

    def _fetch(self, sql: str, params: tuple) -> list[KeyRecord]:
        with self._lock:
            rows = self._db.execute(
                f"SELECT {_COLUMNS} FROM terminal_keys {sql}", params
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def get_active(self, terminal_id: str, key_type: KeyType | str) -> KeyRecord:
        key_type = _validate_slot(terminal_id, key_type)
        records = self._fetch(
            "WHERE terminal_id = ? AND key_type = ? AND status = 'ACTIVE'",
            (terminal_id, key_type.value),
        )
        if not records:
            raise KeyNotFoundError(
                f"No ACTIVE {key_type.value} key for terminal '{terminal_id}'."
            )
        return records[0]

    def get_valid_keys(self, terminal_id: str, key_type: KeyType | str) -> list[KeyRecord]:
        key_type = _validate_slot(terminal_id, key_type)
        return _ordered_valid(
            self._fetch(
                "WHERE terminal_id = ? AND key_type = ? AND status IN ('ACTIVE', 'PENDING')",
                (terminal_id, key_type.value),
            )
        )

    def get_by_version(
        self, terminal_id: str, key_type: KeyType | str, version: int
    ) -> KeyRecord:
        key_type = _validate_slot(terminal_id, key_type)
        records = self._fetch(
            "WHERE terminal_id = ? AND key_type = ? AND version = ?",
            (terminal_id, key_type.value, int(version)),
        )
        if not records:
            raise KeyNotFoundError(
                f"No {key_type.value} key version {version} for terminal '{terminal_id}'."
            )
        return records[0]

    def get_pending(self, terminal_id: str, key_type: KeyType | str) -> KeyRecord | None:
        key_type = _validate_slot(terminal_id, key_type)
        records = self._fetch(
            "WHERE terminal_id = ? AND key_type = ? AND status = 'PENDING'",
            (terminal_id, key_type.value),
        )
        return records[0] if records else None

    @staticmethod
    def _next_version(db: sqlite3.Connection, terminal_id: str, key_type: KeyType) -> int:
        row = db.execute(
            "SELECT COALESCE(MAX(version), 0) AS latest FROM terminal_keys "
            "WHERE terminal_id = ? AND key_type = ?",
            (terminal_id, key_type.value),
        ).fetchone()
        return int(row["latest"]) + 1

    def _insert(self, db: sqlite3.Connection, record: KeyRecord) -> None:
        db.execute(
            f"INSERT INTO terminal_keys ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.terminal_id,
                record.key_type.value,
                record.version,
                record.bank_context,
                record.value,
                record.status.value,
                record.rotation_id,
                record.effective_from.isoformat(),
                record.effective_until.isoformat() if record.effective_until else None,
            ),
        )

    def add_pending(
        self,
        terminal_id: str,
        key_type: KeyType | str,
        value: bytes,
        *,
        rotation_id: str | None = None,
        bank_context: str | None = None,
    ) -> KeyRecord:
        key_type = _validate_slot(terminal_id, key_type)
        value = _validate_value(value)
        try:
            with self._transaction() as db:
                if bank_context is None:
                    row = db.execute(
                        "SELECT bank_context FROM terminal_keys "
                        "WHERE terminal_id = ? AND key_type = ? AND status = 'ACTIVE'",
                        (terminal_id, key_type.value),
                    ).fetchone()
                    if row is None:
                        raise KeyNotFoundError(
                            f"No ACTIVE {key_type.value} key for terminal '{terminal_id}' "
                            "to inherit the bank context from."
                        )
                    bank_context = row["bank_context"]
                record = KeyRecord(
                    terminal_id=terminal_id,
                    key_type=key_type,
                    bank_context=bank_context,
                    value=value,
                    status=KeyStatus.PENDING,
                    version=self._next_version(db, terminal_id, key_type),
                    rotation_id=rotation_id,
                    effective_from=self._clock(),
                )
                self._insert(db, record)
        except sqlite3.IntegrityError as exc:
            raise RotationConflictError(
                f"{key_type.value} rotation already pending for terminal '{terminal_id}': "
                f"{format_exception(exc)}"
            ) from exc
        _logger.info(
            "Stored PENDING key terminal=%s key_type=%s version=%d rotation_id=%s",
            terminal_id,
            key_type.value,
            record.version,
            rotation_id,
        )
        return record

    def activate(self, terminal_id: str, key_type: KeyType | str, version: int) -> KeyRecord:
        key_type = _validate_slot(terminal_id, key_type)
        with self._transaction() as db:
            row = db.execute(
                "SELECT status FROM terminal_keys "
                "WHERE terminal_id = ? AND key_type = ? AND version = ?",
                (terminal_id, key_type.value, int(version)),
            ).fetchone()
            if row is None:
                raise KeyNotFoundError(
                    f"No {key_type.value} key version {version} for terminal '{terminal_id}'."
                )
            if row["status"] != KeyStatus.PENDING.value:
                raise KeyStateError(
                    f"Cannot activate {key_type.value} version {version} for terminal "
                    f"'{terminal_id}': status is {row['status']}, expected PENDING."
                )
            now = self._clock().isoformat()
            # Expire first so the partial unique index on ACTIVE never sees two rows.
            db.execute(
                "UPDATE terminal_keys SET status = 'EXPIRED', "
                "effective_until = MAX(?, effective_from) "
                "WHERE terminal_id = ? AND key_type = ? AND status = 'ACTIVE'",
                (now, terminal_id, key_type.value),
            )
            db.execute(
                "UPDATE terminal_keys SET status = 'ACTIVE', effective_from = ? "
                "WHERE terminal_id = ? AND key_type = ? AND version = ?",
                (now, terminal_id, key_type.value, int(version)),
            )
        _logger.info(
            "Activated key terminal=%s key_type=%s version=%d",
            terminal_id,
            key_type.value,
            version,
        )
        return self.get_by_version(terminal_id, key_type, version)

    def remove_pending(
        self, terminal_id: str, key_type: KeyType | str, version: int | None = None
    ) -> bool:
        key_type = _validate_slot(terminal_id, key_type)
        sql = (
            "DELETE FROM terminal_keys "
            "WHERE terminal_id = ? AND key_type = ? AND status = 'PENDING'"
        )
        params: tuple = (terminal_id, key_type.value)
        if version is not None:
            sql += " AND version = ?"
            params += (int(version),)
        with self._transaction() as db:
            removed = db.execute(sql, params).rowcount
        if removed:
            _logger.info(
                "Removed PENDING key terminal=%s key_type=%s version=%s",
                terminal_id,
                key_type.value,
                version,
            )
        return bool(removed)

    def provision(
        self,
        terminal_id: str,
        key_type: KeyType | str,
        value: bytes,
        bank_context: str,
        *,
        rotation_id: str | None = None,
    ) -> KeyRecord:
        key_type = _validate_slot(terminal_id, key_type)
        value = _validate_value(value)
        if not bank_context:
            raise InvalidInputError("bank_context must not be empty.")
        with self._transaction() as db:
            row = db.execute(
                "SELECT COUNT(*) AS live FROM terminal_keys "
                "WHERE terminal_id = ? AND key_type = ? AND status != 'EXPIRED'",
                (terminal_id, key_type.value),
            ).fetchone()
            if row["live"]:
                raise KeyStateError(
                    f"{key_type.value} key already provisioned for terminal '{terminal_id}'."
                )
            record = KeyRecord(
                terminal_id=terminal_id,
                key_type=key_type,
                bank_context=bank_context,
                value=value,
                status=KeyStatus.ACTIVE,
                version=self._next_version(db, terminal_id, key_type),
                rotation_id=rotation_id,
                effective_from=self._clock(),
            )
            self._insert(db, record)
        _logger.info(
            "Provisioned key terminal=%s key_type=%s version=%d",
            terminal_id,
            key_type.value,
            record.version,
        )
        return record

    def list_terminal_keys(self, terminal_id: str) -> list[KeyRecord]:
        return self._fetch(
            "WHERE terminal_id = ? ORDER BY key_type, version",
            (terminal_id,),
        )
