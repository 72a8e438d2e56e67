from __future__ import annotations

import logging
import threading
from typing import Mapping, Protocol, runtime_checkable

_logger = logging.getLogger("atm_keys.terminals")


@runtime_checkable
class TerminalChannel(Protocol):
    """Transport to one connected terminal."""

    @property
    def is_connected(self) -> bool:
        ...

    def send(self, message: Mapping[int, str]) -> None:
        ...


class TerminalRegistry:
    """
    Connected terminals keyed by terminal id.

    Driven by connect/disconnect events from the transport layer. A channel
    that reports itself disconnected is dropped on lookup.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._channels: dict[str, TerminalChannel] = {}
        self._channel_names: dict[str, str] = {}
        self._signed_on: set[str] = set()

    def register(
        self, terminal_id: str, channel: TerminalChannel, *, channel_name: str | None = None
    ) -> None:
        if not terminal_id:
            raise ValueError("terminal_id must not be empty.")
        with self._lock:
            previous = self._channels.get(terminal_id)
            self._channels[terminal_id] = channel
            if channel_name:
                self._channel_names[terminal_id] = channel_name
            else:
                self._channel_names.pop(terminal_id, None)
        if previous is not None and previous is not channel:
            _logger.info("Replaced channel for terminal=%s", terminal_id)
        else:
            _logger.info("Registered channel terminal=%s channel=%s", terminal_id, channel_name)

    def unregister(self, terminal_id: str) -> bool:
        with self._lock:
            removed = self._channels.pop(terminal_id, None) is not None
            self._channel_names.pop(terminal_id, None)
            self._signed_on.discard(terminal_id)
        if removed:
            _logger.info("Unregistered channel terminal=%s", terminal_id)
        return removed

    def unregister_channel(self, channel_name: str) -> list[str]:
        """Drop every terminal registered under `channel_name`; returns their ids."""
        with self._lock:
            terminal_ids = [
                tid for tid, name in self._channel_names.items() if name == channel_name
            ]
            for terminal_id in terminal_ids:
                self._channels.pop(terminal_id, None)
                self._channel_names.pop(terminal_id, None)
                self._signed_on.discard(terminal_id)
        if terminal_ids:
            _logger.info(
                "Unregistered channel=%s terminals=%s", channel_name, ",".join(terminal_ids)
            )
        return terminal_ids

    def sign_on(self, terminal_id: str) -> None:
        with self._lock:
            if terminal_id not in self._channels:
                raise LookupError(f"Terminal '{terminal_id}' is not connected.")
            self._signed_on.add(terminal_id)
        _logger.info("Terminal signed on terminal=%s", terminal_id)

    def sign_off(self, terminal_id: str) -> None:
        with self._lock:
            self._signed_on.discard(terminal_id)
        _logger.info("Terminal signed off terminal=%s", terminal_id)

    def is_signed_on(self, terminal_id: str) -> bool:
        with self._lock:
            return terminal_id in self._signed_on

    def get_channel(self, terminal_id: str) -> TerminalChannel | None:
        with self._lock:
            channel = self._channels.get(terminal_id)
            if channel is None:
                return None
            if channel.is_connected:
                return channel
            self._channels.pop(terminal_id, None)
            self._channel_names.pop(terminal_id, None)
            self._signed_on.discard(terminal_id)
        _logger.info("Dropped disconnected channel terminal=%s", terminal_id)
        return None

    def is_connected(self, terminal_id: str) -> bool:
        return self.get_channel(terminal_id) is not None

    def connected_terminals(self) -> list[str]:
        with self._lock:
            candidates = list(self._channels)
        return sorted(tid for tid in candidates if self.is_connected(tid))

    def clear(self) -> None:
        with self._lock:
            self._channels.clear()
            self._channel_names.clear()
            self._signed_on.clear()
