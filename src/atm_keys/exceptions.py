from __future__ import annotations


class KeyManagementError(RuntimeError):
    """Base error."""

    retryable = False


class ConfigurationError(KeyManagementError):
    """Configuration is invalid or incomplete."""


class InvalidInputError(KeyManagementError, ValueError):
    """Malformed caller input (lengths, digits, empty data)."""


class DerivationError(InvalidInputError):
    """Key derivation parameters are invalid."""


class InvalidPinBlockInputError(InvalidInputError):
    """PIN, PAN, or PIN block does not satisfy ISO 9564 constraints."""


class KeyNotFoundError(KeyManagementError):
    """No key record matches the lookup."""


class KeyStateError(KeyManagementError):
    """The requested transition would break key lifecycle invariants."""


class RotationConflictError(KeyManagementError):
    """A rotation is already in flight for the key slot."""


class RotationCancelledError(KeyManagementError):
    """A rotation was cancelled before activation."""


class KeyDeliveryError(KeyManagementError):
    """An encrypted key delivery could not be decrypted."""


class ChecksumMismatchError(KeyDeliveryError):
    """A decrypted key does not match the delivered checksum."""


class SelfTestError(KeyManagementError):
    """A newly delivered key failed its self-test."""


class KeyStoreUnavailableError(KeyManagementError):
    """The key store is locked by another writer or cannot be written."""

    retryable = True


class HsmOperationError(KeyManagementError):
    """The HSM rejected a request."""


class HsmProtocolError(HsmOperationError):
    """The HSM response could not be understood."""


class HsmTransportError(KeyManagementError):
    """The HSM could not be reached or timed out."""

    retryable = True


def format_exception(exc: BaseException) -> str:
    details = str(exc).strip()
    if not details and getattr(exc, "args", None):
        details = ", ".join(str(a) for a in exc.args if a)
    if details:
        return f"{type(exc).__name__}: {details}"
    return type(exc).__name__
