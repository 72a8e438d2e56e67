"""ATM terminal key management and message authentication."""

from .authentication import AuthenticationOrchestrator, AuthOutcome, VerificationResult
from .config import HsmConfig, KeyManagerConfig
from .derivation import derive_key, derive_operational_key
from .exceptions import (
    ChecksumMismatchError,
    ConfigurationError,
    DerivationError,
    HsmOperationError,
    HsmProtocolError,
    HsmTransportError,
    InvalidInputError,
    InvalidPinBlockInputError,
    KeyDeliveryError,
    KeyManagementError,
    KeyNotFoundError,
    KeyStateError,
    KeyStoreUnavailableError,
    RotationCancelledError,
    RotationConflictError,
    SelfTestError,
)
from .hsm import (
    HsmClient,
    KeyRotationConfirmation,
    KeyRotationRequest,
    KeyRotationResponse,
    PinVerificationRequest,
    PinVerificationResult,
    PvvMethod,
    TranslationMethod,
)
from .key_change import KeyChangeHandler, KeyChangeResult
from .key_delivery import decrypt_key_delivery, encrypt_key_delivery, key_checksum
from .key_store import InMemoryKeyStore, KeyStore, SqliteKeyStore
from .logging_utils import configure_logging
from .mac import MacAlgorithm, MacEngine, MacInputRule
from .models import (
    AuthenticationContext,
    KeyRecord,
    KeyStatus,
    KeyType,
    RotationState,
    RotationStatus,
    RotationStep,
)
from .pin_block import PinBlockCodec, PinEncryptionAlgorithm, PinFormat
from .pin_verification import PinVerifier
from .rotation import KeyDelivery, RotationCoordinator
from .security_control import SecurityControl, SecurityOperation, build_rotation_notice
from .terminals import TerminalChannel, TerminalRegistry

__all__ = [
    "AuthOutcome",
    "AuthenticationContext",
    "AuthenticationOrchestrator",
    "ChecksumMismatchError",
    "ConfigurationError",
    "DerivationError",
    "HsmClient",
    "HsmConfig",
    "HsmOperationError",
    "HsmProtocolError",
    "HsmTransportError",
    "InMemoryKeyStore",
    "InvalidInputError",
    "InvalidPinBlockInputError",
    "KeyChangeHandler",
    "KeyChangeResult",
    "KeyDelivery",
    "KeyDeliveryError",
    "KeyManagementError",
    "KeyManagerConfig",
    "KeyNotFoundError",
    "KeyRecord",
    "KeyRotationConfirmation",
    "KeyRotationRequest",
    "KeyRotationResponse",
    "KeyStateError",
    "KeyStatus",
    "KeyStore",
    "KeyStoreUnavailableError",
    "KeyType",
    "MacAlgorithm",
    "MacEngine",
    "MacInputRule",
    "PinBlockCodec",
    "PinEncryptionAlgorithm",
    "PinFormat",
    "PinVerificationRequest",
    "PinVerificationResult",
    "PinVerifier",
    "PvvMethod",
    "RotationCancelledError",
    "RotationConflictError",
    "RotationCoordinator",
    "RotationState",
    "RotationStatus",
    "RotationStep",
    "SecurityControl",
    "SecurityOperation",
    "SelfTestError",
    "SqliteKeyStore",
    "TerminalChannel",
    "TerminalRegistry",
    "TranslationMethod",
    "VerificationResult",
    "build_rotation_notice",
    "configure_logging",
    "decrypt_key_delivery",
    "derive_key",
    "derive_operational_key",
    "encrypt_key_delivery",
    "key_checksum",
]
