"""
LocalVault error taxonomy.

Every failure the core reports is one of the classes below. Each carries an
``ErrorKind`` so callers can branch on ``err.kind`` exhaustively instead of
probing ad hoc attributes.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    VAULT_LOCKED = "vault_locked"
    VAULT_NOT_INITIALIZED = "vault_not_initialized"
    VAULT_ALREADY_EXISTS = "vault_already_exists"
    DECRYPTION = "decryption"
    VALIDATION = "validation"
    LOCKOUT = "lockout"
    SIGNATURE = "signature"
    DEVICE_MISMATCH = "device_mismatch"
    NETWORK = "network"
    CORRUPTION = "corruption"


class LocalVaultError(Exception):
    """Base exception for all LocalVault operations"""
    kind: ErrorKind = ErrorKind.VALIDATION
    recoverable: bool = True


class VaultLockedError(LocalVaultError):
    """Raised when vault content is accessed while no key is held"""
    kind = ErrorKind.VAULT_LOCKED

    def __init__(self, message: str = "Vault is locked. Please unlock vault first."):
        super().__init__(message)


class VaultNotInitializedError(LocalVaultError):
    """Raised when unlocking before a vault has been created"""
    kind = ErrorKind.VAULT_NOT_INITIALIZED


class VaultAlreadyExistsError(LocalVaultError):
    """Raised when initializing over an existing vault"""
    kind = ErrorKind.VAULT_ALREADY_EXISTS


class DecryptionError(LocalVaultError):
    """
    Raised when authenticated decryption fails.

    The message never says whether the key was wrong or the data was damaged.
    """
    kind = ErrorKind.DECRYPTION

    def __init__(self, message: str = "Failed to decrypt data. Invalid password or corrupted data."):
        super().__init__(message)


class ValidationError(LocalVaultError):
    """Raised for malformed input, rejected before any I/O"""
    kind = ErrorKind.VALIDATION


class LockoutError(LocalVaultError):
    """Raised when unlock is attempted during an active lockout"""
    kind = ErrorKind.LOCKOUT

    def __init__(self, remaining_seconds: int):
        self.remaining_seconds = int(remaining_seconds)
        super().__init__(
            f"Too many failed attempts. Try again in {self.remaining_seconds} seconds."
        )


class SignatureError(LocalVaultError):
    """Raised when a signed record fails HMAC verification"""
    kind = ErrorKind.SIGNATURE
    recoverable = False


class DeviceMismatchError(LocalVaultError):
    """Raised when a correctly signed record is bound to another device"""
    kind = ErrorKind.DEVICE_MISMATCH


class NetworkError(LocalVaultError):
    """Raised when the licensing API is unreachable or answers non-2xx"""
    kind = ErrorKind.NETWORK

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class CorruptionError(LocalVaultError):
    """Raised when persisted data cannot be parsed or recovered"""
    kind = ErrorKind.CORRUPTION
