"""
LocalVault VaultCrypto
Holds the single in-memory vault key and drives the NoVault -> Locked -> Unlocked
state machine.
"""

import base64
import binascii
import threading
import warnings
from typing import List, Optional

from localvault import crypto_engine
from localvault.errors import (
    DecryptionError,
    VaultAlreadyExistsError,
    VaultLockedError,
    VaultNotInitializedError,
)
from localvault.secure_memory import SecretBuffer, SecureMemory, scrub_bytearray
from localvault.storage_backend import StorageBackend

SALT_KEY = "vault_salt_v2"
PASSWORD_HASH_KEY = "vault_password_hash"
CANARY_KEY = "vault_test_v2"
CANARY_PLAINTEXT = "vault_test_data"


class VaultCrypto:
    """
    Owner of the vault encryption key.

    State Machine:
        - NoVault: no salt persisted; only initialize() allowed
        - Locked: salt persisted, no key held
        - Unlocked: key held in a SecretBuffer

    Security:
        - Every key read and write happens under one RLock, so lock()
          cannot tear an in-flight encrypt or decrypt
        - Readers never wait for an unlock: a missing key raises
          VaultLockedError immediately
    """

    def __init__(
            self,
            backend: StorageBackend,
            secure_mem: Optional[SecureMemory] = None,
            iterations: int = crypto_engine.PBKDF2_ITERATIONS
    ):
        self.backend = backend
        self.secure_mem = secure_mem
        self.iterations = iterations
        self._key: Optional[SecretBuffer] = None
        self._tracked: List[object] = []
        self._state_lock = threading.RLock()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def vault_exists(self) -> bool:
        return self.backend.get(SALT_KEY) is not None

    def is_unlocked(self) -> bool:
        with self._state_lock:
            return self._key is not None and not self._key.wiped

    def _load_salt(self) -> bytes:
        stored = self.backend.get(SALT_KEY)
        if stored is None:
            raise VaultNotInitializedError("No vault found. Initialize a vault first.")
        try:
            return base64.b64decode(stored, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError() from e

    def _hold_key(self, key: bytes) -> None:
        old = self._key
        self._key = SecretBuffer(key, self.secure_mem)
        if old is not None:
            old.wipe()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, master_password: str) -> None:
        """
        Create a new vault and leave it unlocked.

        Persists the salt, the verification hash and the encrypted canary.

        Raises:
            VaultAlreadyExistsError: if a salt is already stored
        """
        with self._state_lock:
            if self.vault_exists():
                raise VaultAlreadyExistsError("A vault already exists on this device.")

            salt = crypto_engine.generate_salt()
            key = crypto_engine.derive_key(master_password, salt, self.iterations)
            auth_hash = crypto_engine.hash_for_verification(master_password, salt, self.iterations)
            canary = crypto_engine.encrypt(key, CANARY_PLAINTEXT)

            self.backend.set(PASSWORD_HASH_KEY, base64.b64encode(auth_hash).decode("ascii"))
            self.backend.set(CANARY_KEY, canary)
            # Salt goes last: vault_exists() must not report a half-written vault
            self.backend.set(SALT_KEY, base64.b64encode(salt).decode("ascii"))
            self._hold_key(key)

    def unlock(self, master_password: str) -> bool:
        """
        Verify the master password and hold the derived key.

        Returns:
            True on success. False on a wrong password or a canary mismatch;
            in both cases no key is held afterwards.

        Raises:
            VaultNotInitializedError: if no vault exists
        """
        with self._state_lock:
            salt = self._load_salt()
            stored_hash = self.backend.get(PASSWORD_HASH_KEY)
            if not stored_hash:
                return False

            candidate = crypto_engine.hash_for_verification(master_password, salt, self.iterations)
            if not crypto_engine.constant_time_equal(
                    base64.b64encode(candidate).decode("ascii"), stored_hash):
                return False

            key = crypto_engine.derive_key(master_password, salt, self.iterations)
            canary = self.backend.get(CANARY_KEY)
            if canary is None:
                return False
            try:
                ok = crypto_engine.decrypt(key, canary) == CANARY_PLAINTEXT
            except DecryptionError:
                ok = False
            if not ok:
                warnings.warn(
                    "Vault canary did not verify although the password hash matched",
                    RuntimeWarning,
                )
                return False

            self._hold_key(key)
            return True

    def lock(self) -> None:
        """Drop the key and scrub tracked buffers. Safe to call repeatedly."""
        with self._state_lock:
            if self._key is not None:
                self._key.wipe()
                self._key = None
            for item in self._tracked:
                if isinstance(item, SecretBuffer):
                    item.wipe()
                elif isinstance(item, bytearray):
                    scrub_bytearray(item)
            self._tracked.clear()

    def track_sensitive(self, item) -> None:
        """
        Register a SecretBuffer or bytearray to be scrubbed on lock().
        """
        if not isinstance(item, (SecretBuffer, bytearray)):
            raise TypeError("Only SecretBuffer or bytearray values can be tracked")
        with self._state_lock:
            self._tracked.append(item)

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    def encrypt_data(self, plaintext: str) -> str:
        with self._state_lock:
            if not self.is_unlocked():
                raise VaultLockedError()
            return crypto_engine.encrypt(self._key.value, plaintext)

    def decrypt_data(self, blob: str) -> str:
        with self._state_lock:
            if not self.is_unlocked():
                raise VaultLockedError()
            return crypto_engine.decrypt(self._key.value, blob)
