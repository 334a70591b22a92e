"""
Pytest configuration and shared fixtures
Adds the project root to sys.path and provides in-memory backends and
fast-KDF vault objects.
"""
import sys
import os

import pytest

# Add project root to Python path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, project_root)

from localvault.corruption import BackupRotation  # noqa: E402
from localvault.device_fingerprint import StaticDeviceFingerprint  # noqa: E402
from localvault.login_limiter import LoginRateLimiter  # noqa: E402
from localvault.storage_backend import MemoryStorageBackend  # noqa: E402
from localvault.vault_crypto import VaultCrypto  # noqa: E402
from localvault.vault_store import VaultStore  # noqa: E402

# Low iteration count keeps the suite fast; the 100k default has its own test
FAST_ITERATIONS = 1000
DEVICE_ID = "a" * 64
OTHER_DEVICE_ID = "b" * 64
SIGNING_SECRET = "test-signing-secret"


class FakeClock:
    """Settable Unix-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def backend():
    return MemoryStorageBackend()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def vault_crypto(backend):
    return VaultCrypto(backend, iterations=FAST_ITERATIONS)


@pytest.fixture
def store(backend, vault_crypto, clock):
    return VaultStore(
        vault_crypto,
        backend,
        limiter=LoginRateLimiter(backend, clock=clock),
        rotation=BackupRotation(backend, keep=3, clock=clock),
    )


@pytest.fixture
def unlocked_store(store):
    store.initialize("Tr0ub4dor&3")
    return store


@pytest.fixture
def fingerprint():
    return StaticDeviceFingerprint(DEVICE_ID)
