"""
Composition root: builds one instance of each service and wires them together.
"""

from dataclasses import dataclass
from typing import Optional

from localvault import config
from localvault.corruption import BackupRotation
from localvault.device_fingerprint import DeviceFingerprint
from localvault.entitlement import EntitlementService
from localvault.license_service import LicenseService
from localvault.licensing_api import HttpLicensingAPI, LicensingAPI
from localvault.login_limiter import LoginRateLimiter
from localvault.secure_memory import SecureMemory
from localvault.storage_backend import SQLiteStorageBackend, StorageBackend
from localvault.trial_service import TrialService
from localvault.vault_crypto import VaultCrypto
from localvault.vault_store import VaultStore


@dataclass
class LocalVaultApp:
    backend: StorageBackend
    vault_crypto: VaultCrypto
    vault_store: VaultStore
    fingerprint: DeviceFingerprint
    api: LicensingAPI
    trial_service: TrialService
    license_service: LicenseService
    entitlement: EntitlementService

    def close(self) -> None:
        self.vault_store.lock()
        close_api = getattr(self.api, "close", None)
        if close_api is not None:
            close_api()
        close_backend = getattr(self.backend, "close", None)
        if close_backend is not None:
            close_backend()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def build_app(
        db_path: Optional[str] = None,
        backend: Optional[StorageBackend] = None,
        api: Optional[LicensingAPI] = None,
        fingerprint: Optional[DeviceFingerprint] = None,
        signing_secret: Optional[str] = None,
        secure_mem: Optional[SecureMemory] = None,
        raise_on_unrecoverable: bool = False
) -> LocalVaultApp:
    """
    Build the application from config, with any collaborator overridable.

    The unsigned-record switch is always taken from the build constant.
    """
    if backend is None:
        backend = SQLiteStorageBackend(db_path or config.DB_PATH)
    if signing_secret is None:
        signing_secret = config.LICENSE_SIGNING_SECRET
    allow_unsigned = config.ALLOW_UNSIGNED_RECORDS

    fingerprint = fingerprint or DeviceFingerprint(backend, config.FINGERPRINT_SALT)
    api = api or HttpLicensingAPI(config.LICENSE_SERVER_URL)
    rotation = BackupRotation(backend, keep=3)

    vault_crypto = VaultCrypto(backend, secure_mem=secure_mem or SecureMemory())
    vault_store = VaultStore(
        vault_crypto,
        backend,
        limiter=LoginRateLimiter(backend),
        rotation=rotation,
        raise_on_unrecoverable=raise_on_unrecoverable,
    )
    trial_service = TrialService(
        backend, fingerprint, api=api,
        signing_secret=signing_secret, allow_unsigned=allow_unsigned,
    )
    license_service = LicenseService(
        backend, fingerprint, api, trial_service,
        signing_secret=signing_secret, allow_unsigned=allow_unsigned, rotation=rotation,
    )
    return LocalVaultApp(
        backend=backend,
        vault_crypto=vault_crypto,
        vault_store=vault_store,
        fingerprint=fingerprint,
        api=api,
        trial_service=trial_service,
        license_service=license_service,
        entitlement=EntitlementService(license_service, trial_service),
    )
