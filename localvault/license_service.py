"""
License activation, transfer and offline validation.

After the first successful activation every status check is computed from
the locally stored signed record. Only activate() and transfer() contact the
licensing server, and a failed call never marks a license as valid.
"""

import json
import warnings
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from localvault.config import ALLOW_UNSIGNED_RECORDS, LICENSE_SIGNING_SECRET
from localvault.corruption import BackupRotation, check_license_file_corruption, recover_license_file
from localvault.device_fingerprint import DeviceFingerprint
from localvault.errors import NetworkError, ValidationError
from localvault.license_validator import (
    INVALID_KEY_MESSAGE,
    LicenseRecord,
    RecordVerification,
    validate_license_key,
    verify_record,
)
from localvault.licensing_api import ActivationResponse, ActivationResult, LicensingAPI
from localvault.storage_backend import StorageBackend
from localvault.trial_service import TrialService

LICENSE_FILE_KEY = "lpv_license_file"

PLAN_DISPLAY_NAMES = {
    "personal": "Personal Vault",
    "family": "Family Plan",
    "trial": "7-Day Trial License",
}

MSG_DEVICE_MISMATCH = (
    "This license is already active on another device. "
    "You'll need to transfer it to this device to continue."
)
MSG_REVOKED = "This license has been revoked."
MSG_TRANSFER_LIMIT = (
    "Your license has reached its automatic transfer limit. "
    "Please contact support to move it to your new computer."
)
MSG_VERIFY_FAILED = (
    "License verification failed. The license file appears to be corrupted or invalid. "
    "Please try activating again."
)
MSG_ACTIVATION_FAILED = "License activation failed. Please try again."
MSG_TRANSFER_FAILED = "License transfer failed. Please try again."
MSG_NETWORK = (
    "Unable to connect to license server. Please check your internet connection and try again. "
    "The app requires internet access for initial activation only."
)


@dataclass(frozen=True)
class LicenseInfo:
    is_valid: bool = False
    plan_type: Optional[str] = None
    key: Optional[str] = None
    activated_at: Optional[str] = None
    requires_transfer: bool = False


@dataclass(frozen=True)
class DeviceMismatch:
    has_mismatch: bool
    license_key: Optional[str] = None


def mask_key(key: Optional[str]) -> str:
    """Keep only the first segment of a key for diagnostics."""
    if not key:
        return ""
    return key[:5] + "..."


class LicenseService:

    def __init__(
            self,
            backend: StorageBackend,
            fingerprint: DeviceFingerprint,
            api: LicensingAPI,
            trial_service: TrialService,
            signing_secret: str = LICENSE_SIGNING_SECRET,
            # Overridden only by tests; build_app always passes the build constant
            allow_unsigned: bool = ALLOW_UNSIGNED_RECORDS,
            rotation: Optional[BackupRotation] = None
    ):
        self.backend = backend
        self.fingerprint = fingerprint
        self.api = api
        self.trial_service = trial_service
        self.signing_secret = signing_secret
        self.allow_unsigned = allow_unsigned
        self.rotation = rotation or BackupRotation(backend)

    # ------------------------------------------------------------------
    # Local record
    # ------------------------------------------------------------------

    def get_local_license_file(self) -> Optional[Dict[str, Any]]:
        """
        Load the stored license record, repairing minor damage.

        Returns:
            the record dict, or None if absent or beyond recovery
        """
        stored = self.backend.get(LICENSE_FILE_KEY)
        if not stored:
            return None

        check = check_license_file_corruption(stored)
        if not check.is_corrupted:
            return json.loads(stored)

        if check.recoverable:
            recovery = recover_license_file(stored)
            if recovery.success and recovery.data is not None:
                warnings.warn(
                    f"License file recovered: {'; '.join(check.errors)}", RuntimeWarning
                )
                return recovery.data
        warnings.warn(
            f"License file is corrupted and cannot be recovered: {'; '.join(check.errors)}",
            RuntimeWarning,
        )
        return None

    def _save_license_file(self, record: Dict[str, Any]) -> None:
        self.backend.set(LICENSE_FILE_KEY, json.dumps(record))

    def validate_local_license(self) -> RecordVerification:
        """Offline check of the stored record: signature, then device binding."""
        record = self.get_local_license_file()
        if record is None:
            return RecordVerification(False, False, "No license file")
        return verify_record(record, self.fingerprint.get(), self.signing_secret, self.allow_unsigned)

    def get_license_info(self) -> LicenseInfo:
        record = self.get_local_license_file()
        if record is None:
            return LicenseInfo()
        check = verify_record(record, self.fingerprint.get(), self.signing_secret, self.allow_unsigned)
        if not check.valid and not check.requires_transfer:
            return LicenseInfo()
        license_record = LicenseRecord.from_dict(record)
        return LicenseInfo(
            is_valid=check.valid,
            plan_type=license_record.plan_type,
            key=license_record.license_key,
            activated_at=license_record.activated_at,
            requires_transfer=check.requires_transfer,
        )

    def check_device_mismatch(self) -> DeviceMismatch:
        record = self.get_local_license_file()
        if record is None:
            return DeviceMismatch(False)
        if record.get("device_id") != self.fingerprint.get():
            return DeviceMismatch(True, record.get("license_key"))
        return DeviceMismatch(False)

    def remove_license(self) -> None:
        self.backend.delete(LICENSE_FILE_KEY)

    def get_max_devices(self) -> int:
        record = self.get_local_license_file()
        if record is None:
            return 1
        return LicenseRecord.from_dict(record).max_devices

    def is_family_plan(self) -> bool:
        record = self.get_local_license_file()
        return bool(record) and record.get("plan_type") == "family"

    def get_local_device_info(self) -> Optional[Dict[str, Any]]:
        record = self.get_local_license_file()
        if record is None:
            return None
        lic = LicenseRecord.from_dict(record)
        return {
            "device_id": lic.device_id,
            "license_key": lic.license_key,
            "plan_type": lic.plan_type,
            "activated_at": lic.activated_at,
            "max_devices": lic.max_devices,
            "transfer_count": lic.transfer_count,
        }

    @staticmethod
    def license_display_name(plan_type: Optional[str]) -> str:
        return PLAN_DISPLAY_NAMES.get(plan_type or "", (plan_type or "Unknown").title())

    # ------------------------------------------------------------------
    # Network operations
    # ------------------------------------------------------------------

    def _unsigned_record(self, key: str, device_id: str, plan_type: str) -> Dict[str, Any]:
        now = datetime.now(timezone.utc).isoformat()
        return {
            "license_key": key,
            "device_id": device_id,
            "plan_type": plan_type,
            "max_devices": 1,
            "activated_at": now,
            "signature": "",
            "signed_at": now,
        }

    def _accept_record(
            self,
            response: ActivationResponse,
            key: str,
            device_id: str,
            plan_type: str
    ) -> Optional[Dict[str, Any]]:
        record = response.signed_record
        if record is None:
            if not self.allow_unsigned:
                return None
            record = self._unsigned_record(key, device_id, plan_type)
        check = verify_record(record, device_id, self.signing_secret, self.allow_unsigned)
        return dict(record) if check.valid else None

    def activate(self, license_key: str) -> ActivationResult:
        """
        Activate a license key on this device.

        Format is validated before any I/O. On ``device_mismatch`` nothing is
        stored and ``requires_transfer`` is set.
        """
        try:
            cleaned = validate_license_key(license_key)
        except ValidationError as e:
            return ActivationResult(False, error=str(e))

        device_id = self.fingerprint.get()
        try:
            response = self.api.activate(cleaned, device_id)
        except NetworkError as e:
            warnings.warn(f"License activation failed for {mask_key(cleaned)}: {e}", RuntimeWarning)
            return ActivationResult(False, error=MSG_NETWORK if e.status_code is None else str(e),
                                    status="network_error")

        status = response.status
        if status == "device_mismatch":
            return ActivationResult(False, error=MSG_DEVICE_MISMATCH, requires_transfer=True,
                                    status=status)
        if status == "invalid":
            return ActivationResult(False, error=response.error or INVALID_KEY_MESSAGE, status=status)
        if status == "revoked":
            return ActivationResult(False, error=MSG_REVOKED, status=status)
        if status == "transfer_limit_reached":
            return ActivationResult(False, error=MSG_TRANSFER_LIMIT, status=status,
                                    transfer_count=response.transfer_count)
        if status != "activated":
            return ActivationResult(False, error=response.error or MSG_ACTIVATION_FAILED, status=status)

        plan_type = response.plan_type or "personal"
        record = self._accept_record(response, cleaned, device_id, plan_type)
        if record is None:
            return ActivationResult(False, error=MSG_VERIFY_FAILED, status="invalid")

        self._save_license_file(record)
        if plan_type != "trial":
            self.trial_service.end_trial()
        return ActivationResult(True, status="activated",
                                plan_type=record.get("plan_type") or plan_type)

    def transfer(self, license_key: str) -> ActivationResult:
        """
        Move the license to this device.

        The yearly transfer cap is enforced by the server; a
        ``transfer_limit_reached`` answer is only reported back.
        """
        try:
            cleaned = validate_license_key(license_key)
        except ValidationError as e:
            return ActivationResult(False, error=str(e))

        device_id = self.fingerprint.get()
        try:
            response = self.api.transfer(cleaned, device_id)
        except NetworkError as e:
            warnings.warn(f"License transfer failed for {mask_key(cleaned)}: {e}", RuntimeWarning)
            return ActivationResult(False, error=MSG_NETWORK if e.status_code is None else str(e),
                                    status="network_error")

        if response.status == "transfer_limit_reached":
            return ActivationResult(False, error=MSG_TRANSFER_LIMIT, status=response.status,
                                    transfer_count=response.transfer_count)
        if response.status != "transferred":
            return ActivationResult(False, error=response.error or MSG_TRANSFER_FAILED,
                                    status=response.status)

        previous = self.get_local_license_file()
        plan_type = response.plan_type or (previous or {}).get("plan_type") or "personal"
        record = self._accept_record(response, cleaned, device_id, plan_type)
        if record is None:
            return ActivationResult(False, error=MSG_VERIFY_FAILED, status="invalid")

        current = self.backend.get(LICENSE_FILE_KEY)
        if current is not None:
            self.rotation.create_backup(LICENSE_FILE_KEY, current)
        self._save_license_file(record)
        self.trial_service.end_trial()
        return ActivationResult(True, status="transferred", plan_type=record.get("plan_type"),
                                transfer_count=response.transfer_count)
