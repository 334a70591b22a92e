"""
Trial state for one installation.

Trial status is derived only from the signed trial record's window and the
wall clock. There is no locally adjustable "last checked" time and no counter
that clearing a single flag could reset.
"""

import json
import threading
import warnings
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Mapping, Optional

from localvault.config import ALLOW_UNSIGNED_RECORDS, LICENSE_SIGNING_SECRET
from localvault.device_fingerprint import DeviceFingerprint
from localvault.errors import LocalVaultError, NetworkError, ValidationError
from localvault.license_validator import (
    TrialRecord,
    compute_trial_window,
    ensure_valid_record,
    validate_trial_key,
    verify_record,
)
from localvault.licensing_api import ActivationResult, LicensingAPI
from localvault.storage_backend import StorageBackend

TRIAL_FILE_KEY = "lpv_trial_file"
TRIAL_USED_KEY = "trial_used"


@dataclass(frozen=True)
class TrialInfo:
    is_trial_active: bool = False
    is_expired: bool = False
    has_trial_been_used: bool = False
    days_remaining: int = 0
    hours_remaining: int = 0
    minutes_remaining: int = 0
    seconds_remaining: int = 0
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    time_remaining: str = "No trial activated"
    trial_key: Optional[str] = None
    requires_transfer: bool = False


def format_time_remaining(days: int, hours: int, minutes: int, seconds: int) -> str:
    if days > 0:
        return f"{days}d {hours}h {minutes}m {seconds}s"
    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TrialService:
    """
    Trial lifecycle: NoEntitlement -> TrialActive -> TrialExpired.

    Expiration callbacks fire once per expiry, either when the trial is first
    seen expired by check_and_handle_expiration() or when end_trial() runs.
    """

    def __init__(
            self,
            backend: StorageBackend,
            fingerprint: DeviceFingerprint,
            api: Optional[LicensingAPI] = None,
            signing_secret: str = LICENSE_SIGNING_SECRET,
            # Overridden only by tests; build_app always passes the build constant
            allow_unsigned: bool = ALLOW_UNSIGNED_RECORDS,
            clock: Callable[[], datetime] = _utcnow
    ):
        self.backend = backend
        self.fingerprint = fingerprint
        self.api = api
        self.signing_secret = signing_secret
        self.allow_unsigned = allow_unsigned
        self.clock = clock
        self._callbacks: List[Callable[[], None]] = []
        self._expiration_confirmed = False
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def _load_raw(self) -> Optional[dict]:
        stored = self.backend.get(TRIAL_FILE_KEY)
        if not stored:
            return None
        try:
            parsed = json.loads(stored)
        except json.JSONDecodeError:
            warnings.warn("Stored trial record is not valid JSON", RuntimeWarning)
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def has_trial_been_used(self) -> bool:
        return self.backend.get(TRIAL_USED_KEY) == "true" or self.backend.get(TRIAL_FILE_KEY) is not None

    def store_trial(self, record: Mapping) -> TrialRecord:
        """
        Verify and persist a signed trial record.

        Raises:
            SignatureError: bad signature
            DeviceMismatchError: record issued for another device
        """
        ensure_valid_record(record, self.fingerprint.get(), self.signing_secret, self.allow_unsigned)
        trial = TrialRecord.from_dict(record)
        compute_trial_window(trial)  # rejects records without a usable start_date
        self.backend.set(TRIAL_FILE_KEY, json.dumps(dict(record)))
        self.backend.set(TRIAL_USED_KEY, "true")
        with self._lock:
            self._expiration_confirmed = False
        return trial

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_trial_info(self, now: Optional[datetime] = None) -> TrialInfo:
        raw = self._load_raw()
        if raw is None:
            if self.backend.get(TRIAL_USED_KEY) == "true":
                return TrialInfo(has_trial_been_used=True, time_remaining="Trial ended")
            return TrialInfo()

        trial = TrialRecord.from_dict(raw)
        check = verify_record(raw, self.fingerprint.get(), self.signing_secret, self.allow_unsigned)
        if not check.valid:
            message = ("Trial invalidated - device changed" if check.requires_transfer
                       else "Trial invalidated - record failed verification")
            return TrialInfo(
                is_expired=True,
                has_trial_been_used=True,
                time_remaining=message,
                trial_key=trial.trial_key or None,
                requires_transfer=check.requires_transfer,
            )

        try:
            window = compute_trial_window(trial, now or self.clock())
        except ValidationError:
            return TrialInfo(
                is_expired=True,
                has_trial_been_used=True,
                time_remaining="Trial invalidated - record failed verification",
                trial_key=trial.trial_key or None,
            )

        if window.is_expired:
            remaining = "Trial expired"
        else:
            remaining = format_time_remaining(
                window.days_remaining, window.hours_remaining,
                window.minutes_remaining, window.seconds_remaining,
            )
        return TrialInfo(
            is_trial_active=not window.is_expired,
            is_expired=window.is_expired,
            has_trial_been_used=True,
            days_remaining=window.days_remaining,
            hours_remaining=window.hours_remaining,
            minutes_remaining=window.minutes_remaining,
            seconds_remaining=window.seconds_remaining,
            start_date=window.start,
            end_date=window.expires_at,
            time_remaining=remaining,
            trial_key=trial.trial_key or None,
        )

    def can_start_trial(self) -> bool:
        return not self.has_trial_been_used()

    def is_trial_expired(self, now: Optional[datetime] = None) -> bool:
        info = self.get_trial_info(now)
        return info.has_trial_been_used and info.is_expired

    def is_trial_active(self, now: Optional[datetime] = None) -> bool:
        info = self.get_trial_info(now)
        return info.has_trial_been_used and info.is_trial_active

    def get_time_remaining(self, now: Optional[datetime] = None) -> str:
        return self.get_trial_info(now).time_remaining

    def get_trial_progress(self, now: Optional[datetime] = None) -> int:
        """Percentage of the trial window elapsed, 0-100."""
        current = now or self.clock()
        info = self.get_trial_info(current)
        if not info.has_trial_been_used or not info.start_date or not info.end_date:
            return 0
        if info.is_expired:
            return 100
        total = (info.end_date - info.start_date).total_seconds()
        if total <= 0:
            return 100
        elapsed = (current - info.start_date).total_seconds()
        return int(round(min(100.0, max(0.0, elapsed / total * 100))))

    # ------------------------------------------------------------------
    # Activation / lifecycle
    # ------------------------------------------------------------------

    def activate_trial(self, trial_key: str) -> ActivationResult:
        """
        Activate a ``TRIA-`` key through the licensing server.

        The key format is checked before any network call. A device that has
        already used a trial is refused without contacting the server.
        """
        try:
            cleaned = validate_trial_key(trial_key)
        except ValidationError as e:
            return ActivationResult(False, error=str(e))

        if not self.can_start_trial():
            return ActivationResult(False, error="A trial has already been used on this device.")
        if self.api is None:
            return ActivationResult(False, error="Trial activation is not available offline.")
        try:
            response = self.api.activate_trial(cleaned, self.fingerprint.get())
        except NetworkError as e:
            return ActivationResult(False, error=str(e), status="network_error")

        if response.status != "activated" or not response.signed_record:
            return ActivationResult(
                False,
                error=response.error or "Trial activation failed. Please check your trial key.",
                status=response.status,
            )
        try:
            self.store_trial(response.signed_record)
        except LocalVaultError as e:
            return ActivationResult(False, error=f"Trial verification failed: {e}", status="invalid")
        return ActivationResult(True, status="activated", plan_type="trial")

    def end_trial(self) -> None:
        """Drop the trial record but remember that a trial was used."""
        self.backend.set(TRIAL_USED_KEY, "true")
        self.backend.delete(TRIAL_FILE_KEY)
        self._trigger_callbacks()

    def reset_trial(self) -> None:
        self.backend.delete(TRIAL_FILE_KEY)
        self.backend.delete(TRIAL_USED_KEY)
        with self._lock:
            self._expiration_confirmed = False

    def add_expiration_callback(self, callback: Callable[[], None]) -> None:
        self._callbacks.append(callback)

    def remove_expiration_callback(self, callback: Callable[[], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _trigger_callbacks(self) -> None:
        for callback in list(self._callbacks):
            try:
                callback()
            except Exception as e:
                warnings.warn(f"Error in trial expiration callback: {e}", RuntimeWarning)

    def check_and_handle_expiration(self, now: Optional[datetime] = None) -> bool:
        """
        Returns:
            True if the trial is expired. Callbacks fire on the first such call.
        """
        info = self.get_trial_info(now)
        with self._lock:
            if not info.has_trial_been_used or not info.is_expired:
                self._expiration_confirmed = False
                return False
            first = not self._expiration_confirmed
            self._expiration_confirmed = True
        if first:
            self._trigger_callbacks()
        return True
