"""
Offline validation of signed license and trial records.

Records are HMAC-signed by the licensing server over their canonical JSON.
A record is valid on this machine only if the signature verifies AND its
``device_id`` equals the local fingerprint. A correctly signed record for a
different device is reported as needing a transfer, not as tampered.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

from localvault import crypto_engine
from localvault.errors import DeviceMismatchError, SignatureError, ValidationError
from localvault.models import parse_timestamp

TRIAL_DURATION = timedelta(days=7)

LICENSE_KEY_PATTERN = re.compile(r"^[A-Z0-9_]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4,5}$")
TRIAL_KEY_PATTERN = re.compile(r"^TRIA-[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}$")
LICENSE_KEY_PREFIXES = ("PERS", "FAMI", "LLV_", "TRIA")

INVALID_FORMAT_MESSAGE = (
    "Invalid license key format. Please check that your key follows the format: "
    "XXXX-XXXX-XXXX-XXXX (no spaces or special characters)."
)
INVALID_KEY_MESSAGE = (
    "This license key is not valid. Please check that you entered it correctly "
    "(format: XXXX-XXXX-XXXX-XXXX)."
)
INVALID_TRIAL_KEY_MESSAGE = "Invalid trial key format. Expected TRIA-XXXX-XXXX-XXXX-XXXX."

_MS_PER_SECOND = 1000
_MS_PER_MINUTE = 60 * _MS_PER_SECOND
_MS_PER_HOUR = 60 * _MS_PER_MINUTE
_MS_PER_DAY = 24 * _MS_PER_HOUR


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

def clean_key(key: Any) -> str:
    if not isinstance(key, str):
        return ""
    return re.sub(r"\s+", "", key).upper()


def is_trial_key(key: Any) -> bool:
    return clean_key(key).startswith("TRIA-") and len(clean_key(key).split("-")) == 5


def validate_license_key(key: Any) -> str:
    """
    Check a license key's format before any network call.

    Returns:
        the cleaned (uppercased, whitespace-free) key

    Raises:
        ValidationError: on a malformed key or an unknown product prefix
    """
    cleaned = clean_key(key)
    if len(cleaned) < 16 or not LICENSE_KEY_PATTERN.match(cleaned):
        raise ValidationError(INVALID_FORMAT_MESSAGE)
    if not cleaned.startswith(LICENSE_KEY_PREFIXES):
        raise ValidationError(INVALID_KEY_MESSAGE)
    return cleaned


def validate_trial_key(key: Any) -> str:
    cleaned = clean_key(key)
    if not TRIAL_KEY_PATTERN.match(cleaned):
        raise ValidationError(INVALID_TRIAL_KEY_MESSAGE)
    return cleaned


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class LicenseRecord:
    license_key: str
    device_id: str
    plan_type: str
    max_devices: int = 1
    activated_at: Optional[str] = None
    transfer_count: int = 0
    last_transfer_at: Optional[str] = None
    signature: str = ""
    signed_at: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LicenseRecord":
        max_devices = data.get("max_devices")
        transfer_count = data.get("transfer_count")
        return cls(
            license_key=str(data.get("license_key") or ""),
            device_id=str(data.get("device_id") or ""),
            plan_type=str(data.get("plan_type") or "personal"),
            max_devices=max_devices if isinstance(max_devices, int) and max_devices > 0 else 1,
            activated_at=data.get("activated_at"),
            transfer_count=transfer_count if isinstance(transfer_count, int) else 0,
            last_transfer_at=data.get("last_transfer_at"),
            signature=str(data.get("signature") or ""),
            signed_at=data.get("signed_at"),
            raw=dict(data),
        )

    def to_dict(self) -> Dict[str, Any]:
        """The stored form. Unknown server fields are kept so the signature still verifies."""
        return dict(self.raw)


@dataclass
class TrialRecord:
    trial_key: str
    device_id: str
    start_date: str
    expires_at: Optional[str] = None
    plan_type: str = "trial"
    signature: str = ""
    signed_at: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TrialRecord":
        return cls(
            trial_key=str(data.get("trial_key") or data.get("license_key") or ""),
            device_id=str(data.get("device_id") or ""),
            start_date=str(data.get("start_date") or ""),
            expires_at=data.get("expires_at"),
            plan_type=str(data.get("plan_type") or "trial"),
            signature=str(data.get("signature") or ""),
            signed_at=data.get("signed_at"),
            raw=dict(data),
        )

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.raw)


@dataclass(frozen=True)
class RecordVerification:
    valid: bool
    requires_transfer: bool = False
    reason: Optional[str] = None


def verify_record(
        record: Mapping[str, Any],
        device_id: str,
        secret: str,
        allow_unsigned: bool = False
) -> RecordVerification:
    """
    Check signature first, then device binding.

    Returns:
        RecordVerification; ``requires_transfer`` is set only when the
        signature is good but the record belongs to another device
    """
    if not isinstance(record, Mapping):
        return RecordVerification(False, False, "Record is not an object")
    if not crypto_engine.verify_signature(record, secret, allow_unsigned=allow_unsigned):
        return RecordVerification(False, False, "Signature verification failed")
    if not crypto_engine.constant_time_equal(str(record.get("device_id") or ""), device_id):
        return RecordVerification(False, True, "Record is bound to another device")
    return RecordVerification(True, False, None)


def ensure_valid_record(
        record: Mapping[str, Any],
        device_id: str,
        secret: str,
        allow_unsigned: bool = False
) -> None:
    """
    Raising form of :func:`verify_record`.

    Raises:
        SignatureError: tampered or unsigned record
        DeviceMismatchError: signed for another device
    """
    result = verify_record(record, device_id, secret, allow_unsigned)
    if result.valid:
        return
    if result.requires_transfer:
        raise DeviceMismatchError(result.reason)
    raise SignatureError(result.reason)


# ---------------------------------------------------------------------------
# Trial window
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TrialWindow:
    start: datetime
    expires_at: datetime
    remaining_ms: int
    days_remaining: int
    hours_remaining: int
    minutes_remaining: int
    seconds_remaining: int
    is_expired: bool


def _parse_strict(value: Any) -> Optional[datetime]:
    sentinel = datetime.min.replace(tzinfo=timezone.utc)
    parsed = parse_timestamp(value, sentinel)
    return None if parsed is sentinel else parsed


def compute_trial_window(record: TrialRecord, now: Optional[datetime] = None) -> TrialWindow:
    """
    Remaining trial time from the signed ``start_date``/``expires_at`` only.

    A record without ``expires_at`` gets the standard 7-day window.

    Raises:
        ValidationError: if ``start_date`` cannot be parsed
    """
    start = _parse_strict(record.start_date)
    if start is None:
        raise ValidationError("Trial record has no valid start_date")
    expires = _parse_strict(record.expires_at) if record.expires_at else None
    if expires is None:
        expires = start + TRIAL_DURATION

    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)

    remaining_ms = max(0, int((expires - current).total_seconds() * 1000))
    return TrialWindow(
        start=start,
        expires_at=expires,
        remaining_ms=remaining_ms,
        days_remaining=remaining_ms // _MS_PER_DAY,
        hours_remaining=(remaining_ms % _MS_PER_DAY) // _MS_PER_HOUR,
        minutes_remaining=(remaining_ms % _MS_PER_HOUR) // _MS_PER_MINUTE,
        seconds_remaining=(remaining_ms % _MS_PER_MINUTE) // _MS_PER_SECOND,
        is_expired=current >= expires,
    )
