"""
Corruption detection and recovery for persisted license files and vault
entry arrays, plus timestamped keep-N backup rotation for any stored key.
"""

import json
import threading
import time
import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Generic, List, Optional, TypeVar

from localvault.storage_backend import StorageBackend

T = TypeVar("T")

LICENSE_REQUIRED_FIELDS = ("license_key", "device_id", "plan_type", "signature")


class Severity(str, Enum):
    NONE = "none"
    MINOR = "minor"
    MAJOR = "major"
    CRITICAL = "critical"


@dataclass
class CorruptionCheckResult:
    is_corrupted: bool
    severity: Severity
    errors: List[str] = field(default_factory=list)
    recoverable: bool = True
    recovered_data: Any = None


@dataclass
class RecoveryResult:
    success: bool
    recovered: bool
    message: str
    data: Any = None


@dataclass
class RepairResult(Generic[T]):
    valid: List[T]
    invalid: int
    repaired: bool


def _critical(message: str) -> CorruptionCheckResult:
    return CorruptionCheckResult(True, Severity.CRITICAL, [message], recoverable=False)


def _parse_json(raw: Optional[str]) -> Any:
    return json.loads(raw)


# ---------------------------------------------------------------------------
# License files
# ---------------------------------------------------------------------------

def check_license_file_corruption(raw: Optional[str]) -> CorruptionCheckResult:
    """
    Inspect a stored license file.

    Severity grows with the number of problems: up to 2 is minor, up to 4
    major, more is critical.
    """
    if not raw:
        return _critical("License file is missing")
    try:
        parsed = _parse_json(raw)
    except (json.JSONDecodeError, TypeError):
        return _critical("License file is not valid JSON")
    if not isinstance(parsed, dict):
        return _critical("License file has invalid structure")

    errors = [f"Missing required field: {name}" for name in LICENSE_REQUIRED_FIELDS
              if name not in parsed]
    for name in ("license_key", "device_id", "signature"):
        if not isinstance(parsed.get(name), str):
            errors.append(f"{name} must be a string")

    if not errors:
        severity = Severity.NONE
    elif len(errors) <= 2:
        severity = Severity.MINOR
    elif len(errors) <= 4:
        severity = Severity.MAJOR
    else:
        severity = Severity.CRITICAL

    recoverable = severity != Severity.CRITICAL and len(errors) < len(LICENSE_REQUIRED_FIELDS)
    return CorruptionCheckResult(bool(errors), severity, errors, recoverable)


def recover_license_file(raw: Optional[str]) -> RecoveryResult:
    """
    Try to salvage a damaged license file.

    A missing ``license_key`` is never reconstructed.
    """
    if not raw:
        return RecoveryResult(False, False, "License file is missing. Please reactivate your license.")
    try:
        parsed = _parse_json(raw)
    except (json.JSONDecodeError, TypeError):
        parsed = None
    if not isinstance(parsed, dict) or not parsed:
        return RecoveryResult(
            False, False,
            "License file is corrupted and cannot be recovered. Please reactivate your license.",
        )

    if not isinstance(parsed.get("license_key"), str) or not parsed["license_key"]:
        return RecoveryResult(False, False, "License key is missing. Please reactivate your license.")

    check = check_license_file_corruption(raw)
    if not check.is_corrupted:
        return RecoveryResult(True, False, "License file is valid.", parsed)
    if check.severity == Severity.CRITICAL or not check.recoverable:
        return RecoveryResult(
            False, False,
            "License file is too corrupted to recover. Please reactivate your license.",
        )
    return RecoveryResult(
        True, True,
        "License file recovered with minor issues. Please verify your license is working correctly.",
        dict(parsed),
    )


# ---------------------------------------------------------------------------
# Vault entry arrays
# ---------------------------------------------------------------------------

def is_structurally_valid_entry(item: Any) -> bool:
    return (
        isinstance(item, dict)
        and isinstance(item.get("id"), str)
        and isinstance(item.get("accountName"), str)
    )


def check_entries_corruption(entries: Any) -> CorruptionCheckResult:
    """Same as :func:`check_vault_data_corruption` for an already parsed value."""
    if not isinstance(entries, list):
        return CorruptionCheckResult(
            True, Severity.MAJOR, ["Vault data is not in expected format"], recoverable=True
        )

    valid = [e for e in entries if is_structurally_valid_entry(e)]
    invalid = len(entries) - len(valid)
    if invalid == 0:
        return CorruptionCheckResult(False, Severity.NONE, [], True, valid)

    if invalid == len(entries):
        severity = Severity.CRITICAL
    elif invalid > len(entries) / 2:
        severity = Severity.MAJOR
    else:
        severity = Severity.MINOR
    recoverable = severity != Severity.CRITICAL
    return CorruptionCheckResult(
        True, severity, [f"{invalid} invalid entries found"], recoverable,
        valid if recoverable else None,
    )


def check_vault_data_corruption(raw: Optional[str]) -> CorruptionCheckResult:
    """Inspect a decrypted vault entries JSON string."""
    if not raw:
        return _critical("Vault data is missing")
    try:
        parsed = _parse_json(raw)
    except (json.JSONDecodeError, TypeError):
        return _critical("Vault data is not valid JSON")
    return check_entries_corruption(parsed)


def recover_vault_data(raw: Optional[str]) -> RecoveryResult:
    """
    Keep only entries with a string ``id`` and ``accountName``.

    ``data`` is the recovered JSON string when ``recovered`` is True.
    """
    if not raw:
        return RecoveryResult(False, False, "Vault data is missing. Please restore from backup.")

    check = check_vault_data_corruption(raw)
    if not check.is_corrupted:
        return RecoveryResult(True, False, "Vault data is valid.")
    if check.severity == Severity.CRITICAL or not check.recoverable:
        return RecoveryResult(
            False, False, "Vault data is too corrupted to recover. Please restore from backup."
        )
    if check.recovered_data is None:
        return RecoveryResult(False, False, "Unable to recover vault data. Please restore from backup.")

    return RecoveryResult(
        True, True,
        f"Recovered {len(check.recovered_data)} valid entries. {', '.join(check.errors)}",
        json.dumps(check.recovered_data),
    )


def validate_and_repair(
        data: Any,
        validator: Callable[[Any], bool],
        fallback: List[T]
) -> RepairResult:
    """
    Filter ``data`` through ``validator``.

    A non-list input is replaced by ``fallback`` and reported as repaired.
    """
    if not isinstance(data, list):
        return RepairResult(list(fallback), 0, True)
    valid = [item for item in data if validator(item)]
    invalid = len(data) - len(valid)
    if invalid:
        warnings.warn(f"{invalid} invalid item(s) filtered out", RuntimeWarning)
    return RepairResult(valid, invalid, invalid > 0)


# ---------------------------------------------------------------------------
# Backup rotation
# ---------------------------------------------------------------------------

class BackupRotation:
    """
    Timestamped snapshots of a stored key, keeping the newest ``keep``.

    Snapshots are stored as ``<key>_backup_<epoch ms>`` with the timestamp
    zero-padded so lexical order is chronological.
    """

    SUFFIX = "_backup_"

    def __init__(
            self,
            backend: StorageBackend,
            keep: int = 3,
            clock: Callable[[], float] = time.time
    ):
        if not isinstance(keep, int) or keep <= 0:
            raise ValueError("keep must be a positive integer")
        self.backend = backend
        self.keep = keep
        self.clock = clock
        self._lock = threading.Lock()

    def _prefix(self, key: str) -> str:
        return f"{key}{self.SUFFIX}"

    def list_backups(self, key: str) -> List[str]:
        """Snapshot keys for ``key``, oldest first."""
        prefix = self._prefix(key)
        return sorted(
            k for k in self.backend.keys(prefix)
            if k[len(prefix):].isdigit()
        )

    def create_backup(self, key: str, data: str) -> str:
        """
        Store ``data`` as a new snapshot and prune old ones.

        Returns:
            the snapshot key
        """
        with self._lock:
            stamp = int(self.clock() * 1000)
            existing = set(self.list_backups(key))
            backup_key = f"{self._prefix(key)}{stamp:015d}"
            while backup_key in existing:
                stamp += 1
                backup_key = f"{self._prefix(key)}{stamp:015d}"
            self.backend.set(backup_key, data)

            backups = self.list_backups(key)
            for old in backups[:-self.keep]:
                self.backend.delete(old)
            return backup_key

    def restore_latest(self, key: str) -> Optional[str]:
        """Return the newest snapshot's data, or None if there is none."""
        backups = self.list_backups(key)
        if not backups:
            return None
        return self.backend.get(backups[-1])

    def latest_backups(self, key: str) -> List[str]:
        """Snapshot keys, newest first."""
        return list(reversed(self.list_backups(key)))
