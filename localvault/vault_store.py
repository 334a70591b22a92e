"""
LocalVault VaultStore
Encrypted persistence of credential records: save/load with rolling backup
and self-healing, CSV/JSON/encrypted export, import, and rate-limited unlock.
"""

import csv
import io
import json
import threading
import time
import warnings
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from localvault import crypto_engine
from localvault.corruption import BackupRotation, check_entries_corruption
from localvault.errors import (
    CorruptionError,
    DecryptionError,
    LockoutError,
    ValidationError,
    VaultLockedError,
)
from localvault.login_limiter import LockoutStatus, LoginRateLimiter
from localvault.models import (
    Category,
    CredentialRecord,
    entry_rejection_reason,
    format_timestamp,
    utcnow,
)
from localvault.sanitization import (
    MAX_BALANCE_LEN,
    MAX_CATEGORY_LEN,
    MAX_WEBSITE_LEN,
    sanitize_notes,
    sanitize_password,
    sanitize_text_field,
)
from localvault.storage_backend import StorageBackend
from localvault.totp_generator import TOTPGenerator
from localvault.vault_crypto import VaultCrypto

ENTRIES_KEY = "password_entries_v2"
BACKUP_KEY = "password_entries_v2_backup"
LEGACY_ENTRIES_KEY = "password_entries"
HINT_KEY = "vault_password_hint_v2"

EXPORT_FORMAT = "LocalPasswordVault-Encrypted"
EXPORT_VERSION = 2
JSON_EXPORT_VERSION = "2.0.0"

CSV_HEADER = [
    "Account Name",
    "Username",
    "Password",
    "Category",
    "Account Details",
    "Notes",
    "Created Date",
    "Updated Date",
]

RecordLike = Union[CredentialRecord, Mapping[str, Any]]


class VaultStore:
    """
    Owner of the credential collection.

    Storage layout:
        - ENTRIES_KEY: primary blob, base64(IV || ciphertext || tag)
        - BACKUP_KEY: previous primary blob (one generation)
        - ENTRIES_KEY_backup_<ts>: last three timestamped snapshots

    Security:
        - New ciphertext is fully computed before any slot is written
        - The pre-write backup copy strictly precedes the primary write
        - Plaintext never reaches the storage backend
    """

    def __init__(
            self,
            crypto: VaultCrypto,
            backend: StorageBackend,
            limiter: Optional[LoginRateLimiter] = None,
            rotation: Optional[BackupRotation] = None,
            raise_on_unrecoverable: bool = False,
            clock: Callable[[], float] = time.time
    ):
        self.crypto = crypto
        self.backend = backend
        self.limiter = limiter or LoginRateLimiter(backend, clock=clock)
        self.rotation = rotation or BackupRotation(backend, keep=3, clock=clock)
        self.raise_on_unrecoverable = raise_on_unrecoverable
        self._io_lock = threading.RLock()

    def _check_unlocked(self) -> None:
        if not self.crypto.is_unlocked():
            raise VaultLockedError()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def vault_exists(self) -> bool:
        return self.crypto.vault_exists()

    def initialize(self, master_password: str, hint: Optional[str] = None) -> None:
        """Create the vault, store the optional hint and leave it unlocked."""
        if not isinstance(master_password, str) or not master_password:
            raise ValidationError("Master password must not be empty")
        self.crypto.initialize(master_password)
        self.limiter.reset_attempts()
        if hint:
            self.set_password_hint(hint, require_unlock=False)

    def unlock(self, master_password: str) -> bool:
        """
        Rate-limited unlock.

        Returns:
            True on success, False on a wrong password (the failure is counted)

        Raises:
            LockoutError: while a lockout deadline is active, even for the
                correct password
        """
        status = self.limiter.is_locked_out()
        if status.locked:
            raise LockoutError(status.remaining_seconds)

        if self.crypto.unlock(master_password):
            self.limiter.reset_attempts()
            return True

        self.limiter.record_failed_attempt()
        return False

    def lock(self) -> None:
        self.crypto.lock()

    def is_unlocked(self) -> bool:
        return self.crypto.is_unlocked()

    def record_failed_attempt(self) -> LockoutStatus:
        return self.limiter.record_failed_attempt()

    def is_locked_out(self) -> LockoutStatus:
        return self.limiter.is_locked_out()

    def reset_attempts(self) -> None:
        self.limiter.reset_attempts()

    def remaining_attempts(self) -> int:
        return self.limiter.remaining_attempts()

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------

    @staticmethod
    def _sanitize(entry: Dict[str, Any]) -> Dict[str, Any]:
        clean = dict(entry)
        clean["accountName"] = sanitize_text_field(entry["accountName"])
        clean["username"] = sanitize_text_field(entry.get("username", ""))
        clean["password"] = sanitize_password(entry.get("password", ""))
        clean["category"] = Category.parse(
            sanitize_text_field(entry.get("category"), MAX_CATEGORY_LEN)
        ).value
        for name, limit in (("website", MAX_WEBSITE_LEN), ("balance", MAX_BALANCE_LEN)):
            if entry.get(name):
                clean[name] = sanitize_text_field(entry[name], limit)
        if entry.get("notes"):
            clean["notes"] = sanitize_notes(entry["notes"])
        if entry.get("customFields"):
            clean["customFields"] = [
                dict(f,
                     label=sanitize_text_field(f.get("label", ""), 100),
                     value=(sanitize_password(f.get("value", "")) if f.get("isSecret")
                            else sanitize_notes(f.get("value", ""))))
                for f in entry["customFields"]
            ]
        # Optional fields that sanitized down to nothing are omitted
        return {
            k: v for k, v in clean.items()
            if k in ("username", "password") or (v is not None and v != "")
        }

    def _prepare(self, records: Iterable[RecordLike]) -> List[Dict[str, Any]]:
        prepared: List[Dict[str, Any]] = []
        seen = set()
        dropped = 0

        for record in records:
            raw = record.to_dict() if isinstance(record, CredentialRecord) else record
            reason = entry_rejection_reason(raw)
            if reason is None and raw["id"] in seen:
                reason = "duplicate id"
            if reason is not None:
                dropped += 1
                warnings.warn(f"Entry dropped during save: {reason}", RuntimeWarning)
                continue

            entry = self._sanitize(CredentialRecord.from_dict(raw).to_dict())
            if not entry["accountName"]:
                dropped += 1
                warnings.warn("Entry dropped during save: empty accountName", RuntimeWarning)
                continue

            secret = entry.get("totpSecret")
            if secret and not TOTPGenerator.is_valid_secret(secret):
                warnings.warn(
                    f"Invalid TOTP secret removed from entry {entry['id']}", RuntimeWarning
                )
                del entry["totpSecret"]

            seen.add(entry["id"])
            prepared.append(entry)

        if dropped:
            warnings.warn(f"{dropped} entries filtered out during save", RuntimeWarning)
        return prepared

    def save_entries(self, records: Iterable[RecordLike]) -> int:
        """
        Validate, sanitize, encrypt and persist the full collection.

        Invalid entries are dropped with a warning instead of failing the save.
        The current primary blob is copied to the rolling backup slot and a
        timestamped snapshot before the new blob is written. That copy is
        skipped when the current primary no longer decrypts, so a good backup
        is never replaced by an unreadable one.

        Returns:
            number of entries written
        """
        self._check_unlocked()
        if isinstance(records, (str, bytes, Mapping)):
            raise ValidationError("save_entries expects a collection of records")

        with self._io_lock:
            entries = self._prepare(records)
            blob = self.crypto.encrypt_data(json.dumps(entries, ensure_ascii=False))

            current = self.backend.get(ENTRIES_KEY)
            if current is not None and self._is_readable(current):
                self.backend.set(BACKUP_KEY, current)
                self.rotation.create_backup(ENTRIES_KEY, current)
            self.backend.set(ENTRIES_KEY, blob)

            if self.backend.get(LEGACY_ENTRIES_KEY) is not None:
                self.backend.delete(LEGACY_ENTRIES_KEY)
            return len(entries)

    def _is_readable(self, blob: str) -> bool:
        try:
            self.crypto.decrypt_data(blob)
        except DecryptionError:
            return False
        return True

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    def _decode_entries(self, text: str) -> Optional[List[CredentialRecord]]:
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            return None

        check = check_entries_corruption(parsed)
        if check.is_corrupted:
            if not check.recoverable or check.recovered_data is None:
                return None
            warnings.warn(
                f"Vault data repaired on load: {', '.join(check.errors)}", RuntimeWarning
            )
            parsed = check.recovered_data

        records: List[CredentialRecord] = []
        seen = set()
        for item in parsed:
            record = CredentialRecord.from_dict(item)
            if record.id in seen:
                warnings.warn(
                    f"Vault data repaired on load: duplicate id {record.id} dropped", RuntimeWarning
                )
                continue
            seen.add(record.id)
            records.append(record)
        return records

    def _candidates(self):
        yield ENTRIES_KEY, self.backend.get(ENTRIES_KEY)
        yield BACKUP_KEY, self.backend.get(BACKUP_KEY)
        for key in self.rotation.latest_backups(ENTRIES_KEY):
            yield key, self.backend.get(key)

    def load_entries(self) -> List[CredentialRecord]:
        """
        Decrypt and return the collection.

        Falls back to the rolling backup, then to the newest timestamped
        snapshot, promoting whichever decrypts to be the new primary. When
        nothing can be read an empty list is returned with a warning, or
        CorruptionError is raised if the store was built with
        ``raise_on_unrecoverable=True``.
        """
        self._check_unlocked()

        with self._io_lock:
            if self.backend.get(ENTRIES_KEY) is None:
                return self._migrate_legacy()

            for key, blob in self._candidates():
                if blob is None:
                    continue
                try:
                    text = self.crypto.decrypt_data(blob)
                except DecryptionError:
                    continue
                records = self._decode_entries(text)
                if records is None:
                    continue
                if key != ENTRIES_KEY:
                    self.backend.set(ENTRIES_KEY, blob)
                    warnings.warn(f"Vault restored from backup slot {key}", RuntimeWarning)
                return records

            message = "Vault data is corrupted and no readable backup is available."
            if self.raise_on_unrecoverable:
                raise CorruptionError(message)
            warnings.warn(message, RuntimeWarning)
            return []

    def _migrate_legacy(self) -> List[CredentialRecord]:
        raw = self.backend.get(LEGACY_ENTRIES_KEY)
        if raw is None or raw in ("undefined", "null"):
            return []
        try:
            entries = json.loads(raw)
        except json.JSONDecodeError:
            warnings.warn("Legacy plaintext entries are unreadable", RuntimeWarning)
            return []
        if not isinstance(entries, list):
            return []

        self.save_entries(entries)
        return self.load_entries()

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_plain_csv(self) -> str:
        """
        Render every entry as CSV. The header row is always present.
        """
        self._check_unlocked()
        out = io.StringIO()
        writer = csv.writer(out, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)
        writer.writerow(CSV_HEADER)
        for record in self.load_entries():
            writer.writerow([
                record.account_name,
                record.username,
                record.password,
                record.category.value,
                record.balance or "",
                record.notes or "",
                format_timestamp(record.created_at),
                format_timestamp(record.updated_at),
            ])
        return out.getvalue()[:-1]

    def export_json(self) -> str:
        """Plain (unencrypted) JSON export envelope."""
        self._check_unlocked()
        data = {
            "version": JSON_EXPORT_VERSION,
            "exportedAt": format_timestamp(utcnow()),
            "entries": [r.to_dict() for r in self.load_entries()],
        }
        return json.dumps(data, indent=2, ensure_ascii=False)

    def export_encrypted(self, export_password: str) -> str:
        """
        Encrypt all entries under a key derived from ``export_password``.

        The vault key is not involved; the file can be imported into any vault.
        """
        self._check_unlocked()
        if not isinstance(export_password, str) or not export_password:
            raise ValidationError("Export password must not be empty")

        envelope = {
            "version": EXPORT_VERSION,
            "exportDate": format_timestamp(utcnow()),
            "entries": [r.to_dict() for r in self.load_entries()],
        }
        data = crypto_engine.encrypt_with_password(
            export_password, json.dumps(envelope, ensure_ascii=False)
        )
        return json.dumps({"format": EXPORT_FORMAT, "version": EXPORT_VERSION, "data": data})

    def import_encrypted(self, blob: str, export_password: str) -> int:
        """
        Replace the collection with the entries of an encrypted export.

        Raises:
            ValidationError: not an encrypted export
            DecryptionError: wrong password or damaged file (not distinguished)
        """
        self._check_unlocked()
        try:
            wrapper = json.loads(blob)
        except (json.JSONDecodeError, TypeError) as e:
            raise ValidationError("Invalid encrypted export format") from e
        if (not isinstance(wrapper, dict)
                or wrapper.get("format") != EXPORT_FORMAT
                or not isinstance(wrapper.get("data"), str)):
            raise ValidationError("Invalid encrypted export format")

        plaintext = crypto_engine.decrypt_with_password(export_password, wrapper["data"])
        try:
            envelope = json.loads(plaintext)
        except json.JSONDecodeError as e:
            raise DecryptionError("Failed to decrypt export. Check your password.") from e

        entries = envelope.get("entries") if isinstance(envelope, dict) else None
        if not isinstance(entries, list):
            raise ValidationError("Invalid import data format: missing entries array")
        return self.save_entries(entries)

    def import_plain(self, json_envelope: str) -> int:
        """
        Replace the collection with the entries of a plain JSON export.

        Raises:
            ValidationError: malformed JSON or no ``entries`` array
        """
        self._check_unlocked()
        try:
            parsed = json.loads(json_envelope)
        except (json.JSONDecodeError, TypeError) as e:
            raise ValidationError("Invalid import data format") from e
        entries = parsed.get("entries") if isinstance(parsed, dict) else None
        if not isinstance(entries, list):
            raise ValidationError("Invalid import data format: missing entries array")
        return self.save_entries(entries)

    # ------------------------------------------------------------------
    # Password hint (stored unencrypted, readable before unlock)
    # ------------------------------------------------------------------

    def get_password_hint(self) -> Optional[str]:
        return self.backend.get(HINT_KEY) or None

    def set_password_hint(self, hint: Optional[str], require_unlock: bool = True) -> None:
        if require_unlock:
            self._check_unlocked()
        if hint and hint.strip():
            self.backend.set(HINT_KEY, sanitize_text_field(hint))
        else:
            self.backend.delete(HINT_KEY)
