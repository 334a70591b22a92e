"""
Credential record model.

Records live in memory as dataclasses and cross the encryption boundary as
plain dicts with camelCase keys, the format shared by the encrypted vault
blob, plain JSON exports and encrypted exports.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

MAX_PASSWORD_HISTORY = 10


class Category(str, Enum):
    BANKING = "banking"
    SHOPPING = "shopping"
    ENTERTAINMENT = "entertainment"
    EMAIL = "email"
    WORK = "work"
    BUSINESS = "business"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "Category":
        """Map a stored category id to the enum; unknown ids become OTHER."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.OTHER


class EntryType(str, Enum):
    PASSWORD = "password"
    SECURE_NOTE = "secure_note"


def utcnow() -> datetime:
    """Current UTC time at millisecond precision, the precision timestamps are stored at."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 with millisecond precision and a ``Z`` suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: Any, default: Optional[datetime] = None) -> datetime:
    """
    Parse a stored timestamp.

    Accepts datetimes, ISO-8601 strings (with or without ``Z``) and epoch
    milliseconds. Anything else yields ``default`` (or now).
    """
    fallback = default or utcnow()
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return fallback
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return fallback
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return fallback


@dataclass
class CustomField:
    id: str
    label: str
    value: str
    is_secret: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "value": self.value,
            "isSecret": self.is_secret,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CustomField":
        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            label=str(data.get("label") or ""),
            value=str(data.get("value") or ""),
            is_secret=bool(data.get("isSecret", False)),
        )


@dataclass
class PasswordHistoryItem:
    password: str
    changed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"password": self.password, "changedAt": format_timestamp(self.changed_at)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PasswordHistoryItem":
        return cls(
            password=str(data.get("password") or ""),
            changed_at=parse_timestamp(data.get("changedAt")),
        )


@dataclass
class CredentialRecord:
    """
    A single vault entry.

    ``password_history`` holds previous passwords, newest first, at most
    ``MAX_PASSWORD_HISTORY`` items.
    """
    id: str
    account_name: str
    username: str = ""
    password: str = ""
    category: Category = Category.OTHER
    entry_type: EntryType = EntryType.PASSWORD
    website: Optional[str] = None
    notes: Optional[str] = None
    balance: Optional[str] = None
    is_favorite: bool = False
    custom_fields: List[CustomField] = field(default_factory=list)
    password_history: List[PasswordHistoryItem] = field(default_factory=list)
    password_changed_at: Optional[datetime] = None
    totp_secret: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
            cls,
            account_name: str,
            username: str = "",
            password: str = "",
            now: Optional[datetime] = None,
            **kwargs
    ) -> "CredentialRecord":
        """Build a new record with a fresh id and matching timestamps."""
        stamp = now or utcnow()
        if "category" in kwargs:
            kwargs["category"] = Category.parse(kwargs["category"])
        return cls(
            id=str(uuid.uuid4()),
            account_name=account_name,
            username=username,
            password=password,
            created_at=stamp,
            updated_at=stamp,
            **kwargs,
        )

    @property
    def is_secure_note(self) -> bool:
        return self.entry_type == EntryType.SECURE_NOTE

    def touch(self, now: Optional[datetime] = None) -> None:
        self.updated_at = now or utcnow()

    def update_password(self, new_password: str, now: Optional[datetime] = None) -> bool:
        """
        Replace the password, pushing the old one onto the history.

        Returns:
            True if the password actually changed
        """
        if new_password == self.password:
            return False
        stamp = now or utcnow()
        if self.password:
            self.password_history.insert(0, PasswordHistoryItem(self.password, stamp))
            del self.password_history[MAX_PASSWORD_HISTORY:]
        self.password = new_password
        self.password_changed_at = stamp
        self.updated_at = stamp
        return True

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "entryType": self.entry_type.value,
            "accountName": self.account_name,
            "username": self.username,
            "password": self.password,
            "category": self.category.value,
            "isFavorite": self.is_favorite,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }
        if self.website:
            data["website"] = self.website
        if self.notes:
            data["notes"] = self.notes
        if self.balance:
            data["balance"] = self.balance
        if self.custom_fields:
            data["customFields"] = [f.to_dict() for f in self.custom_fields]
        if self.password_history:
            data["passwordHistory"] = [h.to_dict() for h in self.password_history]
        if self.password_changed_at is not None:
            data["passwordChangedAt"] = format_timestamp(self.password_changed_at)
        if self.totp_secret:
            data["totpSecret"] = self.totp_secret
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CredentialRecord":
        """
        Rebuild a record from its stored form.

        Missing optional fields get their defaults and dates are parsed, so
        entries written by older versions load cleanly.
        """
        try:
            entry_type = EntryType(data.get("entryType") or EntryType.PASSWORD.value)
        except ValueError:
            entry_type = EntryType.PASSWORD

        now = utcnow()
        created_at = parse_timestamp(data.get("createdAt"), now)
        changed_at = data.get("passwordChangedAt")

        return cls(
            id=str(data["id"]),
            account_name=str(data["accountName"]),
            username=_str_or_empty(data.get("username")),
            password=_str_or_empty(data.get("password")),
            category=Category.parse(data.get("category")),
            entry_type=entry_type,
            website=data.get("website") or None,
            notes=data.get("notes") or None,
            balance=data.get("balance") or None,
            is_favorite=bool(data.get("isFavorite", False)),
            custom_fields=[
                CustomField.from_dict(f)
                for f in _list_or_empty(data.get("customFields"))
                if isinstance(f, Mapping)
            ],
            password_history=[
                PasswordHistoryItem.from_dict(h)
                for h in _list_or_empty(data.get("passwordHistory"))
                if isinstance(h, Mapping)
            ][:MAX_PASSWORD_HISTORY],
            password_changed_at=parse_timestamp(changed_at, now) if changed_at else None,
            totp_secret=data.get("totpSecret") or None,
            created_at=created_at,
            updated_at=parse_timestamp(data.get("updatedAt"), created_at),
        )


def _str_or_empty(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _list_or_empty(value: Any) -> list:
    return value if isinstance(value, list) else []


def entry_rejection_reason(entry: Any) -> Optional[str]:
    """
    Structural check applied before an entry is saved.

    Returns:
        None if the entry may be stored, otherwise a short reason
    """
    if not isinstance(entry, Mapping):
        return "not an object"
    if not isinstance(entry.get("id"), str) or not entry.get("id"):
        return "missing id"
    account = entry.get("accountName")
    if not isinstance(account, str) or not account.strip():
        return "missing accountName"
    if entry.get("entryType") == EntryType.SECURE_NOTE.value:
        return None
    if not isinstance(entry.get("username"), str) or not isinstance(entry.get("password"), str):
        return "invalid username/password type"
    return None
