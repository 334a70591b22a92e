"""
Device fingerprint used to bind license and trial records to one machine.

The fingerprint is a salted SHA-256 over stable platform identifiers. It is
cached in memory and in the storage backend so it stays constant for the
lifetime of an installation even if a secondary signal (hostname, MAC)
later changes.
"""

import hashlib
import platform
import re
import subprocess
import uuid
from pathlib import Path
from typing import List, Optional, Tuple

from localvault.config import FINGERPRINT_SALT
from localvault.storage_backend import StorageBackend

CACHE_KEY = "_cached_device_id"
_DEVICE_ID_RE = re.compile(r"^[0-9a-f]{64}$")

_LINUX_MACHINE_ID_PATHS = ("/etc/machine-id", "/var/lib/dbus/machine-id")


def is_valid_device_id(value: Optional[str]) -> bool:
    """True for a 64-character lowercase hex string."""
    return isinstance(value, str) and bool(_DEVICE_ID_RE.match(value))


def _read_linux_machine_id() -> Optional[str]:
    for path in _LINUX_MACHINE_ID_PATHS:
        try:
            value = Path(path).read_text().strip()
        except OSError:
            continue
        if value:
            return value
    return None


def _read_windows_machine_guid() -> Optional[str]:
    try:
        import winreg
    except ImportError:
        return None
    try:
        with winreg.OpenKey(
                winreg.HKEY_LOCAL_MACHINE,
                r"SOFTWARE\Microsoft\Cryptography",
                0,
                winreg.KEY_READ | winreg.KEY_WOW64_64KEY,
        ) as key:
            value, _ = winreg.QueryValueEx(key, "MachineGuid")
            return str(value)
    except OSError:
        return None


def _read_macos_platform_uuid() -> Optional[str]:
    try:
        result = subprocess.run(
            ["ioreg", "-rd1", "-c", "IOPlatformExpertDevice"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    match = re.search(r'"IOPlatformUUID"\s*=\s*"([^"]+)"', result.stdout or "")
    return match.group(1) if match else None


def collect_signals() -> List[Tuple[str, str]]:
    """
    Gather the platform identifiers that feed the fingerprint.
    """
    system = platform.system().lower()
    components: List[Tuple[str, str]] = []

    if system == "linux":
        machine_id = _read_linux_machine_id()
    elif system == "windows":
        machine_id = _read_windows_machine_guid()
    elif system == "darwin":
        machine_id = _read_macos_platform_uuid()
    else:
        machine_id = None
    if machine_id:
        components.append(("machine_id", machine_id))

    node = uuid.getnode()
    # Bit 40 set means getnode() fell back to a random number
    if not (node >> 40) & 1:
        components.append(("mac", f"{node:012x}"))

    components.append(("system", platform.system()))
    components.append(("machine", platform.machine()))
    components.append(("processor", platform.processor() or "unknown"))
    components.append(("hostname", platform.node()))
    return components


class DeviceFingerprint:
    """
    Stable per-installation device identifier.

    Example:
        >>> fp = DeviceFingerprint(backend)
        >>> fp.get()
        '3f1c...'  # 64 hex chars
    """

    def __init__(self, backend: Optional[StorageBackend] = None, salt: str = FINGERPRINT_SALT):
        self.backend = backend
        self.salt = salt
        self._cached: Optional[str] = None

    def compute(self) -> str:
        """Hash the current platform signals (ignores any cache)."""
        payload = "|".join(f"{name}:{value}" for name, value in collect_signals())
        return hashlib.sha256(f"{self.salt}|{payload}".encode("utf-8")).hexdigest()

    def get(self) -> str:
        if self._cached:
            return self._cached

        if self.backend is not None:
            stored = self.backend.get(CACHE_KEY)
            if is_valid_device_id(stored):
                self._cached = stored
                return stored

        fingerprint = self.compute()
        if self.backend is not None:
            self.backend.set(CACHE_KEY, fingerprint)
        self._cached = fingerprint
        return fingerprint

    def get_device_name(self) -> str:
        hostname = platform.node()
        if hostname:
            return hostname
        return f"{platform.system() or 'Unknown'} Device"


class StaticDeviceFingerprint(DeviceFingerprint):
    """Fingerprint with a fixed value, for tests and headless tooling."""

    def __init__(self, device_id: str):
        super().__init__(backend=None)
        self._cached = device_id

    def compute(self) -> str:
        return self._cached
