"""
LocalVault Secure Memory
Keeps secret key material in locked, scrubbable buffers.

Platform Support:
- Linux/macOS: mlock/munlock via libc
- Windows: VirtualLock/VirtualUnlock via kernel32
- Graceful degradation if privileges are insufficient

Python strings are immutable and cannot be wiped, so secrets that must be
scrubbed live in a ``bytearray`` owned by a :class:`SecretBuffer`.
"""

import sys
import ctypes
import ctypes.util
import secrets
import threading
import warnings
import atexit
from typing import Any, Dict, Optional, Set, Tuple, Union


def _detect_platform() -> str:
    p = sys.platform.lower()
    if p.startswith('linux'): return 'LINUX'
    if p.startswith('win32') or p.startswith('cygwin'): return 'WINDOWS'
    if p.startswith('darwin'): return 'MACOS'
    return 'UNKNOWN'

PLATFORM = _detect_platform()
IS_LINUX = (PLATFORM == 'LINUX')
IS_WINDOWS = (PLATFORM == 'WINDOWS')
IS_MACOS = (PLATFORM == 'MACOS')


class SecureMemoryHandle:
    """
    Opaque handle for a locked memory region.
    Holds the ctypes view so the address stays valid while locked.
    """
    def __init__(self, addr: int, length: int, keeper: Any):
        self.addr = addr
        self.length = length
        self.keeper = keeper
        self.locked = False


class SecureMemory:
    """
    Cross-platform page locking and zeroing.

    Features:
    - Memory locking (prevents swap to disk), best effort
    - Zeroing through the raw address
    - Cleanup of every tracked region at interpreter exit
    """

    def __init__(self):
        self._handles: Set[SecureMemoryHandle] = set()
        self._lock = threading.Lock()
        self.libc: Any = None
        self.kernel32: Any = None
        self.platform_supported = False
        self._initialize_platform()

        if PLATFORM == 'UNKNOWN':
            warnings.warn(
                "Secure Memory: Unsupported platform. Memory locking is DISABLED. "
                "Key material may be swapped to disk.",
                RuntimeWarning
            )

        atexit.register(self._cleanup_all_silent)

    def _initialize_platform(self):
        """Load mlock/munlock (POSIX) or VirtualLock/VirtualUnlock (Windows)."""
        try:
            if IS_LINUX or IS_MACOS:
                libc_name = ctypes.util.find_library('c') or ('libc.so.6' if IS_LINUX else 'libc.dylib')
                self.libc = ctypes.CDLL(libc_name, use_errno=True)
                self.libc.mlock.argtypes = [ctypes.c_void_p, ctypes.c_size_t]
                self.libc.mlock.restype = ctypes.c_int
                self.libc.munlock.argtypes = [ctypes.c_void_p, ctypes.c_size_t]
                self.libc.munlock.restype = ctypes.c_int
                self.platform_supported = True

            elif IS_WINDOWS:
                self.kernel32 = ctypes.windll.kernel32
                virtual_lock = getattr(self.kernel32, 'VirtualLock')
                virtual_lock.argtypes = [ctypes.c_void_p, ctypes.c_size_t]
                virtual_lock.restype = ctypes.c_int
                virtual_unlock = getattr(self.kernel32, 'VirtualUnlock')
                virtual_unlock.argtypes = [ctypes.c_void_p, ctypes.c_size_t]
                virtual_unlock.restype = ctypes.c_int
                self.platform_supported = True

        except (OSError, AttributeError) as e:
            self.platform_supported = False
            warnings.warn(f"SecureMemory init failed: {e}. Running in degraded mode.", RuntimeWarning)

    @staticmethod
    def _address_and_length(data: Union[bytearray, memoryview]) -> Tuple[int, int, Any]:
        """
        Resolve the address of a writable contiguous buffer.

        Raises:
            TypeError: for immutable ``bytes`` or readonly views
        """
        if isinstance(data, bytes):
            raise TypeError(
                "secure_memory cannot lock immutable bytes objects. "
                "Use bytearray or a writable memoryview."
            )
        if not isinstance(data, (bytearray, memoryview)):
            raise TypeError("lock_memory expects bytearray or memoryview")

        mv = memoryview(data) if isinstance(data, bytearray) else data
        if not mv.contiguous:
            raise ValueError("Buffer must be contiguous")
        if mv.readonly:
            raise TypeError("secure_memory cannot lock a readonly memoryview")

        length = len(mv)
        keeper = (ctypes.c_char * length).from_buffer(mv)
        return ctypes.addressof(keeper), length, keeper

    def lock_memory(self, data: Union[bytearray, memoryview]) -> Optional[SecureMemoryHandle]:
        """
        Lock a buffer in RAM and start tracking it.

        Returns:
            SecureMemoryHandle (even when the OS refused the lock), or None for
            an empty buffer
        """
        addr, length, keeper = self._address_and_length(data)
        if length == 0:
            return None

        locked_ok = False
        try:
            if IS_WINDOWS and self.kernel32 is not None:
                locked_ok = bool(self.kernel32.VirtualLock(ctypes.c_void_p(addr), ctypes.c_size_t(length)))
            elif self.libc is not None:
                locked_ok = self.libc.mlock(ctypes.c_void_p(addr), ctypes.c_size_t(length)) == 0
        except (OSError, AttributeError):
            locked_ok = False

        handle = SecureMemoryHandle(addr, length, keeper)
        handle.locked = locked_ok
        with self._lock:
            self._handles.add(handle)
        return handle

    def unlock_memory(self, handle: SecureMemoryHandle) -> bool:
        """Unlock and stop tracking a region. Returns False on OS failure."""
        with self._lock:
            if handle not in self._handles:
                return False
            self._handles.discard(handle)

        if not handle.locked:
            return True

        try:
            if IS_WINDOWS and self.kernel32 is not None:
                return bool(self.kernel32.VirtualUnlock(ctypes.c_void_p(handle.addr), ctypes.c_size_t(handle.length)))
            if self.libc is not None:
                return self.libc.munlock(ctypes.c_void_p(handle.addr), ctypes.c_size_t(handle.length)) == 0
        except (OSError, AttributeError) as e:
            warnings.warn(f"SecureMemory: exception during unlock: {e}", RuntimeWarning)
        return False

    @staticmethod
    def zeroize(handle: SecureMemoryHandle) -> bool:
        """Overwrite the region with zeros and verify."""
        if not isinstance(handle, SecureMemoryHandle) or not handle.addr or handle.length <= 0:
            return False
        ctypes.memset(handle.addr, 0, handle.length)
        return all(b == b'\x00' for b in handle.keeper)

    def tracked_count(self) -> int:
        with self._lock:
            return len(self._handles)

    def cleanup_all(self) -> Dict[str, int]:
        """
        Zero and unlock all tracked regions.

        Best-effort: called automatically at exit.
        """
        result = {"total": 0, "zeroized": 0, "unlock_failed": 0}
        with self._lock:
            active = list(self._handles)
        result["total"] = len(active)

        for handle in active:
            if self.zeroize(handle):
                result["zeroized"] += 1
            if not self.unlock_memory(handle):
                result["unlock_failed"] += 1
        return result

    def _cleanup_all_silent(self):
        try:
            self.cleanup_all()
        except (OSError, ValueError, TypeError):
            pass


def scrub_bytearray(buf: bytearray) -> None:
    """Overwrite ``buf`` in place with random bytes, then zeros."""
    if not isinstance(buf, bytearray) or not buf:
        return
    buf[:] = secrets.token_bytes(len(buf))
    for i in range(len(buf)):
        buf[i] = 0


class SecretBuffer:
    """
    Scoped owner of secret bytes.

    The secret is copied into a locked ``bytearray``; ``wipe()`` (or leaving
    the ``with`` block) scrubs and releases it. Wiping is idempotent.

    Example:
        >>> with SecretBuffer(derive_key(pw, salt)) as key:
        ...     blob = encrypt(key.value, "data")
    """

    def __init__(self, data: Union[bytes, bytearray], secure_mem: Optional[SecureMemory] = None):
        self._buf = bytearray(data)
        if isinstance(data, bytearray):
            scrub_bytearray(data)
        self._secure_mem = secure_mem
        self._handle: Optional[SecureMemoryHandle] = None
        if secure_mem is not None and self._buf:
            self._handle = secure_mem.lock_memory(self._buf)

    @property
    def value(self) -> bytearray:
        if self._buf is None:
            raise ValueError("SecretBuffer has been wiped")
        return self._buf

    @property
    def wiped(self) -> bool:
        return self._buf is None

    def __len__(self) -> int:
        return 0 if self._buf is None else len(self._buf)

    def wipe(self) -> None:
        if self._buf is None:
            return
        scrub_bytearray(self._buf)
        if self._handle is not None and self._secure_mem is not None:
            self._secure_mem.unlock_memory(self._handle)
            self._handle = None
        self._buf = None

    def __enter__(self) -> "SecretBuffer":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.wipe()

    def __del__(self):
        try:
            self.wipe()
        except Exception:
            pass

    def __repr__(self) -> str:
        state = "wiped" if self._buf is None else f"{len(self._buf)} bytes"
        return f"<SecretBuffer {state}>"
