from unittest.mock import patch

from localvault.device_fingerprint import (
    CACHE_KEY,
    DeviceFingerprint,
    StaticDeviceFingerprint,
    collect_signals,
    is_valid_device_id,
)

SIGNALS = [("machine_id", "abc"), ("system", "Linux"), ("hostname", "box")]


def test_is_valid_device_id():
    assert is_valid_device_id("0" * 64)
    assert not is_valid_device_id("0" * 63)
    assert not is_valid_device_id("Z" * 64)
    assert not is_valid_device_id(None)

def test_compute_is_deterministic_and_salted():
    with patch("localvault.device_fingerprint.collect_signals", return_value=SIGNALS):
        a = DeviceFingerprint(salt="s1").compute()
        b = DeviceFingerprint(salt="s1").compute()
        c = DeviceFingerprint(salt="s2").compute()
    assert a == b != c
    assert is_valid_device_id(a)

def test_get_caches_in_backend(backend):
    with patch("localvault.device_fingerprint.collect_signals", return_value=SIGNALS):
        first = DeviceFingerprint(backend).get()
    assert backend.get(CACHE_KEY) == first

    # Later signal changes do not move a cached fingerprint
    changed = [("machine_id", "abc"), ("system", "Linux"), ("hostname", "renamed")]
    with patch("localvault.device_fingerprint.collect_signals", return_value=changed):
        assert DeviceFingerprint(backend).get() == first

def test_invalid_cached_value_is_replaced(backend):
    backend.set(CACHE_KEY, "garbage")
    with patch("localvault.device_fingerprint.collect_signals", return_value=SIGNALS):
        value = DeviceFingerprint(backend).get()
    assert is_valid_device_id(value)
    assert backend.get(CACHE_KEY) == value

def test_collect_signals_has_platform_info():
    names = [name for name, _ in collect_signals()]
    assert "system" in names and "hostname" in names

def test_static_fingerprint():
    fp = StaticDeviceFingerprint("f" * 64)
    assert fp.get() == fp.compute() == "f" * 64
