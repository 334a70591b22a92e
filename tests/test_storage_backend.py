import pytest

from localvault.storage_backend import MemoryStorageBackend, SQLiteStorageBackend, StorageError


@pytest.fixture(params=["memory", "sqlite"])
def any_backend(request, tmp_path):
    if request.param == "memory":
        yield MemoryStorageBackend()
    else:
        db = SQLiteStorageBackend(str(tmp_path / "vault.db"))
        yield db
        db.close()


def test_get_missing_returns_none(any_backend):
    assert any_backend.get("nope") is None
    assert any_backend.contains("nope") is False

def test_set_get_overwrite_delete(any_backend):
    any_backend.set("k", "v1")
    any_backend.set("k", "v2")
    assert any_backend.get("k") == "v2"
    assert any_backend.contains("k")
    any_backend.delete("k")
    assert any_backend.get("k") is None
    any_backend.delete("k")  # deleting twice is fine

def test_keys_prefix_is_literal(any_backend):
    any_backend.set("entries_backup_001", "a")
    any_backend.set("entries_backup_002", "b")
    any_backend.set("entriesXbackupX003", "c")
    assert any_backend.keys("entries_backup_") == ["entries_backup_001", "entries_backup_002"]

def test_non_string_values_rejected(any_backend):
    with pytest.raises(StorageError):
        any_backend.set("k", b"bytes")

def test_sqlite_persists_across_connections(tmp_path):
    path = str(tmp_path / "nested" / "vault.db")
    with SQLiteStorageBackend(path) as db:
        db.set("vault_salt_v2", "c2FsdA==")
    with SQLiteStorageBackend(path) as db:
        assert db.get("vault_salt_v2") == "c2FsdA=="

def test_memory_backend_initial_state_is_copied():
    initial = {"a": "1"}
    db = MemoryStorageBackend(initial)
    db.set("b", "2")
    assert "b" not in initial
    assert db.keys() == ["a", "b"]
