import io
import json
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from conftest import DEVICE_ID, SIGNING_SECRET
from localvault.app import build_app
from localvault.crypto_engine import sign_record
from localvault.device_fingerprint import StaticDeviceFingerprint
from localvault.licensing_api import ActivationResponse
from localvault.storage_backend import MemoryStorageBackend
from localvault_cli import EXIT_ERROR, EXIT_OK, PROG, LocalVaultCLI

MASTER = "Tr0ub4dor&3"

# -----------------------------------------------------------------------------
# FIXTURES
# -----------------------------------------------------------------------------

class Prompts:
    """Queue of answers for the secret prompt."""

    def __init__(self):
        self.answers = []
        self.asked = []

    def __call__(self, label):
        self.asked.append(label)
        return self.answers.pop(0)


@pytest.fixture
def api():
    return MagicMock()


@pytest.fixture
def app(api):
    app = build_app(
        backend=MemoryStorageBackend(),
        api=api,
        fingerprint=StaticDeviceFingerprint(DEVICE_ID),
        signing_secret=SIGNING_SECRET,
    )
    yield app
    app.close()


@pytest.fixture
def prompts():
    return Prompts()


@pytest.fixture
def out():
    return io.StringIO()


@pytest.fixture
def cli(app, prompts, out):
    console = Console(file=out, no_color=True, width=200)
    return LocalVaultCLI(app=app, console=console, prompt_secret=prompts)


def run(cli, *argv):
    args = LocalVaultCLI.build_parser().parse_args(list(argv))
    return cli.dispatch(args)


@pytest.fixture
def initialized(cli, prompts):
    prompts.answers += [MASTER, MASTER]
    assert run(cli, "init", "--hint", "xkcd") == EXIT_OK
    return cli

# -----------------------------------------------------------------------------
# VAULT SETUP
# -----------------------------------------------------------------------------

def test_init_creates_vault_and_locks_afterwards(initialized, app):
    assert app.vault_store.vault_exists()
    assert app.vault_store.is_unlocked() is False
    assert app.vault_store.get_password_hint() == "xkcd"

def test_init_rejects_short_password(cli, prompts, capsys, app):
    prompts.answers += ["short"]
    assert run(cli, "init") == EXIT_ERROR
    assert "too short" in capsys.readouterr().err
    assert app.vault_store.vault_exists() is False

def test_init_rejects_mismatch(cli, prompts, app):
    prompts.answers += [MASTER, MASTER + "x"]
    assert run(cli, "init") == EXIT_ERROR
    assert app.vault_store.vault_exists() is False

def test_init_twice(initialized, capsys):
    assert run(initialized, "init") == EXIT_ERROR
    assert "already exists" in capsys.readouterr().err

def test_commands_need_a_vault(cli, capsys):
    assert run(cli, "list") == EXIT_ERROR
    assert "No vault found" in capsys.readouterr().err

# -----------------------------------------------------------------------------
# UNLOCK
# -----------------------------------------------------------------------------

def test_unlock_shows_hint(initialized, prompts, out):
    prompts.answers += [MASTER]
    assert run(initialized, "unlock") == EXIT_OK
    text = out.getvalue()
    assert "Hint: xkcd" in text
    assert "0 entries" in text

def test_wrong_password_then_lockout(initialized, prompts, capsys):
    prompts.answers += ["wrong"]
    assert run(initialized, "unlock") == EXIT_ERROR
    assert "4 attempt(s) left" in capsys.readouterr().err

    prompts.answers += ["wrong"] * 4
    for _ in range(4):
        run(initialized, "unlock")
    capsys.readouterr()

    prompts.answers += [MASTER]
    assert run(initialized, "unlock") == EXIT_ERROR
    assert "Too many failed attempts" in capsys.readouterr().err

# -----------------------------------------------------------------------------
# ENTRIES
# -----------------------------------------------------------------------------

def test_add_list_show_delete(initialized, prompts, out, app):
    prompts.answers += [MASTER]
    assert run(initialized, "add", "Bank", "-u", "alice", "-p", "secret1", "-c", "banking", "-f") == EXIT_OK

    prompts.answers += [MASTER]
    assert run(initialized, "list") == EXIT_OK
    assert "Bank" in out.getvalue() and "banking" in out.getvalue()

    prompts.answers += [MASTER]
    run(initialized, "show", "bank")
    assert "secret1" not in out.getvalue()

    prompts.answers += [MASTER]
    run(initialized, "show", "Bank", "--reveal")
    assert "secret1" in out.getvalue()

    prompts.answers += [MASTER]
    assert run(initialized, "delete", "Bank") == EXIT_OK
    app.vault_store.unlock(MASTER)
    assert app.vault_store.load_entries() == []

def test_markup_in_stored_text_is_printed_literally(initialized, prompts, out):
    prompts.answers += [MASTER, MASTER, MASTER]
    assert run(initialized, "add", "[/bold] corp", "-u", "[red]x", "-p", "p") == EXIT_OK
    assert run(initialized, "list") == EXIT_OK
    assert run(initialized, "show", "[/bold] corp") == EXIT_OK
    assert "[/bold] corp" in out.getvalue()
    assert "[red]x" in out.getvalue()

def test_add_prompts_for_password(initialized, prompts, app):
    prompts.answers += [MASTER, "prompted-pw"]
    run(initialized, "add", "Mail", "-u", "bob")
    assert prompts.asked[-1] == "Entry Password: "
    app.vault_store.unlock(MASTER)
    assert app.vault_store.load_entries()[0].password == "prompted-pw"

def test_show_missing_entry(initialized, prompts, capsys):
    prompts.answers += [MASTER]
    assert run(initialized, "show", "Nope") == EXIT_ERROR
    assert "not found" in capsys.readouterr().err

def test_list_filters(initialized, prompts, out):
    prompts.answers += [MASTER, MASTER, MASTER]
    run(initialized, "add", "Bank", "-p", "x", "-c", "banking")
    run(initialized, "add", "Shop", "-p", "y", "-c", "shopping")
    run(initialized, "list", "--category", "shopping")
    table = out.getvalue().split("1 entries")[-1]
    assert "Shop" in table and "Bank" not in table

# -----------------------------------------------------------------------------
# EXPORT / IMPORT
# -----------------------------------------------------------------------------

def test_export_csv(initialized, prompts, tmp_path):
    prompts.answers += [MASTER, MASTER]
    run(initialized, "add", "Bank", "-u", "alice", "-p", 'a,b"c')
    target = tmp_path / "out.csv"
    assert run(initialized, "export-csv", "-o", str(target)) == EXIT_OK
    assert '"a,b""c"' in target.read_text()

def test_encrypted_export_then_import(initialized, prompts, tmp_path, app):
    prompts.answers += [MASTER]
    run(initialized, "add", "Bank", "-u", "alice", "-p", "secret1")
    target = tmp_path / "vault.lpv"
    prompts.answers += [MASTER, "export-pw", "export-pw"]
    assert run(initialized, "export", "-o", str(target)) == EXIT_OK
    assert json.loads(target.read_text())["format"] == "LocalPasswordVault-Encrypted"

    prompts.answers += [MASTER]
    run(initialized, "delete", "Bank")
    prompts.answers += [MASTER, "export-pw"]
    assert run(initialized, "import", "-i", str(target)) == EXIT_OK

    app.vault_store.unlock(MASTER)
    assert [r.account_name for r in app.vault_store.load_entries()] == ["Bank"]

def test_import_wrong_password(initialized, prompts, tmp_path, capsys):
    target = tmp_path / "vault.lpv"
    prompts.answers += [MASTER, "right", "right"]
    run(initialized, "export", "-o", str(target))
    prompts.answers += [MASTER, "wrong"]
    assert run(initialized, "import", "-i", str(target)) == EXIT_ERROR
    assert "Check your password" in capsys.readouterr().err

def test_import_missing_file(initialized, prompts, tmp_path, capsys):
    prompts.answers += [MASTER]
    assert run(initialized, "import", "-i", str(tmp_path / "missing.json"), "--plain") == EXIT_ERROR
    assert "Could not read" in capsys.readouterr().err

# -----------------------------------------------------------------------------
# HINT / TOTP
# -----------------------------------------------------------------------------

def test_hint_show_and_update(initialized, prompts, out, app):
    assert run(initialized, "hint") == EXIT_OK
    assert "xkcd" in out.getvalue()
    prompts.answers += [MASTER]
    assert run(initialized, "hint", "--set", "new hint") == EXIT_OK
    assert app.vault_store.get_password_hint() == "new hint"

def test_totp_from_secret(cli, out):
    assert run(cli, "totp", "--secret", "JBSWY3DPEHPK3PXP") == EXIT_OK
    assert "valid" in out.getvalue()

def test_totp_invalid_secret(cli, capsys):
    assert run(cli, "totp", "--secret", "!!") == EXIT_ERROR

# -----------------------------------------------------------------------------
# LICENSING
# -----------------------------------------------------------------------------

def test_status_without_entitlement(cli, out):
    assert run(cli, "status") == EXIT_OK
    text = out.getvalue()
    assert "not initialized" in text
    assert "Can use app" in text and "no" in text

def test_activate_success(cli, api, out):
    record = sign_record({"license_key": "PERS-AB12-CD34-EF56", "device_id": DEVICE_ID,
                          "plan_type": "personal"}, SIGNING_SECRET)
    api.activate.return_value = ActivationResponse(status="activated", plan_type="personal",
                                                   signed_record=record)
    assert run(cli, "activate", "PERS-AB12-CD34-EF56") == EXIT_OK
    run(cli, "status")
    assert "Personal Vault" in out.getvalue()

def test_activate_device_mismatch_suggests_transfer(cli, api, out):
    api.activate.return_value = ActivationResponse(status="device_mismatch")
    assert run(cli, "activate", "PERS-AB12-CD34-EF56") == EXIT_ERROR
    assert f"{PROG} transfer" in out.getvalue()

def test_activate_malformed_key(cli, api, capsys):
    assert run(cli, "activate", "bad") == EXIT_ERROR
    api.activate.assert_not_called()
    assert "Invalid license key format" in capsys.readouterr().err
