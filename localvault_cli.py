#!/usr/bin/env python3
"""
localvault_cli.py - command-line front end for LocalVault
"""

from __future__ import annotations

import argparse
import getpass
import sys
from pathlib import Path
from typing import Callable, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.text import Text

from localvault import __version__
from localvault.app import LocalVaultApp, build_app
from localvault.errors import (
    DecryptionError,
    LocalVaultError,
    LockoutError,
    ValidationError,
    VaultLockedError,
)
from localvault.models import Category, CredentialRecord, EntryType
from localvault.sanitization import sanitize_url
from localvault.totp_generator import TOTPGenerator

PROG = "localvault"
MIN_PASSWORD_LENGTH = 8
EXIT_OK = 0
EXIT_ERROR = 1


class LocalVaultCLI:
    """
    One-shot command runner.

    Every vault command unlocks on demand and locks again before returning.
    """

    def __init__(
            self,
            app: Optional[LocalVaultApp] = None,
            console: Optional[Console] = None,
            prompt_secret: Callable[[str], str] = getpass.getpass,
            no_color: bool = False
    ):
        self.console = console or Console(no_color=no_color, highlight=False)
        self.err_console = Console(stderr=True, no_color=no_color, highlight=False)
        self.app = app or build_app()
        self.prompt_secret = prompt_secret

    @property
    def store(self):
        return self.app.vault_store

    # ======== Output helpers ========

    def print_error(self, msg: str) -> None:
        self.err_console.print(f"[bold red]ERROR[/bold red] {escape(msg)}", markup=True)

    def print_success(self, msg: str) -> None:
        self.console.print(f"[green]{escape(msg)}[/green]")

    def print_warning(self, msg: str) -> None:
        self.console.print(f"[yellow]{escape(msg)}[/yellow]")

    # ======== Authentication ========

    def ensure_unlocked(self) -> bool:
        if self.store.is_unlocked():
            return True
        if not self.store.vault_exists():
            self.print_error("No vault found. Run 'localvault init' first.")
            return False

        hint = self.store.get_password_hint()
        if hint:
            self.console.print(f"[dim]Hint: {escape(hint)}[/dim]")

        try:
            password = self.prompt_secret("Master Password: ")
        except (KeyboardInterrupt, EOFError):
            return False

        try:
            if self.store.unlock(password):
                return True
        except LockoutError as e:
            self.print_error(str(e))
            return False

        remaining = self.store.remaining_attempts()
        status = self.store.is_locked_out()
        if status.locked:
            self.print_error(
                f"Invalid password. Too many failed attempts, try again in "
                f"{status.remaining_seconds} seconds."
            )
        else:
            self.print_error(f"Invalid password. {remaining} attempt(s) left.")
        return False

    def _find(self, records: List[CredentialRecord], args) -> Optional[CredentialRecord]:
        if getattr(args, "id", None):
            return next((r for r in records if r.id == args.id), None)
        name = (getattr(args, "account", None) or "").lower()
        matches = [r for r in records if r.account_name.lower() == name]
        if len(matches) > 1:
            self.print_warning(f"{len(matches)} entries named '{args.account}', using the first. "
                               "Pass --id to choose.")
        return matches[0] if matches else None

    # ======== Command handlers ========

    def cmd_init(self, args) -> int:
        if self.store.vault_exists():
            self.print_error("A vault already exists.")
            return EXIT_ERROR

        pw1 = self.prompt_secret("New Master Password: ")
        if len(pw1) < MIN_PASSWORD_LENGTH:
            self.print_error(f"Password too short. Minimum {MIN_PASSWORD_LENGTH} characters.")
            return EXIT_ERROR
        pw2 = self.prompt_secret("Confirm Password: ")
        if pw1 != pw2:
            self.print_error("Passwords don't match.")
            return EXIT_ERROR

        self.store.initialize(pw1, hint=args.hint)
        self.print_success("Vault created and unlocked.")
        self.print_warning("This password cannot be recovered if lost.")
        return EXIT_OK

    def cmd_unlock(self, args) -> int:
        if not self.ensure_unlocked():
            return EXIT_ERROR
        entries = self.store.load_entries()
        self.print_success(f"Vault unlocked. {len(entries)} entries.")
        return EXIT_OK

    def cmd_list(self, args) -> int:
        if not self.ensure_unlocked():
            return EXIT_ERROR
        records = self.store.load_entries()
        if args.category:
            wanted = Category.parse(args.category)
            records = [r for r in records if r.category == wanted]
        if args.favorite:
            records = [r for r in records if r.is_favorite]
        records.sort(key=lambda r: r.account_name.lower())

        if not records:
            self.console.print("No entries.")
            return EXIT_OK

        table = Table(title=f"{len(records)} entries")
        table.add_column("ID", style="dim", no_wrap=True)
        table.add_column("Account")
        table.add_column("Username")
        table.add_column("Category")
        table.add_column("Fav", justify="center")
        for r in records:
            table.add_row(r.id[:8], Text(r.account_name), Text(r.username), r.category.value,
                          "*" if r.is_favorite else "")
        self.console.print(table)
        return EXIT_OK

    def cmd_add(self, args) -> int:
        if not self.ensure_unlocked():
            return EXIT_ERROR
        password = args.password
        if password is None and not args.note:
            password = self.prompt_secret("Entry Password: ")

        record = CredentialRecord.create(
            args.account,
            username=args.username or "",
            password=password or "",
            category=args.category,
            entry_type=EntryType.SECURE_NOTE if args.note else EntryType.PASSWORD,
            website=sanitize_url(args.website) or None if args.website else None,
            notes=args.notes,
            is_favorite=args.favorite,
            totp_secret=args.totp_secret,
        )
        records = self.store.load_entries()
        records.append(record)
        self.store.save_entries(records)
        self.print_success(f"Added '{record.account_name}' ({record.id[:8]}).")
        return EXIT_OK

    def cmd_show(self, args) -> int:
        if not self.ensure_unlocked():
            return EXIT_ERROR
        record = self._find(self.store.load_entries(), args)
        if record is None:
            self.print_error("Entry not found.")
            return EXIT_ERROR

        table = Table(show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Account", Text(record.account_name))
        table.add_row("Username", Text(record.username))
        table.add_row("Password", Text(record.password) if args.reveal else "********")
        table.add_row("Category", record.category.value)
        if record.website:
            table.add_row("Website", Text(record.website))
        if record.notes:
            table.add_row("Notes", Text(record.notes))
        for field in record.custom_fields:
            table.add_row(Text(field.label),
                          "********" if field.is_secret and not args.reveal else Text(field.value))
        if record.totp_secret:
            table.add_row("2FA code", TOTPGenerator.generate_totp(record.totp_secret))
        table.add_row("Updated", record.updated_at.isoformat())
        self.console.print(table)
        return EXIT_OK

    def cmd_delete(self, args) -> int:
        if not self.ensure_unlocked():
            return EXIT_ERROR
        records = self.store.load_entries()
        record = self._find(records, args)
        if record is None:
            self.print_error("Entry not found.")
            return EXIT_ERROR
        self.store.save_entries([r for r in records if r.id != record.id])
        self.print_success(f"Deleted '{record.account_name}'.")
        return EXIT_OK

    def cmd_export_csv(self, args) -> int:
        if not self.ensure_unlocked():
            return EXIT_ERROR
        self.print_warning("CSV exports are PLAINTEXT. Delete the file when done.")
        Path(args.output).write_text(self.store.export_plain_csv(), encoding="utf-8")
        self.print_success(f"Exported to {args.output}")
        return EXIT_OK

    def cmd_export(self, args) -> int:
        if not self.ensure_unlocked():
            return EXIT_ERROR
        if args.plain:
            self.print_warning("JSON exports without encryption are PLAINTEXT.")
            content = self.store.export_json()
        else:
            pw1 = self.prompt_secret("Export Password: ")
            pw2 = self.prompt_secret("Confirm Export Password: ")
            if pw1 != pw2:
                self.print_error("Passwords don't match.")
                return EXIT_ERROR
            content = self.store.export_encrypted(pw1)
        Path(args.output).write_text(content, encoding="utf-8")
        self.print_success(f"Exported to {args.output}")
        return EXIT_OK

    def cmd_import(self, args) -> int:
        if not self.ensure_unlocked():
            return EXIT_ERROR
        try:
            content = Path(args.input).read_text(encoding="utf-8")
        except OSError as e:
            self.print_error(f"Could not read {args.input}: {e}")
            return EXIT_ERROR

        if args.plain:
            count = self.store.import_plain(content)
        else:
            count = self.store.import_encrypted(content, self.prompt_secret("Export Password: "))
        self.print_success(f"Imported {count} entries.")
        return EXIT_OK

    def cmd_hint(self, args) -> int:
        if args.set is None and not args.clear:
            hint = self.store.get_password_hint()
            self.console.print(hint if hint else "No password hint set.", markup=False)
            return EXIT_OK
        if not self.ensure_unlocked():
            return EXIT_ERROR
        self.store.set_password_hint(None if args.clear else args.set)
        self.print_success("Password hint updated.")
        return EXIT_OK

    def cmd_status(self, args) -> int:
        status = self.app.entitlement.get_app_status()
        table = Table(title="LocalVault status", show_header=False)
        table.add_column("Item", style="bold")
        table.add_column("Value")
        table.add_row("Vault", "initialized" if self.store.vault_exists() else "not initialized")
        lockout = self.store.is_locked_out()
        if lockout.locked:
            table.add_row("Lockout", f"{lockout.remaining_seconds}s remaining")
        info = status.license_info
        if status.is_licensed:
            table.add_row("License", self.app.license_service.license_display_name(info.plan_type))
        elif info.requires_transfer:
            table.add_row("License", "bound to another device (transfer required)")
        else:
            table.add_row("License", "none")
        trial = status.trial_info
        if trial.has_trial_been_used:
            table.add_row("Trial", trial.time_remaining)
        table.add_row("Can use app", "yes" if status.can_use_app else "no")
        self.console.print(table)
        return EXIT_OK

    def cmd_activate(self, args) -> int:
        result = self.app.entitlement.activate(args.key)
        if result.success:
            self.print_success(f"Activated ({result.plan_type}).")
            return EXIT_OK
        self.print_error(result.error or "Activation failed.")
        if result.requires_transfer:
            self.console.print(f"Run '{PROG} transfer {args.key}' to move the license here.", markup=False)
        return EXIT_ERROR

    def cmd_transfer(self, args) -> int:
        result = self.app.entitlement.transfer(args.key)
        if result.success:
            self.print_success("License transferred to this device.")
            return EXIT_OK
        self.print_error(result.error or "Transfer failed.")
        return EXIT_ERROR

    def cmd_totp(self, args) -> int:
        secret = args.secret
        if not secret:
            if not self.ensure_unlocked():
                return EXIT_ERROR
            record = self._find(self.store.load_entries(), args)
            if record is None or not record.totp_secret:
                self.print_error("No 2FA secret for that entry.")
                return EXIT_ERROR
            secret = record.totp_secret
        try:
            code = TOTPGenerator.generate_totp(secret)
        except ValueError as e:
            self.print_error(str(e))
            return EXIT_ERROR
        self.console.print(f"[bold]{code}[/bold] (valid {TOTPGenerator.get_time_remaining()}s)")
        return EXIT_OK

    # ======== Parser / dispatch ========

    @staticmethod
    def build_parser() -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog=PROG,
            description="LocalVault - offline password manager",
            epilog=f"For detailed help: {PROG} <command> --help",
        )
        parser.add_argument("--no-color", action="store_true", help="Disable colored output")
        parser.add_argument("--db", help="Path to the vault database")
        parser.add_argument("--version", action="version", version=f"LocalVault {__version__}")

        sub = parser.add_subparsers(dest="command", help="Available commands")

        init = sub.add_parser("init", help="Create a new vault")
        init.add_argument("--hint", help="Password hint (stored unencrypted)")

        sub.add_parser("unlock", help="Check the master password")

        list_cmd = sub.add_parser("list", help="List entries")
        list_cmd.add_argument("--category", "-c", help="Filter by category")
        list_cmd.add_argument("--favorite", "-f", action="store_true", help="Only favorites")

        add = sub.add_parser("add", help="Add an entry")
        add.add_argument("account", help="Account name")
        add.add_argument("--username", "-u")
        add.add_argument("--password", "-p", help="Password (prompted if omitted)")
        add.add_argument("--website", "-w")
        add.add_argument("--notes", "-n")
        add.add_argument("--category", "-c", default="other",
                         choices=[c.value for c in Category])
        add.add_argument("--favorite", "-f", action="store_true")
        add.add_argument("--note", action="store_true", help="Store as a secure note")
        add.add_argument("--totp-secret", help="Base32 2FA secret")

        for name, help_text in (("show", "Show an entry"), ("delete", "Delete an entry")):
            cmd = sub.add_parser(name, help=help_text)
            cmd.add_argument("account", nargs="?", help="Account name")
            cmd.add_argument("--id", help="Entry id")
            if name == "show":
                cmd.add_argument("--reveal", "-r", action="store_true", help="Show secrets")

        csv_cmd = sub.add_parser("export-csv", help="Export to CSV (PLAINTEXT)")
        csv_cmd.add_argument("--output", "-o", required=True)

        export = sub.add_parser("export", help="Export entries (encrypted by default)")
        export.add_argument("--output", "-o", required=True)
        export.add_argument("--plain", action="store_true", help="Unencrypted JSON export")

        imp = sub.add_parser("import", help="Import an export file (replaces entries)")
        imp.add_argument("--input", "-i", required=True)
        imp.add_argument("--plain", action="store_true", help="Input is an unencrypted JSON export")

        hint = sub.add_parser("hint", help="Show or change the password hint")
        hint.add_argument("--set", help="New hint")
        hint.add_argument("--clear", action="store_true")

        sub.add_parser("status", help="Show vault and license status")

        activate = sub.add_parser("activate", help="Activate a license or trial key")
        activate.add_argument("key")

        transfer = sub.add_parser("transfer", help="Transfer a license to this device")
        transfer.add_argument("key")

        totp = sub.add_parser("totp", help="Show a 2FA code")
        totp.add_argument("account", nargs="?", help="Account name")
        totp.add_argument("--id", help="Entry id")
        totp.add_argument("--secret", "-s", help="Base32 secret")

        return parser

    def dispatch(self, args) -> int:
        handlers = {
            "init": self.cmd_init,
            "unlock": self.cmd_unlock,
            "list": self.cmd_list,
            "add": self.cmd_add,
            "show": self.cmd_show,
            "delete": self.cmd_delete,
            "export-csv": self.cmd_export_csv,
            "export": self.cmd_export,
            "import": self.cmd_import,
            "hint": self.cmd_hint,
            "status": self.cmd_status,
            "activate": self.cmd_activate,
            "transfer": self.cmd_transfer,
            "totp": self.cmd_totp,
        }
        handler = handlers.get(args.command)
        if handler is None:
            return EXIT_ERROR
        try:
            return handler(args)
        except (ValidationError, DecryptionError, VaultLockedError) as e:
            self.print_error(str(e))
            return EXIT_ERROR
        except LocalVaultError as e:
            self.print_error(f"{e.kind.value}: {e}")
            return EXIT_ERROR
        finally:
            self.store.lock()


def main(argv: Optional[List[str]] = None) -> int:
    parser = LocalVaultCLI.build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return EXIT_OK

    cli = LocalVaultCLI(app=build_app(db_path=args.db), no_color=args.no_color)
    try:
        return cli.dispatch(args)
    except KeyboardInterrupt:
        cli.print_error("Interrupted by user.")
        return 130
    finally:
        cli.app.close()


if __name__ == "__main__":
    sys.exit(main())
