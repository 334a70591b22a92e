"""
LocalVault TOTP Generator

Implements Time-based One-Time Password algorithm (RFC 6238) for the 2FA
secrets stored on vault entries.
"""

import binascii
import time
from typing import Optional
from urllib.parse import parse_qs, urlparse

import pyotp


class TOTPGenerator:
    """
    TOTP generator compliant with RFC 6238
    """

    @staticmethod
    def normalize_secret(secret: str) -> str:
        """Uppercase and drop spaces/dashes, the way secrets are often displayed."""
        return "".join(ch for ch in str(secret) if ch not in " -").upper()

    @staticmethod
    def is_valid_secret(secret: Optional[str]) -> bool:
        """
        Check that a secret is non-empty Base32.
        """
        if not secret or not isinstance(secret, str):
            return False
        cleaned = TOTPGenerator.normalize_secret(secret)
        if len(cleaned.rstrip("=")) < 16:
            return False
        try:
            pyotp.TOTP(cleaned).byte_secret()
        except (TypeError, ValueError, binascii.Error):
            return False
        return True

    @staticmethod
    def generate_totp(secret: str, time_step: int = 30, at: Optional[float] = None) -> str:
        """
        Generate a 6-digit TOTP code.

        Args:
            secret: Base32 encoded TOTP secret key.
            time_step: Validity duration of TOTP in seconds (default 30).
            at: Unix time to generate for (default: now).

        Returns:
            6-digit TOTP string.
        """
        try:
            totp = pyotp.TOTP(TOTPGenerator.normalize_secret(secret), interval=time_step)
            return totp.at(at if at is not None else time.time())
        except (TypeError, ValueError, binascii.Error) as e:
            raise ValueError("Invalid TOTP secret. Must be a valid Base32 string.") from e

    @staticmethod
    def get_time_remaining(time_step: int = 30, now: Optional[float] = None) -> int:
        """
        Get seconds remaining until the current TOTP code expires.

        Returns:
            Seconds remaining (1 - time_step).
        """
        current_time = int(now if now is not None else time.time())
        return time_step - (current_time % time_step)

    @staticmethod
    def parse_totp_uri(uri: str) -> Optional[str]:
        """
        Parse an otpauth:// URI and extract the secret key.

        Returns:
            Extracted Base32 TOTP secret if valid, else None.
        """
        if not isinstance(uri, str):
            return None
        parsed = urlparse(uri.strip())
        if parsed.scheme != "otpauth" or parsed.netloc != "totp":
            return None
        secret = parse_qs(parsed.query).get("secret", [None])[0]
        if secret and TOTPGenerator.is_valid_secret(secret):
            return TOTPGenerator.normalize_secret(secret)
        return None

    @staticmethod
    def generate_totp_uri(secret: str, issuer: str, account: str) -> str:
        """
        Generate an otpauth:// URI for provisioning.

        Raises:
            ValueError: if the secret is not valid Base32
        """
        if not TOTPGenerator.is_valid_secret(secret):
            raise ValueError("Invalid TOTP secret. Must be a valid Base32 string.")
        totp = pyotp.TOTP(TOTPGenerator.normalize_secret(secret))
        return totp.provisioning_uri(name=account, issuer_name=issuer)
