"""
LocalVault Crypto Engine - Core Cryptographic Operations
Handles : Key derivation, encryption/decryption, HMAC signing, random generation
"""
import os
import json
import base64
import binascii
import hashlib
import hmac
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from localvault.errors import DecryptionError

PBKDF2_ITERATIONS = 100_000
KEY_LENGTH = 32            # AES-256
SALT_LENGTH = 32           # vault salt, 256 bits
EXPORT_SALT_LENGTH = 16    # salt embedded in encrypted export files
NONCE_LENGTH = 12          # 96-bit GCM IV
TAG_LENGTH = 16

_AUTH_HASH_CONTEXT = b"localvault-auth-hash-v1"
_SIGNATURE_FIELDS = ("signature", "signed_at")

BytesLike = Union[bytes, bytearray]

"""
==========================================================================
PART A : Random Generation
==========================================================================
"""

def secure_random_bytes(length: int) -> bytes:
    """
    Return ``length`` bytes from the OS CSPRNG.

    Raises:
        ValueError: if length is negative
    """
    if length < 0:
        raise ValueError("length must be non-negative")
    return secrets.token_bytes(length)


def generate_salt(length: int = SALT_LENGTH) -> bytes:
    """
    Generate the per-vault PBKDF2 salt.

    Args:
        length: salt length in bytes (default: 32 bytes = 256 bits)

    Security:
        - Generated once per vault and persisted in the clear
        - Changing it invalidates every existing ciphertext
    """
    return os.urandom(length)


def generate_nonce(length: int = NONCE_LENGTH) -> bytes:
    """
    Generate a fresh 96-bit IV for AES-256-GCM.

    Security:
        - MUST be unique for every encryption with the same key
        - Random 96-bit IVs keep the collision bound far below 2^-32
          for any realistic number of vault saves
    """
    return os.urandom(length)

"""
==========================================================================
PART B : Key Derivation (PBKDF2-HMAC-SHA256)
==========================================================================
"""

def derive_key(password: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """
    Derive the AES-256-GCM vault key from the master password.

    Args:
        password: master password (UTF-8 string)
        salt: 32-byte vault salt
        iterations: PBKDF2 iteration count (fixed at 100,000 for vault data)

    Returns:
        32-byte symmetric key. Deterministic for the same password and salt.
    """
    if not isinstance(password, str):
        raise TypeError("password must be a string")
    if not salt:
        raise ValueError("salt must be non-empty")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=bytes(salt),
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def hash_for_verification(
        password: Union[str, bytes],
        salt: bytes,
        iterations: int = PBKDF2_ITERATIONS
) -> bytes:
    """
    Compute the stored password-verification hash.

    Args:
        password: master password
        salt: vault salt (same salt as key derivation)
        iterations: PBKDF2 iteration count

    Returns:
        32-byte hash, stored base64-encoded

    Security:
        - Same PBKDF2 parameters as the vault key but over a
          domain-separated input, so the stored hash is never the key
        - Lets unlock reject a wrong password without touching vault data
    """
    if isinstance(password, str):
        password_bytes = password.encode("utf-8")
    else:
        password_bytes = bytes(password)

    return hashlib.pbkdf2_hmac(
        "sha256",
        _AUTH_HASH_CONTEXT + password_bytes,
        bytes(salt),
        iterations,
        dklen=KEY_LENGTH,
    )

"""
=============================================================================
 PART C: ENCRYPTION/DECRYPTION (AES-256-GCM)
=============================================================================
"""

def _check_key(key: BytesLike) -> bytes:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
        raise ValueError("AES-256-GCM key must be 32 bytes")
    return bytes(key)


def encrypt(key: BytesLike, plaintext: str) -> str:
    """
    Encrypt a string with AES-256-GCM.

    Returns:
        base64(IV || ciphertext || tag) as one opaque string
    """
    if not isinstance(plaintext, str):
        raise TypeError("Encryption failed: plaintext must be a string")
    nonce = generate_nonce()
    sealed = AESGCM(_check_key(key)).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + sealed).decode("ascii")


def decrypt(key: BytesLike, blob: str) -> str:
    """
    Decrypt a blob produced by :func:`encrypt`.

    Raises:
        DecryptionError: on malformed base64, truncated input, tag mismatch
            or a wrong key. The cause is deliberately not reported.
    """
    aes_key = _check_key(key)
    try:
        combined = base64.b64decode(blob, validate=True)
        if len(combined) < NONCE_LENGTH + TAG_LENGTH:
            raise ValueError("ciphertext too short")
        nonce, sealed = combined[:NONCE_LENGTH], combined[NONCE_LENGTH:]
        return AESGCM(aes_key).decrypt(nonce, sealed, None).decode("utf-8")
    except (InvalidTag, binascii.Error, ValueError, TypeError) as e:
        # UnicodeDecodeError is a ValueError
        raise DecryptionError() from e


def encrypt_with_password(password: str, plaintext: str) -> str:
    """
    Encrypt with a key derived from ``password`` and a fresh salt.

    Used for portable exports. The output is base64(salt16 || IV || ciphertext || tag)
    and is independent of any vault key.
    """
    salt = generate_salt(EXPORT_SALT_LENGTH)
    key = derive_key(password, salt)
    nonce = generate_nonce()
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(salt + nonce + sealed).decode("ascii")


def decrypt_with_password(password: str, blob: str) -> str:
    """
    Reverse :func:`encrypt_with_password`.

    Raises:
        DecryptionError: wrong password or damaged data, indistinguishably
    """
    try:
        combined = base64.b64decode(blob, validate=True)
        header = EXPORT_SALT_LENGTH + NONCE_LENGTH
        if len(combined) < header + TAG_LENGTH:
            raise ValueError("export payload too short")
        salt = combined[:EXPORT_SALT_LENGTH]
        nonce = combined[EXPORT_SALT_LENGTH:header]
        key = derive_key(password, salt)
        return AESGCM(key).decrypt(nonce, combined[header:], None).decode("utf-8")
    except (InvalidTag, binascii.Error, ValueError, TypeError) as e:
        raise DecryptionError("Failed to decrypt export. Check your password.") from e

"""
=============================================================================
 PART D: COMPARISON, HMAC AND SIGNED RECORDS
=============================================================================
"""

def constant_time_equal(a: Union[str, BytesLike], b: Union[str, BytesLike]) -> bool:
    """
    Compare two values without an early exit.

    Walks the longer of the two inputs, XOR-accumulating every position, so
    the running time depends only on the longer length. Returns True only if
    the accumulator is zero and the lengths matched.
    """
    a_bytes = a.encode("utf-8") if isinstance(a, str) else bytes(a)
    b_bytes = b.encode("utf-8") if isinstance(b, str) else bytes(b)

    length = max(len(a_bytes), len(b_bytes))
    diff = len(a_bytes) ^ len(b_bytes)
    for i in range(length):
        x = a_bytes[i] if i < len(a_bytes) else 0
        y = b_bytes[i] if i < len(b_bytes) else 0
        diff |= x ^ y
    return diff == 0


def compute_hmac(data: bytes, key: bytes, algorithm: str = "sha256") -> bytes:
    """
    Compute an HMAC digest.

    Args:
        data: message bytes
        key: secret key
        algorithm: digest name (default: sha256)
    """
    if isinstance(key, bytearray):
        key = bytes(key)
    if isinstance(data, bytearray):
        data = bytes(data)
    return hmac.new(key, data, algorithm).digest()


def canonical_json(record: Mapping[str, Any]) -> str:
    """
    Serialize a record with lexicographically sorted keys and no whitespace.

    ``signature`` and ``signed_at`` are excluded; they are not covered by the
    signature.
    """
    payload = {k: v for k, v in record.items() if k not in _SIGNATURE_FIELDS}
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _record_hmac_hex(record: Mapping[str, Any], secret: str) -> str:
    digest = compute_hmac(canonical_json(record).encode("utf-8"), secret.encode("utf-8"))
    return digest.hex()


def sign_record(record: Mapping[str, Any], secret: str) -> Dict[str, Any]:
    """
    Return a copy of ``record`` with ``signature`` and ``signed_at`` set.

    The licensing server performs the same computation; this helper exists
    for development builds and tests.
    """
    if not secret:
        raise ValueError("A signing secret is required")
    signed = {k: v for k, v in record.items() if k not in _SIGNATURE_FIELDS}
    signed["signature"] = _record_hmac_hex(signed, secret)
    signed["signed_at"] = datetime.now(timezone.utc).isoformat()
    return signed


def verify_signature(
        record: Mapping[str, Any],
        secret: str,
        allow_unsigned: bool = False
) -> bool:
    """
    Verify the HMAC-SHA256 signature of a signed record.

    Args:
        record: signed license or trial record
        secret: shared signing secret
        allow_unsigned: development-build escape hatch; accepts records with
            no signature, and any record when no secret is configured

    Returns:
        True if the signature matches the canonical form of the record
    """
    signature = record.get("signature")

    if allow_unsigned and not signature:
        return True

    if not signature or not isinstance(signature, str):
        return False

    if not secret:
        return allow_unsigned

    try:
        expected = _record_hmac_hex(record, secret)
    except (TypeError, ValueError):
        # Unserializable field values cannot have been signed
        return False
    return constant_time_equal(signature.lower(), expected)
