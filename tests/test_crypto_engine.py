import base64
import json

import pytest

from localvault.crypto_engine import (
    EXPORT_SALT_LENGTH,
    NONCE_LENGTH,
    PBKDF2_ITERATIONS,
    TAG_LENGTH,
    canonical_json,
    compute_hmac,
    constant_time_equal,
    decrypt,
    decrypt_with_password,
    derive_key,
    encrypt,
    encrypt_with_password,
    generate_nonce,
    generate_salt,
    hash_for_verification,
    secure_random_bytes,
    sign_record,
    verify_signature,
)
from localvault.errors import DecryptionError, ErrorKind

# ---------------------------------------------------------------------------
# Random Generation
# ---------------------------------------------------------------------------

def test_generate_salt_length_and_uniqueness():
    s1 = generate_salt()
    s2 = generate_salt()
    assert isinstance(s1, bytes)
    assert len(s1) == 32
    assert s1 != s2

def test_generate_nonce_length_and_uniqueness():
    n1 = generate_nonce()
    n2 = generate_nonce()
    assert len(n1) == NONCE_LENGTH == 12
    assert n1 != n2

def test_secure_random_bytes_rejects_negative():
    assert len(secure_random_bytes(0)) == 0
    with pytest.raises(ValueError):
        secure_random_bytes(-1)

# ---------------------------------------------------------------------------
# Key Derivation
# ---------------------------------------------------------------------------

def test_default_iteration_count_is_100k():
    assert PBKDF2_ITERATIONS == 100_000

def test_derive_key_deterministic_and_32_bytes():
    salt = generate_salt()
    k1 = derive_key("password", salt, 1000)
    k2 = derive_key("password", salt, 1000)
    assert k1 == k2
    assert len(k1) == 32

def test_derive_key_differs_per_salt_and_password():
    salt = generate_salt()
    assert derive_key("password", salt, 1000) != derive_key("password", generate_salt(), 1000)
    assert derive_key("password", salt, 1000) != derive_key("Password", salt, 1000)

def test_derive_key_rejects_bad_input():
    with pytest.raises(TypeError):
        derive_key(b"bytes", generate_salt(), 1000)
    with pytest.raises(ValueError):
        derive_key("pw", b"", 1000)

def test_verification_hash_is_not_the_key():
    salt = generate_salt()
    key = derive_key("pw", salt, 1000)
    auth = hash_for_verification("pw", salt, 1000)
    assert len(auth) == 32
    assert auth != key
    assert hash_for_verification(b"pw", salt, 1000) == auth

# ---------------------------------------------------------------------------
# AES-256-GCM
# ---------------------------------------------------------------------------

@pytest.fixture
def key():
    return derive_key("pw", generate_salt(), 1000)

def test_encrypt_decrypt_roundtrip_unicode(key):
    text = "héllo wörld ✓ 密码"
    assert decrypt(key, encrypt(key, text)) == text

def test_encrypt_layout_iv_ciphertext_tag(key):
    blob = encrypt(key, "abc")
    raw = base64.b64decode(blob)
    assert len(raw) == NONCE_LENGTH + 3 + TAG_LENGTH

def test_encrypt_uses_fresh_iv(key):
    assert encrypt(key, "same") != encrypt(key, "same")

def test_decrypt_wrong_key_raises(key):
    blob = encrypt(key, "secret")
    other = derive_key("other", generate_salt(), 1000)
    with pytest.raises(DecryptionError) as exc:
        decrypt(other, blob)
    assert exc.value.kind == ErrorKind.DECRYPTION

def test_decrypt_tampered_ciphertext_raises(key):
    raw = bytearray(base64.b64decode(encrypt(key, "secret")))
    raw[-1] ^= 0x01
    with pytest.raises(DecryptionError):
        decrypt(key, base64.b64encode(bytes(raw)).decode())

@pytest.mark.parametrize("blob", ["not base64 !!", "", base64.b64encode(b"short").decode()])
def test_decrypt_malformed_input_raises(key, blob):
    with pytest.raises(DecryptionError):
        decrypt(key, blob)

def test_encrypt_rejects_bad_key():
    with pytest.raises(ValueError):
        encrypt(b"short", "x")

# ---------------------------------------------------------------------------
# Password-based (export) encryption
# ---------------------------------------------------------------------------

def test_encrypt_with_password_layout_and_roundtrip():
    blob = encrypt_with_password("export-pw", "payload")
    raw = base64.b64decode(blob)
    assert len(raw) == EXPORT_SALT_LENGTH + NONCE_LENGTH + len("payload") + TAG_LENGTH
    assert decrypt_with_password("export-pw", blob) == "payload"

def test_decrypt_with_wrong_password_raises():
    blob = encrypt_with_password("export-pw", "payload")
    with pytest.raises(DecryptionError):
        decrypt_with_password("nope", blob)

# ---------------------------------------------------------------------------
# Comparison / HMAC / signing
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("a,b,expected", [
    ("abc", "abc", True),
    ("abc", "abd", False),
    ("abc", "abcd", False),
    ("", "", True),
    (b"\x00", b"", False),
])
def test_constant_time_equal(a, b, expected):
    assert constant_time_equal(a, b) is expected

def test_compute_hmac_known_vector():
    # RFC 4231 test case 2
    digest = compute_hmac(b"what do ya want for nothing?", b"Jefe")
    assert digest.hex() == "5bdcc146bf60754e6a042426089575c75a003f089d2739839dec58b964ec3843"

def test_canonical_json_sorts_and_excludes_signature_fields():
    text = canonical_json({"b": 1, "a": "x", "signature": "s", "signed_at": "t"})
    assert text == '{"a":"x","b":1}'

def test_sign_and_verify_record():
    record = sign_record({"license_key": "PERS-AAAA-BBBB-CCCC", "device_id": "d"}, "secret")
    assert len(record["signature"]) == 64
    assert verify_signature(record, "secret") is True
    assert verify_signature(record, "other") is False

def test_verify_detects_tampering():
    record = sign_record({"plan_type": "personal", "device_id": "d"}, "secret")
    record["plan_type"] = "family"
    assert verify_signature(record, "secret") is False

def test_signature_ignores_signed_at_changes():
    record = sign_record({"plan_type": "personal"}, "secret")
    record["signed_at"] = "2020-01-01T00:00:00Z"
    assert verify_signature(record, "secret") is True

def test_unsigned_records_need_explicit_allowance():
    record = {"plan_type": "personal", "device_id": "d"}
    assert verify_signature(record, "secret") is False
    assert verify_signature(record, "secret", allow_unsigned=True) is True

def test_missing_secret_rejects_signed_record():
    record = sign_record({"a": 1}, "secret")
    assert verify_signature(record, "") is False

def test_sign_record_requires_secret():
    with pytest.raises(ValueError):
        sign_record({"a": 1}, "")

def test_sign_record_output_is_json_serializable():
    record = sign_record({"a": 1}, "secret")
    assert json.loads(json.dumps(record)) == record
