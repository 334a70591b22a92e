import pytest

from localvault.totp_generator import TOTPGenerator

# RFC 6238 appendix B seed "12345678901234567890" in Base32
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
VALID_SECRET = "JBSWY3DPEHPK3PXP"


@pytest.mark.parametrize("at,expected", [
    (59, "287082"),
    (1111111109, "081804"),
    (1234567890, "005924"),
    (2000000000, "279037"),
])
def test_rfc6238_sha1_vectors(at, expected):
    assert TOTPGenerator.generate_totp(RFC_SECRET, at=at) == expected

def test_generate_totp_accepts_spaced_lowercase_secret():
    spaced = "jbsw y3dp ehpk 3pxp"
    assert TOTPGenerator.generate_totp(spaced, at=0) == TOTPGenerator.generate_totp(VALID_SECRET, at=0)

def test_generate_totp_invalid_secret():
    with pytest.raises(ValueError):
        TOTPGenerator.generate_totp("not*base32!", at=0)

@pytest.mark.parametrize("secret,ok", [
    (VALID_SECRET, True),
    (RFC_SECRET, True),
    ("JBSWY3DP", False),        # too short
    ("1111111111111111", False),  # digits outside Base32
    ("", False),
    (None, False),
])
def test_is_valid_secret(secret, ok):
    assert TOTPGenerator.is_valid_secret(secret) is ok

def test_time_remaining():
    assert TOTPGenerator.get_time_remaining(now=0) == 30
    assert TOTPGenerator.get_time_remaining(now=29) == 1
    assert TOTPGenerator.get_time_remaining(now=45) == 15

def test_uri_roundtrip():
    uri = TOTPGenerator.generate_totp_uri(VALID_SECRET, "LocalVault", "alice@example.com")
    assert uri.startswith("otpauth://totp/")
    assert TOTPGenerator.parse_totp_uri(uri) == VALID_SECRET

@pytest.mark.parametrize("uri", [
    "https://example.com/?secret=JBSWY3DPEHPK3PXP",
    "otpauth://hotp/x?secret=JBSWY3DPEHPK3PXP",
    "otpauth://totp/x?secret=bad",
    "otpauth://totp/x",
])
def test_parse_totp_uri_rejects(uri):
    assert TOTPGenerator.parse_totp_uri(uri) is None

def test_generate_uri_rejects_invalid_secret():
    with pytest.raises(ValueError):
        TOTPGenerator.generate_totp_uri("bad", "LocalVault", "a")
