import pytest

from localvault.sanitization import (
    MAX_PASSWORD_LEN,
    escape_html,
    sanitize_notes,
    sanitize_password,
    sanitize_text_field,
    sanitize_url,
    strip_markup,
)


def test_text_field_strips_markup_controls_and_whitespace():
    assert sanitize_text_field("  <b>Bank</b>\x00\n ") == "Bank"
    assert sanitize_text_field("a<script>alert(1)</script>b") == "ab"

def test_text_field_length_cap():
    assert len(sanitize_text_field("x" * 500)) == 200
    assert len(sanitize_text_field("x" * 600, 500)) == 500

@pytest.mark.parametrize("value,expected", [(None, ""), (42, "42"), (True, ""), ([1], "")])
def test_text_field_non_strings(value, expected):
    assert sanitize_text_field(value) == expected

def test_notes_keep_newlines_and_tabs():
    assert sanitize_notes("a\r\nb\tc\x07") == "a\nb\tc"

def test_password_keeps_surrounding_spaces_and_symbols():
    assert sanitize_password(" p@ss <word> ") == " p@ss <word> "
    assert sanitize_password("ab\x00c") == "abc"
    assert len(sanitize_password("x" * 5000)) == MAX_PASSWORD_LEN

def test_unpaired_surrogates_dropped():
    assert sanitize_password("ok\ud800") == "ok"

@pytest.mark.parametrize("value,expected", [
    ("https://bank.example", "https://bank.example"),
    ("bank.example/login", "https://bank.example/login"),
    ("javascript:alert(1)", ""),
    ("localhost:8080", "https://localhost:8080"),
    ("", ""),
])
def test_sanitize_url(value, expected):
    assert sanitize_url(value) == expected

def test_strip_markup_keeps_plain_comparisons():
    assert strip_markup("1 < 2 and 3 > 2") == "1 < 2 and 3 > 2"

def test_escape_html():
    assert escape_html("<a href=\"x\">'&'</a>") == "&lt;a href=&quot;x&quot;&gt;&#x27;&amp;&#x27;&lt;/a&gt;"
