import hashlib
import hmac

from src.auth.credentials import (
    compute_signature,
    constant_time_equals,
    generate_credential,
    hash_credential,
    parse_signature_header,
    verify_credential,
)
from src.auth.dependencies import is_internal_caller
from src.config import settings


def test_credentials_are_stored_as_sha256_hex():
    assert hash_credential("abc") == hashlib.sha256(b"abc").hexdigest()
    assert verify_credential("abc", hash_credential("abc")) is True
    assert verify_credential("abc", hash_credential("abc").upper()) is True
    assert verify_credential("abd", hash_credential("abc")) is False
    assert verify_credential("abc", None) is False


def test_generated_credentials_are_unique_and_urlsafe():
    first, second = generate_credential(), generate_credential()
    assert first != second
    assert len(first) >= 43
    assert all(ch.isalnum() or ch in "-_" for ch in first)


def test_constant_time_equals():
    assert constant_time_equals("abcdef", "abcdef") is True
    assert constant_time_equals("abcdef", "abcdeg") is False
    assert constant_time_equals("abc", "abcd") is False
    assert constant_time_equals("", "") is True


def test_signature_covers_timestamp_and_body():
    expected = hmac.new(b"secret", b'1700000000.{"phone":"333"}', hashlib.sha256).hexdigest()
    assert compute_signature("secret", "1700000000", '{"phone":"333"}') == expected
    assert compute_signature("secret", "1700000001", '{"phone":"333"}') != expected


def test_signature_header_parsing():
    digest = "A" * 64
    assert parse_signature_header(f"sha256={digest}") == "a" * 64
    assert parse_signature_header(f"  sha256={digest} ") == "a" * 64
    assert parse_signature_header(digest) is None
    assert parse_signature_header("sha256=" + "g" * 64) is None
    assert parse_signature_header("sha256=" + "a" * 63) is None
    assert parse_signature_header("sha1=" + "a" * 64) is None


def test_internal_caller_accepts_service_role_or_internal_token(monkeypatch):
    monkeypatch.setattr(settings, "sheets_internal_token", "internal-123")

    assert is_internal_caller(f"Bearer {settings.supabase_service_role_key}", None) is True
    assert is_internal_caller(None, "internal-123") is True
    assert is_internal_caller("Bearer wrong", "wrong") is False
    assert is_internal_caller(settings.supabase_service_role_key, None) is False

    monkeypatch.setattr(settings, "sheets_internal_token", None)
    assert is_internal_caller(None, "internal-123") is False
