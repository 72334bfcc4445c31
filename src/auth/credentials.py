from __future__ import annotations

import hashlib
import hmac
import re
import secrets


_SIGNATURE_HEADER_RE = re.compile(r"^sha256=([0-9a-fA-F]{64})$")


def hash_credential(value: str) -> str:
    """SHA-256 hex digest of an API key or webhook secret, as stored on the source row."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def generate_credential() -> str:
    """Random 32-byte credential, URL-safe. Shown once, only its hash is persisted."""
    return secrets.token_urlsafe(32)


def constant_time_equals(left: str, right: str) -> bool:
    """
    Compare two strings without short-circuiting on the first differing character.

    Only a length mismatch returns early; callers compare fixed-length hex digests
    so the length carries no secret.
    """
    if len(left) != len(right):
        return False
    result = 0
    for a, b in zip(left, right):
        result |= ord(a) ^ ord(b)
    return result == 0


def verify_credential(provided: str, stored_hash: str | None) -> bool:
    if not stored_hash:
        return False
    return constant_time_equals(hash_credential(provided), stored_hash.lower())


def compute_signature(secret: str, timestamp: str, body_text: str) -> str:
    signature_input = f"{timestamp}.{body_text}"
    return hmac.new(secret.encode("utf-8"), signature_input.encode("utf-8"), hashlib.sha256).hexdigest()


def parse_signature_header(value: str) -> str | None:
    """Extract the hex digest from a `sha256=<hex>` header. Returns None if malformed."""
    match = _SIGNATURE_HEADER_RE.match(value.strip())
    if not match:
        return None
    return match.group(1).lower()
