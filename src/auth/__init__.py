from src.auth.credentials import (
    compute_signature,
    constant_time_equals,
    generate_credential,
    hash_credential,
    parse_signature_header,
    verify_credential,
)
from src.auth.dependencies import is_internal_caller, require_internal_caller

__all__ = [
    "compute_signature",
    "constant_time_equals",
    "generate_credential",
    "hash_credential",
    "parse_signature_header",
    "verify_credential",
    "is_internal_caller",
    "require_internal_caller",
]
