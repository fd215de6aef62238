"""Utility modules for the ledger kernel."""

from ledger_kernel.utils.hashing import (
    canonicalize_json,
    hash_audit_entry,
    hash_payload,
    to_json_safe,
)

__all__ = [
    "hash_payload",
    "hash_audit_entry",
    "canonicalize_json",
    "to_json_safe",
]
