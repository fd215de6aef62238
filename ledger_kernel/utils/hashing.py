"""
Deterministic hashing utilities.

All hashing in the ledger kernel must be deterministic and reproducible.
This module provides the canonical hashing functions used for audit
checksums and the audit hash chain.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Decimal):
        # Fixed-point, trailing zeros removed: 1000.00 -> "1000", 0.50 -> "0.5"
        normalized = obj.normalize()
        if normalized == 0:
            return "0"
        return format(normalized, "f")
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    if isinstance(obj, bytes):
        return obj.hex()

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string.

    - Keys are sorted alphabetically
    - No whitespace
    - Consistent handling of special types (Decimal, datetime, UUID, Enum)
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def to_json_safe(data: Any) -> Any:
    """Reduce a structure to plain JSON types exactly as it will be hashed.

    Whatever is persisted in a JSON column goes through here first, so the
    value read back hashes identically to the value that was written.
    """
    if data is None:
        return None
    return json.loads(canonicalize_json(data))


def hash_payload(payload: dict) -> str:
    """
    Compute SHA-256 hash of a payload.

    Returns:
        Hex-encoded SHA-256 hash (64 characters).
    """
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_audit_entry(
    seq: int,
    action: str,
    entity_type: str,
    entity_id: str,
    actor_id: str,
    actor_role: str | None,
    risk_level: str,
    correlation_id: str,
    occurred_at: datetime,
    content_hash: str,
    prev_checksum: str | None,
) -> str:
    """
    Compute the checksum of an audit log entry.

    Covers every stored field, the hash of the before/after/context content,
    and the previous entry's checksum, which chains the entries together.
    """
    components = [
        str(seq),
        action,
        entity_type,
        str(entity_id),
        str(actor_id),
        actor_role or "",
        risk_level,
        correlation_id,
        occurred_at.isoformat(),
        content_hash,
        prev_checksum or "GENESIS",
    ]
    data = "|".join(components)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()
