"""
Deterministic hashing utilities.

Used by the transfer audit chain and by the configuration loader's
checksum.  All hashing must be deterministic and reproducible.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """Serialize types json does not handle natively."""
    if isinstance(obj, Decimal):
        # Normalized so 10 and 10.000 hash identically
        return str(obj.normalize())
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string: sorted keys, no whitespace,
    consistent handling of Decimal, datetime, UUID and enums.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
        ensure_ascii=False,
    )


def hash_payload(payload: dict) -> str:
    """Hex-encoded SHA-256 of the canonical JSON form of ``payload``."""
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_audit_entry(
    entity_type: str,
    entity_id: str,
    action: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """
    Chain hash of one audit entry.

    Includes the previous entry's hash, so editing any entry breaks every
    later link.
    """
    components = [
        entity_type,
        str(entity_id),
        action,
        payload_hash,
        prev_hash or "GENESIS",
    ]
    return hashlib.sha256("|".join(components).encode("utf-8")).hexdigest()


def hash_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
