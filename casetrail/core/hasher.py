"""
Canonical hashing of ledger payloads and uploaded content.

The simulated ledger derives transaction ids from hash_transaction()
and in-process content identifiers come from hash_bytes(); changing
the canonical form changes every id already issued, which is what the
"__canon_v" marker is for.

Canonical form:
    compact ASCII JSON, keys sorted at every level, None-valued keys
    dropped (empty strings and lists kept), datetimes as UTC with
    microseconds and a Z suffix, UUIDs lowercase, enums by value,
    Decimals as strings. Floats, sets and naive datetimes are refused.
"""

import hashlib
import hmac
import json
import re
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID

CANON_VERSION = 1

_HEX64 = re.compile(r"^[0-9a-f]{64}$")


class CanonicalSerializationError(Exception):
    pass


def _utc_stamp(value: datetime, path: str) -> str:
    if value.tzinfo is None:
        raise CanonicalSerializationError(f"Datetime at {path} is timezone-naive")
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _canonical_value(value: Any, path: str) -> Any:
    # Enum first: LedgerMethod and friends are also str
    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return _utc_stamp(value, path)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, float):
        raise CanonicalSerializationError(f"Refusing float at {path}; pass a Decimal or str")
    if isinstance(value, (list, tuple)):
        return [_canonical_value(item, f"{path}[{i}]") for i, item in enumerate(value)]
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="python")
    if isinstance(value, dict):
        return _canonical_mapping(value, path)
    raise CanonicalSerializationError(f"Cannot canonicalize {type(value).__name__} at {path}")


def _canonical_mapping(data: dict, path: str) -> dict:
    out = {}
    for key, raw in data.items():
        if not isinstance(key, str):
            raise CanonicalSerializationError(f"Non-string key {key!r} at {path or '<root>'}")
        value = _canonical_value(raw, f"{path}.{key}" if path else key)
        if value is not None:
            out[key] = value
    return out


class Hasher:
    """SHA-256 over the canonical JSON form."""

    @staticmethod
    def canonicalize(data: Any) -> str:
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")
        if not isinstance(data, dict):
            raise CanonicalSerializationError(f"Expected a mapping, got {type(data).__name__}")
        body = {"__canon_v": CANON_VERSION, **_canonical_mapping(data, "")}
        return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=True, allow_nan=False)

    @classmethod
    def hash_data(cls, data: Any) -> str:
        return cls.hash_bytes(cls.canonicalize(data).encode("utf-8"))

    @classmethod
    def hash_transaction(cls, payload: dict, previous_hash: Optional[str] = None) -> str:
        """
        Hash a transaction payload, linked to the one before it.

        The first transaction hashes its canonical payload alone; every
        later one hashes "<previous_hash>:<canonical payload>".
        """
        canonical = cls.canonicalize(payload)
        if previous_hash is None:
            return cls.hash_bytes(canonical.encode("utf-8"))

        previous = previous_hash.lower()
        if not _HEX64.match(previous):
            raise CanonicalSerializationError(
                f"Invalid previous_hash {previous_hash!r}: expected 64 hex characters"
            )
        return cls.hash_bytes(f"{previous}:{canonical}".encode("utf-8"))

    @classmethod
    def verify_transaction(cls, payload: dict, expected_hash: str, previous_hash: Optional[str] = None) -> bool:
        try:
            computed = cls.hash_transaction(payload, previous_hash)
        except CanonicalSerializationError:
            return False
        return hmac.compare_digest(computed, expected_hash.lower())

    @staticmethod
    def hash_bytes(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()
