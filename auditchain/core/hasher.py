"""
Chain Hashing

Canonical JSON and the SHA-256 chain hash. Every stored entry_hash was
produced here, so the output of this module is a compatibility contract:
a change that alters a single byte of canonical output must bump
SERIALIZATION_VERSION, or every existing chain stops verifying.

CANONICAL JSON (version 1):
- "__canon_v": 1 is added at the top level of every payload
- Object keys must be strings and are sorted by code point, recursively
- None-valued object keys are dropped; empty strings/lists/objects stay
- datetime: aware only, converted to UTC, YYYY-MM-DDTHH:MM:SS.ffffffZ
- date: YYYY-MM-DD
- UUID: lowercase; Enum: its value; Decimal: str(), finite only
- float: rejected (amounts and measures travel as strings or Decimal)
- bytes, set: rejected
- Output: compact separators, ASCII-escaped, NaN disallowed

CHAIN HASH:
    entry_hash = SHA256(canonical_payload + ":" + prev_hash + ":" + sequence)

prev_hash is always 64 lowercase hex characters and sequence is base-10,
so the input is unambiguous when read from the right. Sequence 0 of every
chain links to GENESIS_HASH, a constant never derived from data.
"""

import hashlib
import hmac
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable
from uuid import UUID


GENESIS_HASH = "0" * 64

HASH_ALGORITHM = "sha256"

CANON_VERSION_KEY = "__canon_v"

_HEX_DIGITS = frozenset("0123456789abcdef")


class CanonicalSerializationError(Exception):
    """A value has no deterministic canonical form."""


def _fail(message: str) -> Callable[[Any, str], Any]:
    def reject(value: Any, path: str) -> Any:
        raise CanonicalSerializationError(f"{message} (at {path or '<root>'})")
    return reject


class Hasher:
    """
    Canonical serialization and hashing.

    All methods are pure; the class only namespaces them.
    """

    SERIALIZATION_VERSION = 1

    GENESIS_HASH = GENESIS_HASH

    # (type, encoder) pairs, filled in below the class
    _RULES: list = []

    # ============================================================
    # CANONICAL JSON
    # ============================================================

    @staticmethod
    def _format_datetime(value: datetime, path: str) -> str:
        if value.tzinfo is None:
            raise CanonicalSerializationError(
                f"Naive datetime at {path or '<root>'}: timestamps must carry a timezone"
            )
        utc = value.astimezone(timezone.utc)
        return f"{utc:%Y-%m-%dT%H:%M:%S}.{utc.microsecond:06d}Z"

    @staticmethod
    def _format_decimal(value: Decimal, path: str) -> str:
        if not value.is_finite():
            raise CanonicalSerializationError(f"Non-finite Decimal at {path or '<root>'}")
        return str(value)

    @classmethod
    def _rules(cls) -> list[tuple[type | tuple[type, ...], Callable[[Any, str], Any]]]:
        # Order matters: bool before int, datetime before date, Enum before str
        return [
            (bool, lambda v, p: v),
            (Enum, lambda v, p: cls._encode(v.value, p)),
            (int, lambda v, p: v),
            (str, lambda v, p: v),
            (float, _fail("float is not allowed in canonical payloads; use a string or Decimal")),
            (Decimal, cls._format_decimal),
            (datetime, cls._format_datetime),
            (date, lambda v, p: v.isoformat()),
            (UUID, lambda v, p: str(v).lower()),
            (dict, cls._encode_object),
            ((list, tuple), lambda v, p: [cls._encode(item, f"{p}[{i}]") for i, item in enumerate(v)]),
            ((bytes, bytearray), _fail("bytes are not allowed; encode as base64 text first")),
            ((set, frozenset), _fail("sets have no stable order; use a sorted list")),
        ]

    @classmethod
    def _encode(cls, value: Any, path: str = "") -> Any:
        """Map a Python value onto its JSON-native canonical form."""
        if value is None:
            return None
        for kinds, encode in cls._RULES:
            if isinstance(value, kinds):
                return encode(value, path)
        if hasattr(value, "model_dump"):
            return cls._encode_object(value.model_dump(mode="python"), path)
        raise CanonicalSerializationError(
            f"{type(value).__name__} at {path or '<root>'} has no canonical form"
        )

    @classmethod
    def _encode_object(cls, data: dict[str, Any], path: str = "") -> dict[str, Any]:
        bad_keys = [key for key in data if not isinstance(key, str)]
        if bad_keys:
            raise CanonicalSerializationError(
                f"Object keys at {path or '<root>'} must be strings, got {type(bad_keys[0]).__name__}"
            )

        encoded = {}
        for key in sorted(data):
            value = cls._encode(data[key], f"{path}.{key}" if path else key)
            if value is not None:
                encoded[key] = value
        return encoded

    @classmethod
    def format_timestamp(cls, dt: datetime) -> str:
        """The canonical text form of an aware datetime."""
        return cls._format_datetime(dt, "timestamp")

    @classmethod
    def canonical_dict(cls, data: dict[str, Any], path: str = "") -> dict[str, Any]:
        """JSON-native canonical form of a dict, without the version marker."""
        return cls._encode_object(data, path)

    @classmethod
    def canonicalize(cls, data: dict[str, Any] | Any) -> str:
        """
        Canonical JSON text of a dict (or pydantic model).

        Raises:
            CanonicalSerializationError: the data has no deterministic form
        """
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")
        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Canonical payloads are objects, got {type(data).__name__}"
            )

        document = {CANON_VERSION_KEY: cls.SERIALIZATION_VERSION, **cls._encode_object(data)}
        try:
            return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=True, allow_nan=False)
        except ValueError as e:
            raise CanonicalSerializationError(str(e)) from e

    # ============================================================
    # HASHING
    # ============================================================

    @staticmethod
    def hash_text(text: str) -> str:
        """SHA-256 of a UTF-8 string, lowercase hex."""
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    @classmethod
    def hash_data(cls, data: dict[str, Any] | Any) -> str:
        return cls.hash_text(cls.canonicalize(data))

    @staticmethod
    def is_hash(value: Any) -> bool:
        """True for 64 lowercase hex characters."""
        return isinstance(value, str) and len(value) == 64 and set(value) <= _HEX_DIGITS

    @classmethod
    def hash_entry(cls, canonical_payload: str, prev_hash: str, sequence: int) -> str:
        """
        Chain hash of one entry.

        Args:
            canonical_payload: canonicalize() output for the entry record
            prev_hash: entry_hash of sequence - 1, or GENESIS_HASH for sequence 0
            sequence: 0-based position in the chain
        """
        if not cls.is_hash(prev_hash):
            raise CanonicalSerializationError(
                f"prev_hash must be 64 lowercase hex characters, got {prev_hash!r}"
            )
        if isinstance(sequence, bool) or not isinstance(sequence, int) or sequence < 0:
            raise CanonicalSerializationError(f"sequence must be a non-negative integer, got {sequence!r}")
        return cls.hash_text(f"{canonical_payload}:{prev_hash}:{sequence}")

    @classmethod
    def verify_entry(cls, canonical_payload: str, prev_hash: str, sequence: int, expected_hash: str) -> bool:
        """Recompute an entry hash and compare it with the stored one."""
        try:
            computed = cls.hash_entry(canonical_payload, prev_hash, sequence)
        except CanonicalSerializationError:
            return False
        return cls.constant_time_compare(computed, expected_hash)

    @staticmethod
    def constant_time_compare(a: str, b: str) -> bool:
        return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


Hasher._RULES = Hasher._rules()
