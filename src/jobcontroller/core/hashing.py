"""
Deterministic hashing utilities for job identity and change detection.

Manifesto:
    The controller must recognise "the same source" and "the same feature
    set content" across restarts without storing any extra state:
    - **Canonical encoding:** key order never changes the encoding
    - **Deterministic:** same inputs always produce the same hash
    - **Collision-resistant:** SHA-256 based, truncated to a readable length

Examples:
    >>> canonical_json({"b": 1, "a": [2, 1]})
    '{"a":[2,1],"b":1}'
    >>> compute_hash("kafka", "localhost:9092", "topic") == compute_hash("kafka", "localhost:9092", "topic")
    True

Tags:
    hashing, identity, idempotency, jobcontroller

Doc-Types:
    - API Reference
"""

import hashlib
import json
from typing import Any


def canonical_json(value: Any) -> str:
    """Encode *value* as compact JSON with sorted keys.

    Raises:
        TypeError: If *value* contains objects JSON cannot encode
        ValueError: If *value* contains NaN/Infinity or circular references
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), allow_nan=False)


def compute_hash(*values: Any, length: int = 32) -> str:
    """
    Compute deterministic hash from values.

    Values are joined with '|' after string conversion, then hashed with
    SHA-256. Order of *values* matters: ``(a, b) != (b, a)``.

    Args:
        *values: Values to hash (converted to strings)
        length: Hex digest length (default 32 = 128 bits)

    Returns:
        Hex string of specified length
    """
    content = "|".join(str(v) for v in values)
    return hashlib.sha256(content.encode()).hexdigest()[:length]
