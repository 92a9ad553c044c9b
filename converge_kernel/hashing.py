"""Canonical serialization and hashing of resource specs."""

import hashlib
import json
from typing import Any


def canonical_json(obj: Any) -> str:
    """Serialize with sorted keys and no whitespace so equal specs are byte-identical."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def spec_hash(obj: Any) -> str:
    """SHA-256 over the canonical JSON form."""
    return hashlib.sha256(canonical_json(obj).encode()).hexdigest()
