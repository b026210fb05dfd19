"""
Stable hashes of synced fields.

ProductMapping keeps the hash of the values both sides agreed on at the last
successful sync; comparing it with the current hash of each side tells which
side changed since.
"""

import hashlib
import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from pos_sync.core.models import CATALOG_FIELDS


def _normalize(value: Any) -> Any:
    if isinstance(value, Decimal):
        # 10, 10.0 and 10.00 hash identically
        return format(value.normalize(), "f")
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in value.items()}
    if isinstance(value, str):
        return value.strip()
    return value


def fingerprint(fields: Dict[str, Any], keys: Optional[Iterable[str]] = None) -> str:
    """
    SHA-256 of the canonical JSON form of ``fields``.

    Args:
        fields: Field values
        keys: Restrict to these keys; missing keys hash as null
    """
    keys = sorted(keys) if keys is not None else sorted(fields)
    canonical = {key: _normalize(fields.get(key)) for key in keys}
    payload = json.dumps(canonical, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def catalog_fingerprint(fields: Dict[str, Any]) -> str:
    return fingerprint(fields, CATALOG_FIELDS)


def inventory_fingerprint(quantity: Optional[int]) -> str:
    return fingerprint({"quantity": quantity})
