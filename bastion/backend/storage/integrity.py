"""
storage/integrity.py

Checksums for persisted rule and IOC records.

A record may carry a "checksum" field: sha256 over the canonical JSON of
the record with that field removed. A mismatch means the record was
edited outside the tooling that signed it, so it is rejected.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping

from ..errors import IntegrityError


def record_checksum(record: Mapping[str, Any]) -> str:
    body = {k: v for k, v in record.items() if k != "checksum"}
    raw = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str).encode()
    return hashlib.sha256(raw).hexdigest()


def sign_record(record: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of *record* with its checksum attached."""
    signed = dict(record)
    signed["checksum"] = record_checksum(record)
    return signed


def verify_record(record: Mapping[str, Any], require: bool = False) -> None:
    """
    Raise IntegrityError if *record* is tampered with.

    Unsigned records pass unless *require* is set.
    """
    record_id = str(record.get("id") or record.get("value") or "?")
    expected = record.get("checksum")
    if expected is None:
        if require:
            raise IntegrityError(record_id, "missing checksum")
        return
    if record_checksum(record) != expected:
        raise IntegrityError(record_id)
