"""Canonical JSON hashing.

Used for quarter inputs hashes and enrichment job input hashes. The encoding
is fixed (sorted keys, compact separators, UTF-8) so the same facts always
produce the same digest.
"""
import base64
import hashlib
import json


def canonical_json(value) -> bytes:
    return json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False,
    ).encode("utf-8")


def hash_json(value) -> str:
    """Return the base64-encoded SHA-256 digest of ``canonical_json(value)``."""
    digest = hashlib.sha256(canonical_json(value)).digest()
    return base64.b64encode(digest).decode("ascii")
