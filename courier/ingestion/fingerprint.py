"""
Content fingerprints for change detection.

Each part is length-prefixed before hashing, so ("ab", "c") and ("a", "bc")
never produce the same digest.
"""

import hashlib
import struct

_LENGTH_PREFIX = struct.Struct(">Q")


def hash_content(*parts: str) -> bytes:
    """SHA-256 over ``parts`` in order, each as 8-byte big-endian length + UTF-8 bytes."""
    digest = hashlib.sha256()
    for part in parts:
        data = (part or "").encode("utf-8")
        digest.update(_LENGTH_PREFIX.pack(len(data)))
        digest.update(data)
    return digest.digest()


def content_hash_string(*parts: str) -> str:
    """Hex form of :func:`hash_content`."""
    return hash_content(*parts).hex()
