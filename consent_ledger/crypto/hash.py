"""
Hashing utilities for the consent ledger
Secure digests and canonical serialization for the audit hash chain
"""

import hashlib
import json
from typing import Any, Optional, Sequence

import structlog

logger = structlog.get_logger(__name__)


class HashError(Exception):
    """Base exception for hashing-related errors"""
    pass


def secure_hash(data: bytes, algorithm: str = 'sha256') -> str:
    """
    Create secure hash of data

    Args:
        data: Data to hash
        algorithm: Hash algorithm (sha256, sha512, blake2b)

    Returns:
        Hex-encoded hash string
    """
    if algorithm == 'sha256':
        hasher = hashlib.sha256()
    elif algorithm == 'sha512':
        hasher = hashlib.sha512()
    elif algorithm == 'blake2b':
        hasher = hashlib.blake2b()
    else:
        raise HashError(f"Unsupported hash algorithm: {algorithm}")

    hasher.update(data)
    return hasher.hexdigest()


def hash_string(text: str, algorithm: str = 'sha256') -> str:
    """Hash a string using specified algorithm"""
    return secure_hash(text.encode('utf-8'), algorithm)


def canonical_json(data: Any) -> str:
    """
    Deterministic JSON encoding: sorted keys, no insignificant whitespace.

    Non-JSON values (datetimes, enums) are rendered with str() so that the
    encoding of a payload never depends on how it was re-serialized.
    """
    try:
        return json.dumps(
            data,
            sort_keys=True,
            separators=(',', ':'),
            ensure_ascii=False,
            default=str
        )
    except (TypeError, ValueError) as e:
        logger.error("Canonical serialization failed", error=str(e))
        raise HashError(f"Canonical serialization failed: {str(e)}")


def normalize_payload(data: Any) -> Any:
    """Round-trip a payload through canonical JSON so stored and hashed forms agree"""
    return json.loads(canonical_json(data))


def chain_hash(previous_hash: Optional[str], fields: Sequence[Any]) -> str:
    """
    Digest of one chain link: H(previous_hash || fields...).

    Fields are framed as a canonical JSON array rather than concatenated raw,
    so ("ab", "c") and ("a", "bc") never collide.
    """
    framed = canonical_json([previous_hash or "", *fields])
    return hash_string(framed, 'sha256')

