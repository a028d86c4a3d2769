"""
Cryptographic helpers for the consent ledger
"""

from .hash import HashError, secure_hash, hash_string, canonical_json, normalize_payload, chain_hash

__all__ = [
    "HashError",
    "secure_hash",
    "hash_string",
    "canonical_json",
    "normalize_payload",
    "chain_hash",
]
