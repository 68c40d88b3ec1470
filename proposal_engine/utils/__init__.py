from .logger import setup_logging
from .hashing import sha256_hash, hash_payload, canonical_json

__all__ = ["setup_logging", "sha256_hash", "hash_payload", "canonical_json"]
