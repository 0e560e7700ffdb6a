from hashlib import sha256
from uuid import uuid4


def generate_id(prefix: str | None = None) -> str:
    """Return a random identifier, ``<prefix>_<uuid4>`` when a prefix is given."""
    value = str(uuid4())
    return f"{prefix}_{value}" if prefix else value


def hash_user_id(user_id: str) -> str:
    """One-way digest of a caller id for usage records (first 16 bytes of SHA-256)."""
    return sha256(user_id.encode("utf-8")).digest()[:16].hex()
