from __future__ import annotations

import hashlib
from uuid import uuid4


def hash_token(token: str) -> str:
    """SHA-256 of the UTF-8 bytes, lowercase hex. Only digests are persisted."""
    return hashlib.sha256(str(token).encode("utf-8")).hexdigest()


def new_token() -> str:
    # uuid4: 122 random bits
    return str(uuid4())
