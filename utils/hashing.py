from __future__ import annotations

from hashlib import sha256
from typing import Optional


def sha256_bytes(data: bytes) -> str:
    h = sha256()
    h.update(data)
    return h.hexdigest()


def content_hash(text: Optional[str]) -> str:
    """Fingerprint of extracted page text, used to detect unchanged pages on re-crawl."""
    return sha256_bytes((text or "").encode("utf-8"))
