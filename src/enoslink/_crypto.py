"""Internal hashing helpers for token signing and file manifests."""

from __future__ import annotations

import uuid
from pathlib import Path

from Crypto.Hash import MD5, SHA256


def md5_hex(data: bytes) -> str:
    """Hex MD5 digest (the ``md5`` field of a file manifest entry)."""
    return MD5.new(data).hexdigest()


def sign_token_request(app_key: str, app_secret: str, timestamp: int) -> str:
    """Compute the ``encryption`` field sent to the token service.

    The service expects ``sha256(appKey + timestamp + appSecret)`` as a
    lowercase hex string, with *timestamp* in milliseconds.
    """
    plain = f"{app_key}{timestamp}{app_secret}".encode()
    return SHA256.new(plain).hexdigest()


def generate_file_name(path: Path) -> str:
    """Return a unique local name for *path*, keeping its original name as suffix."""
    return f"{uuid.uuid4().hex}_{path.name}"
