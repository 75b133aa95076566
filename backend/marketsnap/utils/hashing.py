"""File hashing utilities."""

import base64
import hashlib
from pathlib import Path

CHUNK_SIZE = 64 * 1024  # 64 KB


def md5_base64(path: Path) -> str:
    """Base64 MD5 of a file, the form Cloud Storage reports as ``md5Hash``."""
    digest = hashlib.md5()
    with open(path, "rb") as f:
        while chunk := f.read(CHUNK_SIZE):
            digest.update(chunk)
    return base64.b64encode(digest.digest()).decode("ascii")
