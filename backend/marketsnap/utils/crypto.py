"""At-rest encryption for queue and session records (AES-256-GCM)."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
KEY_BITS = 256


class RecordDecryptError(Exception):
    """Sealed record could not be authenticated or decoded."""


def load_or_create_key(key_path: str | Path, encoded_key: str = "") -> bytes:
    """Return the store key.

    An explicitly configured base64 key wins. Otherwise the key file is read,
    or generated with owner-only permissions on first use.
    """
    if encoded_key:
        return _decode_key(encoded_key)

    path = Path(key_path)
    if path.exists():
        return _decode_key(path.read_text(encoding="ascii").strip())

    logger.info("No store key found — generating a new one at %s", path)
    key = AESGCM.generate_key(bit_length=KEY_BITS)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="ascii") as f:
        f.write(base64.b64encode(key).decode("ascii"))
    return key


def _decode_key(value: str) -> bytes:
    try:
        key = base64.b64decode(value, validate=True)
    except (ValueError, binascii.Error) as exc:
        raise ValueError(f"Invalid store key encoding: {exc}") from exc
    if len(key) != KEY_BITS // 8:
        raise ValueError(f"Store key must be {KEY_BITS // 8} bytes, got {len(key)}")
    return key


class RecordCipher:
    """Seals JSON payloads; the record id is bound as associated data."""

    def __init__(self, key: bytes):
        self._aesgcm = AESGCM(key)

    def seal(self, payload: dict[str, Any], record_id: str) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        plaintext = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        return nonce + self._aesgcm.encrypt(nonce, plaintext, record_id.encode("utf-8"))

    def open(self, sealed: bytes, record_id: str) -> dict[str, Any]:
        if len(sealed) <= NONCE_SIZE:
            raise RecordDecryptError("Sealed record is truncated")
        nonce, ciphertext = sealed[:NONCE_SIZE], sealed[NONCE_SIZE:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, record_id.encode("utf-8"))
            return json.loads(plaintext)
        except (InvalidTag, ValueError) as exc:
            raise RecordDecryptError(f"Record {record_id} failed authentication") from exc
