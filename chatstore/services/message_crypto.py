from __future__ import annotations

import asyncio
import base64
import binascii

from chatstore.errors import (
    ChatStoreError,
    DecryptionFailure,
    EncryptionFailure,
    ProtectionFailure,
    StorageIOFailure,
)
from chatstore.services.crypto import BLOCK_SIZE, IV_SIZE, decrypt_cbc, encrypt_cbc
from chatstore.services.keystore import KeyManager

DEFAULT_LEGACY_MAX_LENGTH = 50


def _decode_envelope(value: str) -> bytes | None:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return None


def is_legacy_plaintext(value: str, *, max_length: int = DEFAULT_LEGACY_MAX_LENGTH) -> bool:
    """Best-effort check for content stored before encryption existed.

    Short text without base64 padding, text that is not base64 at all, and
    base64 that cannot hold an IV plus one cipher block are all treated as
    plaintext. Real envelopes are at least 32 bytes, so they encode to 44
    padded characters or to 64 or more. Legacy text that is itself long,
    block-aligned base64 is taken for an envelope and fails to decrypt.
    """
    if "=" not in value and len(value) < max_length:
        return True
    raw = _decode_envelope(value)
    if raw is None:
        return True
    return len(raw) < IV_SIZE + BLOCK_SIZE or len(raw) % BLOCK_SIZE != 0


def encrypt_envelope(key: bytes, plaintext: str) -> str:
    if not plaintext:
        return ""
    return base64.b64encode(encrypt_cbc(key, plaintext.encode("utf-8"))).decode("ascii")


def decrypt_envelope(key: bytes, envelope: str) -> str:
    if not envelope:
        return ""
    raw = _decode_envelope(envelope)
    if raw is None:
        raise DecryptionFailure("Envelope is not valid base64")
    try:
        return decrypt_cbc(key, raw).decode("utf-8")
    except (ValueError, UnicodeDecodeError) as exc:
        # Wrong key surfaces as bad padding or undecodable bytes.
        raise DecryptionFailure("Envelope does not decrypt under the current content key") from exc


class ContentCipher:
    """Encrypts message text with the content key owned by ``KeyManager``."""

    def __init__(self, key_manager: KeyManager, *, legacy_max_length: int = DEFAULT_LEGACY_MAX_LENGTH):
        self._key_manager = key_manager
        self._legacy_max_length = legacy_max_length

    async def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ""
        try:
            key = await self._key_manager.get_or_create_key()
            return await asyncio.to_thread(encrypt_envelope, key, plaintext)
        except (ChatStoreError, ValueError) as exc:
            raise EncryptionFailure(f"Message encryption failed: {exc}") from exc

    async def decrypt(self, envelope: str) -> str:
        if not envelope:
            return ""
        if is_legacy_plaintext(envelope, max_length=self._legacy_max_length):
            return envelope
        try:
            key = await self._key_manager.get_or_create_key()
        except (ProtectionFailure, StorageIOFailure) as exc:
            raise DecryptionFailure(f"Content key unavailable: {exc}") from exc
        return await asyncio.to_thread(decrypt_envelope, key, envelope)
