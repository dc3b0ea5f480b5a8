"""Unit tests for chatstore/services/crypto.py and message_crypto.py"""
from __future__ import annotations

import base64
import os

import pytest

from chatstore.errors import DecryptionFailure, EncryptionFailure, ProtectionFailure
from chatstore.services.crypto import decrypt_cbc, encrypt_cbc
from chatstore.services.keystore import KeyManager
from chatstore.services.message_crypto import (
    ContentCipher,
    decrypt_envelope,
    encrypt_envelope,
    is_legacy_plaintext,
)


class TestCbcPrimitives:

    def test_iv_prefixes_ciphertext(self):
        key = os.urandom(32)
        blob = encrypt_cbc(key, b"hello")
        assert len(blob) == 16 + 16
        assert decrypt_cbc(key, blob) == b"hello"

    def test_block_aligned_plaintext_gets_full_padding_block(self):
        key = os.urandom(32)
        blob = encrypt_cbc(key, b"x" * 16)
        assert len(blob) == 16 + 32

    def test_rejects_short_key(self):
        with pytest.raises(ValueError):
            encrypt_cbc(b"short", b"data")

    def test_rejects_truncated_blob(self):
        with pytest.raises(ValueError):
            decrypt_cbc(os.urandom(32), os.urandom(20))


class TestEnvelope:

    def test_envelope_is_standard_base64(self):
        key = os.urandom(32)
        envelope = encrypt_envelope(key, "Where should I go in March?")
        raw = base64.b64decode(envelope, validate=True)
        assert len(raw) % 16 == 0
        assert raw[:16] != raw[16:32]

    def test_unicode_round_trip(self):
        key = os.urandom(32)
        text = "Grüße aus Lissabon 🌍 — naïve café"
        assert decrypt_envelope(key, encrypt_envelope(key, text)) == text

    def test_wrong_key_raises(self):
        envelope = encrypt_envelope(os.urandom(32), "Consider Portugal or Morocco.")
        with pytest.raises(DecryptionFailure):
            decrypt_envelope(os.urandom(32), envelope)

    def test_empty_is_identity(self):
        key = os.urandom(32)
        assert encrypt_envelope(key, "") == ""
        assert decrypt_envelope(key, "") == ""


class TestLegacyDetection:

    def test_short_plain_text_is_legacy(self):
        assert is_legacy_plaintext("hello there")

    def test_long_prose_is_legacy(self):
        text = "This message was written long before encryption was added to the app."
        assert is_legacy_plaintext(text)

    def test_real_envelopes_are_not_legacy(self):
        key = os.urandom(32)
        for text in ("a", "hi", "x" * 15, "x" * 16, "a longer message " * 10):
            assert not is_legacy_plaintext(encrypt_envelope(key, text))

    def test_base64_too_short_for_iv_and_block(self):
        assert is_legacy_plaintext(base64.b64encode(b"0123456789").decode())

    def test_threshold_is_configurable(self):
        # 64 unpadded base64 characters decoding to three blocks.
        value = "QUFB" * 16
        assert not is_legacy_plaintext(value)
        assert is_legacy_plaintext(value, max_length=100)


class TestContentCipher:

    @pytest.mark.asyncio
    async def test_round_trip(self, cipher):
        plaintext = "Where should I go in March?"
        envelope = await cipher.encrypt(plaintext)
        assert envelope != plaintext
        assert await cipher.decrypt(envelope) == plaintext

    @pytest.mark.asyncio
    async def test_repeated_encrypt_differs(self, cipher):
        plaintext = "same words every time"
        envelopes = {await cipher.encrypt(plaintext) for _ in range(5)}
        assert len(envelopes) == 5
        for envelope in envelopes:
            assert await cipher.decrypt(envelope) == plaintext

    @pytest.mark.asyncio
    async def test_empty_identity_does_not_create_key(self, cipher, key_manager):
        assert await cipher.encrypt("") == ""
        assert await cipher.decrypt("") == ""
        assert not key_manager.is_loaded
        assert not key_manager.key_path.exists()

    @pytest.mark.asyncio
    async def test_legacy_plaintext_returned_unchanged(self, cipher):
        assert await cipher.decrypt("Hi, how are you?") == "Hi, how are you?"

    @pytest.mark.asyncio
    async def test_mismatched_key_raises(self, cipher, store_settings, protector):
        envelope = await cipher.encrypt("Consider Portugal or Morocco.")
        store_settings.key_path.unlink()
        other = ContentCipher(KeyManager(store_settings.key_path, protector))
        with pytest.raises(DecryptionFailure):
            await other.decrypt(envelope)

    @pytest.mark.asyncio
    async def test_encrypt_failure_is_loud(self, store_settings):
        class BrokenProtector:
            identity = "alice"

            def wrap(self, data):
                raise ProtectionFailure("secret store locked")

            def unwrap(self, data):
                raise ProtectionFailure("secret store locked")

        broken = ContentCipher(KeyManager(store_settings.key_path, BrokenProtector()))
        with pytest.raises(EncryptionFailure):
            await broken.encrypt("must never be stored in the clear")
