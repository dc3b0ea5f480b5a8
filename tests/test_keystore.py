"""Unit tests for the secret protector, key derivation and KeyManager"""
from __future__ import annotations

import asyncio
import os

import pytest

from chatstore.errors import DecryptionFailure, ProtectionFailure
from chatstore.services import key_derivation
from chatstore.services.crypto import b64e
from chatstore.services.keystore import KeyManager
from chatstore.services.message_crypto import ContentCipher
from chatstore.services.secret_protector import SecretProtector

from conftest import make_settings


class CountingProtector(SecretProtector):

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.wrap_calls = 0

    def wrap(self, data: bytes) -> bytes:
        self.wrap_calls += 1
        return super().wrap(data)


# ══════════════════════════════════════════════════════════════════════════════
# SecretProtector
# ══════════════════════════════════════════════════════════════════════════════

class TestSecretProtector:

    def test_wrap_unwrap(self, protector):
        key = os.urandom(32)
        wrapped = protector.wrap(key)
        assert wrapped != key
        assert protector.unwrap(wrapped) == key

    def test_foreign_identity_rejected(self, store_settings, protector):
        wrapped = protector.wrap(os.urandom(32))
        bob = SecretProtector(store_settings, identity="bob")
        with pytest.raises(ProtectionFailure):
            bob.unwrap(wrapped)

    def test_corrupted_bytes_rejected(self, protector):
        wrapped = bytearray(protector.wrap(os.urandom(32)))
        wrapped[-1] ^= 0xFF
        with pytest.raises(ProtectionFailure):
            protector.unwrap(bytes(wrapped))

    def test_truncated_bytes_rejected(self, protector):
        with pytest.raises(ProtectionFailure):
            protector.unwrap(b"\x00" * 5)

    def test_invalid_master_key_setting(self, tmp_path):
        settings = make_settings(tmp_path, master_key="CHANGE_ME")
        with pytest.raises(ProtectionFailure):
            SecretProtector(settings).wrap(os.urandom(32))

    def test_unknown_backend(self, tmp_path):
        settings = make_settings(tmp_path, secret_backend="dpapi-ng")
        with pytest.raises(ProtectionFailure):
            SecretProtector(settings).wrap(os.urandom(32))


class TestKeyDerivation:

    def test_passphrase_backend_is_deterministic(self, tmp_path):
        passphrase = tmp_path / "passphrase.txt"
        passphrase.write_text("correct horse battery staple\n")
        salt = tmp_path / "salt.bin"
        salt.write_bytes(os.urandom(16))
        settings = make_settings(
            tmp_path,
            secret_backend="passphrase",
            passphrase_file=str(passphrase),
            salt_file=str(salt),
        )
        first = key_derivation.master_key_bytes(settings)
        assert len(first) == 32
        assert key_derivation.master_key_bytes(settings) == first

    def test_passphrase_backend_requires_salt(self, tmp_path):
        passphrase = tmp_path / "passphrase.txt"
        passphrase.write_text("secret")
        settings = make_settings(tmp_path, secret_backend="passphrase", passphrase_file=str(passphrase))
        with pytest.raises(ProtectionFailure):
            key_derivation.master_key_bytes(settings)

    def test_keyring_backend_provisions_once(self, tmp_path, monkeypatch):
        vault = {}
        monkeypatch.setattr(key_derivation.keyring, "get_password", lambda service, user: vault.get((service, user)))
        monkeypatch.setattr(
            key_derivation.keyring, "set_password", lambda service, user, value: vault.__setitem__((service, user), value)
        )
        settings = make_settings(tmp_path, secret_backend="keyring")

        first = key_derivation.master_key_bytes(settings)
        assert len(first) == 32
        assert key_derivation.master_key_bytes(settings) == first
        assert len(vault) == 1

    def test_keyring_value_must_be_32_bytes(self, tmp_path, monkeypatch):
        monkeypatch.setattr(key_derivation.keyring, "get_password", lambda service, user: b64e(b"short"))
        settings = make_settings(tmp_path, secret_backend="keyring")
        with pytest.raises(ProtectionFailure):
            key_derivation.master_key_bytes(settings)


# ══════════════════════════════════════════════════════════════════════════════
# KeyManager
# ══════════════════════════════════════════════════════════════════════════════

class TestKeyManager:

    @pytest.mark.asyncio
    async def test_creates_and_persists_wrapped_key(self, key_manager):
        key = await key_manager.get_or_create_key()
        assert len(key) == 32
        assert key_manager.key_path.exists()
        assert key not in key_manager.key_path.read_bytes()

    @pytest.mark.asyncio
    async def test_memoized(self, key_manager):
        first = await key_manager.get_or_create_key()
        key_manager.key_path.unlink()
        assert await key_manager.get_or_create_key() is first

    @pytest.mark.asyncio
    async def test_reloads_existing_key(self, store_settings, protector, key_manager):
        first = await key_manager.get_or_create_key()
        fresh = KeyManager(store_settings.key_path, protector)
        assert await fresh.get_or_create_key() == first

    @pytest.mark.asyncio
    async def test_forget_reloads_from_disk(self, key_manager):
        first = await key_manager.get_or_create_key()
        key_manager.forget()
        assert not key_manager.is_loaded
        assert await key_manager.get_or_create_key() == first

    @pytest.mark.asyncio
    async def test_concurrent_first_use_creates_one_key(self, store_settings):
        counting = CountingProtector(store_settings)
        manager = KeyManager(store_settings.key_path, counting)
        keys = await asyncio.gather(*(manager.get_or_create_key() for _ in range(8)))
        assert len(set(keys)) == 1
        assert counting.wrap_calls == 1

    @pytest.mark.asyncio
    async def test_corrupted_key_file_regenerates(self, store_settings, protector, key_manager):
        old_key = await key_manager.get_or_create_key()
        old_envelope = await ContentCipher(key_manager).encrypt("Meet at the harbour at noon")

        data = bytearray(store_settings.key_path.read_bytes())
        data[20] ^= 0x01
        store_settings.key_path.write_bytes(bytes(data))

        fresh = KeyManager(store_settings.key_path, protector)
        new_key = await fresh.get_or_create_key()
        assert new_key != old_key
        assert store_settings.key_path.read_bytes() != bytes(data)
        assert protector.unwrap(store_settings.key_path.read_bytes()) == new_key

        with pytest.raises(DecryptionFailure):
            await ContentCipher(fresh).decrypt(old_envelope)

    @pytest.mark.asyncio
    async def test_foreign_identity_key_file_regenerates(self, store_settings, key_manager):
        old_key = await key_manager.get_or_create_key()
        bob = SecretProtector(store_settings, identity="bob")
        new_key = await KeyManager(store_settings.key_path, bob).get_or_create_key()
        assert new_key != old_key
        assert bob.unwrap(store_settings.key_path.read_bytes()) == new_key
