from __future__ import annotations

import logging
from pathlib import Path

import keyring
from argon2.low_level import Type, hash_secret_raw
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from keyring.errors import KeyringError

from chatstore.config import Settings
from chatstore.errors import ProtectionFailure
from chatstore.services.crypto import KEY_SIZE, b64d, b64e, generate_key_32

logger = logging.getLogger(__name__)

SECRET_BACKENDS = ("keyring", "master_key", "passphrase")


def _read_file(path: str) -> bytes:
    p = Path(path)
    return p.read_bytes()


def _root_key_from_passphrase(settings: Settings) -> bytes:
    if not settings.passphrase_file:
        raise ValueError("CHATSTORE_PASSPHRASE_FILE is not set")
    if not settings.salt_file:
        raise ValueError("CHATSTORE_SALT_FILE is not set")

    passphrase = _read_file(settings.passphrase_file).strip()
    if not passphrase:
        raise ValueError("Passphrase file is empty")

    salt = _read_file(settings.salt_file)
    if len(salt) < 16:
        raise ValueError("Salt file must be at least 16 bytes")

    # Interactive-grade parameters; this runs once per process.
    return hash_secret_raw(
        secret=passphrase,
        salt=salt,
        time_cost=3,
        memory_cost=65536,
        parallelism=1,
        hash_len=32,
        type=Type.ID,
    )


def _hkdf(root_key: bytes, *, info: bytes, length: int) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=None,
        info=info,
    ).derive(root_key)


def _master_key_from_setting(settings: Settings) -> bytes:
    try:
        raw = b64d(settings.master_key)
    except ValueError as exc:
        raise ValueError("CHATSTORE_MASTER_KEY is not valid base64url") from exc
    if len(raw) != KEY_SIZE:
        raise ValueError("CHATSTORE_MASTER_KEY must decode to 32 bytes")
    return raw


def _master_key_from_keyring(settings: Settings) -> bytes:
    stored = keyring.get_password(settings.keyring_service, settings.keyring_username)
    if stored:
        raw = b64d(stored)
        if len(raw) != KEY_SIZE:
            raise ValueError("Keyring secret must decode to 32 bytes")
        return raw

    raw = generate_key_32()
    keyring.set_password(settings.keyring_service, settings.keyring_username, b64e(raw))
    logger.info(
        "Provisioned wrapping secret in OS keyring service=%s user=%s",
        settings.keyring_service,
        settings.keyring_username,
    )
    return raw


def master_key_bytes(settings: Settings) -> bytes:
    """Resolves the 32-byte secret that wraps the content key.

    Raises ProtectionFailure when the configured source is unusable.
    """
    backend = settings.secret_backend.strip().lower()
    try:
        if backend == "passphrase":
            root = _root_key_from_passphrase(settings)
            return _hkdf(root, info=b"chatstore:master-key:v1", length=KEY_SIZE)
        if backend == "master_key":
            return _master_key_from_setting(settings)
        if backend == "keyring":
            return _master_key_from_keyring(settings)
    except (KeyringError, OSError, ValueError) as exc:
        raise ProtectionFailure(f"Wrapping secret unavailable ({backend}): {exc}") from exc
    raise ProtectionFailure(f"Unknown secret backend {settings.secret_backend!r}; expected one of {SECRET_BACKENDS}")
