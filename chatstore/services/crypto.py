from __future__ import annotations

import base64
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_SIZE = 32
WRAP_NONCE_SIZE = 12
IV_SIZE = 16
BLOCK_SIZE = 16


def b64e(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode()


def b64d(data: str) -> bytes:
    return base64.urlsafe_b64decode(data.encode())


def generate_key_32() -> bytes:
    return os.urandom(KEY_SIZE)


def wrap_key(master_key: bytes, dek: bytes, *, aad: bytes) -> bytes:
    """Seals ``dek`` under ``master_key``. Returns nonce || ciphertext || tag."""
    if len(master_key) != KEY_SIZE:
        raise ValueError("master_key must be 32 bytes")
    if len(dek) != KEY_SIZE:
        raise ValueError("dek must be 32 bytes")

    nonce = os.urandom(WRAP_NONCE_SIZE)
    return nonce + AESGCM(master_key).encrypt(nonce, dek, aad)


def unwrap_key(master_key: bytes, wrapped: bytes, *, aad: bytes) -> bytes:
    if len(master_key) != KEY_SIZE:
        raise ValueError("master_key must be 32 bytes")
    if len(wrapped) <= WRAP_NONCE_SIZE:
        raise ValueError("Wrapped key is truncated")
    nonce, ct = wrapped[:WRAP_NONCE_SIZE], wrapped[WRAP_NONCE_SIZE:]
    dek = AESGCM(master_key).decrypt(nonce, ct, aad)
    if len(dek) != KEY_SIZE:
        raise ValueError("Unwrapped DEK has invalid length")
    return dek


def encrypt_cbc(key: bytes, plaintext: bytes) -> bytes:
    """AES-256-CBC with PKCS#7 padding and a fresh IV. Returns iv || ciphertext."""
    if len(key) != KEY_SIZE:
        raise ValueError("key must be 32 bytes")

    iv = os.urandom(IV_SIZE)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return iv + encryptor.update(padded) + encryptor.finalize()


def decrypt_cbc(key: bytes, blob: bytes) -> bytes:
    """Inverse of ``encrypt_cbc``. Raises ValueError on bad length or padding."""
    if len(key) != KEY_SIZE:
        raise ValueError("key must be 32 bytes")
    if len(blob) < IV_SIZE + BLOCK_SIZE or len(blob) % BLOCK_SIZE:
        raise ValueError("Ciphertext has invalid length")

    iv, ct = blob[:IV_SIZE], blob[IV_SIZE:]
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ct) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    return unpadder.update(padded) + unpadder.finalize()
