from __future__ import annotations

import logging
import threading

from cryptography.exceptions import InvalidTag

from chatstore.config import Settings
from chatstore.errors import ProtectionFailure
from chatstore.services.crypto import unwrap_key, wrap_key
from chatstore.services.key_derivation import master_key_bytes


def identity_aad(identity: str) -> bytes:
    return f"chatstore:profile:{identity}".encode()


class SecretProtector:
    """Wraps key material under a secret bound to the current user profile.

    The wrapping secret comes from the configured backend (OS keyring, a
    configured master key, or a passphrase). The profile identity is bound in
    as associated data, so bytes wrapped for one identity do not unwrap for
    another. Calls block on the secret store; run them off the event loop.
    """

    def __init__(self, settings: Settings, *, identity: str | None = None, logger: logging.Logger | None = None):
        self._settings = settings
        self.identity = identity or settings.profile_identity
        self._logger = logger or logging.getLogger(__name__)
        self._master: bytes | None = None
        self._lock = threading.Lock()

    def _master_key(self) -> bytes:
        with self._lock:
            if self._master is None:
                self._master = master_key_bytes(self._settings)
            return self._master

    def wrap(self, data: bytes) -> bytes:
        try:
            return wrap_key(self._master_key(), data, aad=identity_aad(self.identity))
        except ValueError as exc:
            raise ProtectionFailure(f"Unable to wrap key material: {exc}") from exc

    def unwrap(self, data: bytes) -> bytes:
        try:
            return unwrap_key(self._master_key(), data, aad=identity_aad(self.identity))
        except InvalidTag as exc:
            self._logger.warning("Wrapped key rejected for identity=%s (foreign profile or corrupted)", self.identity)
            raise ProtectionFailure("Wrapped key does not belong to this profile or is corrupted") from exc
        except ValueError as exc:
            raise ProtectionFailure(f"Unable to unwrap key material: {exc}") from exc
