from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from chatstore.errors import ProtectionFailure, StorageIOFailure
from chatstore.services.crypto import generate_key_32
from chatstore.services.secret_protector import SecretProtector


def _write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp")
    with tmp_path.open("wb") as handle:
        handle.write(data)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


class KeyManager:
    """Owns the lifecycle of the single content key.

    The key is loaded from (or created into) the wrapped-key file on first use
    and cached for the lifetime of the process. A key file that fails to
    unwrap is replaced with a new key; anything encrypted under the old key
    can no longer be read.
    """

    def __init__(self, key_path: Path, protector: SecretProtector, *, logger: logging.Logger | None = None):
        self.key_path = Path(key_path)
        self._protector = protector
        self._logger = logger or logging.getLogger(__name__)
        self._key: bytes | None = None
        self._lock = asyncio.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._key is not None

    async def get_or_create_key(self) -> bytes:
        if self._key is not None:
            return self._key

        async with self._lock:
            # Another caller may have finished while we waited.
            if self._key is None:
                self._key = await asyncio.to_thread(self._load_or_create)
            return self._key

    def forget(self) -> None:
        self._key = None

    def _load_or_create(self) -> bytes:
        if self.key_path.exists():
            try:
                wrapped = self.key_path.read_bytes()
            except OSError as exc:
                raise StorageIOFailure(f"Unable to read key file {self.key_path}: {exc}") from exc
            try:
                key = self._protector.unwrap(wrapped)
            except ProtectionFailure as exc:
                self._logger.warning(
                    "Content key at %s could not be unwrapped (%s); generating a new key. "
                    "Messages encrypted under the previous key are no longer readable.",
                    self.key_path,
                    exc,
                )
            else:
                self._logger.info("Loaded content key from %s", self.key_path)
                return key

        key = generate_key_32()
        wrapped = self._protector.wrap(key)
        try:
            _write_atomic(self.key_path, wrapped)
        except OSError as exc:
            raise StorageIOFailure(f"Unable to persist key file {self.key_path}: {exc}") from exc
        self._logger.info("Provisioned content key at %s for identity=%s", self.key_path, self._protector.identity)
        return key
