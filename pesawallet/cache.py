"""Key-value byte stores that back the session cache."""

from __future__ import annotations

import logging
import os
import re
import secrets
from pathlib import Path
from typing import Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
NONCE_SIZE = 12


class PersistentCache:
    """Interface: async get/set/remove of bytes by key, surviving restarts."""

    async def get(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    async def set(self, key: str, value: bytes) -> None:
        raise NotImplementedError

    async def remove(self, key: str) -> None:
        raise NotImplementedError

    async def multi_remove(self, keys) -> None:
        for key in keys:
            await self.remove(key)


class MemoryCache(PersistentCache):
    def __init__(self, initial: Optional[Dict[str, bytes]] = None):
        self.data: Dict[str, bytes] = dict(initial or {})

    async def get(self, key: str) -> Optional[bytes]:
        return self.data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self.data[key] = bytes(value)

    async def remove(self, key: str) -> None:
        self.data.pop(key, None)


class FileCache(PersistentCache):
    """
    One AES-GCM encrypted file per key under `directory`.

    The 32-byte device key lives in `device.key` (mode 0600) and is created on
    first use. The entry name is bound as associated data, so a file copied
    over another key's file fails to decrypt and reads as missing.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self._aes: Optional[AESGCM] = None

    def _path(self, key: str) -> Path:
        if not KEY_RE.match(key):
            raise ValueError(f"invalid cache key: {key!r}")
        return self.directory / f"{key}.bin"

    def _write_private(self, path: Path, data: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        old_umask = os.umask(0o077)
        try:
            tmp = path.with_suffix(".tmp")
            with open(tmp, "wb") as f:
                f.write(data)
            os.chmod(tmp, 0o600)
            os.replace(tmp, path)
        finally:
            os.umask(old_umask)

    def _cipher(self) -> AESGCM:
        if self._aes is not None:
            return self._aes
        key_path = self.directory / "device.key"
        key = key_path.read_bytes() if key_path.exists() else b""
        if len(key) != 32:
            if key:
                logger.warning("device key at %s is corrupt, generating a new one", key_path)
            key = secrets.token_bytes(32)
            self._write_private(key_path, key)
        self._aes = AESGCM(key)
        return self._aes

    async def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None
        raw = path.read_bytes()
        if len(raw) <= NONCE_SIZE:
            logger.warning("cache entry %s is truncated", key)
            return None
        try:
            return self._cipher().decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], key.encode())
        except InvalidTag:
            logger.warning("cache entry %s failed authentication", key)
            return None

    async def set(self, key: str, value: bytes) -> None:
        path = self._path(key)
        nonce = secrets.token_bytes(NONCE_SIZE)
        ct = self._cipher().encrypt(nonce, bytes(value), key.encode())
        self._write_private(path, nonce + ct)

    async def remove(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass
