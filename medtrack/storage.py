# medtrack/storage.py
# Async key-value stores holding opaque string blobs.
import os
import re
import uuid
import asyncio
from pathlib import Path
from threading import RLock
from typing import Dict, Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag

from medtrack.applog import logger

_CRYPTO_LOCK = RLock()

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]")


class StoreError(Exception):
    pass


class StoreReadError(StoreError):
    pass


class StoreWriteError(StoreError):
    pass


# -------------------------
# Crypto utilities
# -------------------------
def _atomic_write_bytes(path: Path, data: bytes):
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    tmp.parent.mkdir(parents=True, exist_ok=True)
    try:
        with tmp.open("wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    finally:
        tmp.unlink(missing_ok=True)

# Blobs are nonce(12) + ciphertext; the store key goes in as associated data,
# so a file renamed onto another key fails to decrypt.
def aes_encrypt(data: bytes, key: bytes, aad: Optional[bytes] = None) -> bytes:
    nonce = os.urandom(12)
    return nonce + AESGCM(key).encrypt(nonce, data, aad)

def aes_decrypt(blob: bytes, key: bytes, aad: Optional[bytes] = None) -> bytes:
    if len(blob or b"") <= 12:
        raise InvalidTag("ciphertext too short")
    return AESGCM(key).decrypt(blob[:12], blob[12:], aad)

def load_or_create_key(key_path: Path) -> bytes:
    with _CRYPTO_LOCK:
        if key_path.exists():
            d = key_path.read_bytes()
            if len(d) >= 32:
                return d[:32]
            logger.warning(f"key file too short ({len(d)} bytes); generating a new key")
        key = AESGCM.generate_key(256)
        _atomic_write_bytes(key_path, key)
        logger.info(f"key stored: {key_path}")
        return key


# -------------------------
# Stores
# -------------------------
class KeyValueStore:
    """Async get/set/remove over string keys. Subclasses raise StoreReadError / StoreWriteError."""

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    async def remove(self, key: str) -> None:
        raise NotImplementedError


class MemoryStore(KeyValueStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = str(value)

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)


class EncryptedFileStore(KeyValueStore):
    """One AES-GCM encrypted file per key under `root`.

    Writes go through a temp file and an atomic rename, so a crash mid-write
    leaves the previous blob intact.
    """

    def __init__(self, root: Path, key: bytes):
        if len(key) != 32:
            raise ValueError("key must be 32 bytes")
        self.root = Path(root)
        self.key = key
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        name = _SAFE_NAME.sub("_", key) or "_"
        return self.root / f"{name}.json.aes"

    def _get_sync(self, key: str) -> Optional[str]:
        path = self.path_for(key)
        with _CRYPTO_LOCK:
            try:
                if not path.exists():
                    return None
                pt = aes_decrypt(path.read_bytes(), self.key, key.encode("utf-8"))
            except InvalidTag as e:
                raise StoreReadError(f"cannot decrypt {path.name}") from e
            except OSError as e:
                raise StoreReadError(f"cannot read {path.name}: {e}") from e
        try:
            return pt.decode("utf-8")
        except UnicodeDecodeError as e:
            raise StoreReadError(f"{path.name} is not valid utf-8") from e

    def _set_sync(self, key: str, value: str):
        path = self.path_for(key)
        with _CRYPTO_LOCK:
            try:
                _atomic_write_bytes(path, aes_encrypt(value.encode("utf-8"), self.key, key.encode("utf-8")))
            except OSError as e:
                raise StoreWriteError(f"cannot write {path.name}: {e}") from e

    def _remove_sync(self, key: str):
        path = self.path_for(key)
        with _CRYPTO_LOCK:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise StoreWriteError(f"cannot remove {path.name}: {e}") from e

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._get_sync, key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._set_sync, key, value)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._remove_sync, key)
