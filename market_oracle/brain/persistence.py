# brain/persistence.py - MARKET ORACLE - SNAPSHOT IMMORTALITY LAYER - 2026 v1.3
# Patch vs v1.2:
# - KeyValueStore protocol: async get(key) / set(key, value)
# - FileKeyValueStore: msgpack + lz4 envelope with sha256 checksum, atomic write, rotating backups
# - Memory fallback when disk fails (never loses the latest value inside the process)
# - Per-store IO lock (no module globals)

from __future__ import annotations

import asyncio
import hashlib
import os
import time
from enum import Enum
from typing import Any, Dict, Optional, Protocol

import aiofiles
import lz4.frame
import msgpack

from market_oracle.utils.logging import log_brain

PERSISTENCE_VERSION = "oracle-snapshot-v1.3-2026"
ACCEPTED_VERSIONS = {
    "oracle-snapshot-v1.2-2026",
    PERSISTENCE_VERSION,
}

MAX_BACKUPS = 3


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any) -> None:
        ...


# -----------------------
# Hashing / utilities
# -----------------------
def _sha256_hex(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


def _fsync_best_effort(path: str) -> None:
    try:
        fd = os.open(path, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError:
        pass


def _to_primitive_safe(x: Any, *, _depth: int = 0, _max_depth: int = 40) -> Any:
    """
    Convert arbitrary objects into msgpack-safe primitives.
    - dict keys -> str
    - set/tuple -> list
    - enums -> value
    """
    if _depth > _max_depth:
        return str(x)
    if isinstance(x, Enum):
        return x.value
    if x is None or isinstance(x, (bool, int, float, str, bytes)):
        return x
    if isinstance(x, (set, tuple, list)):
        return [_to_primitive_safe(v, _depth=_depth + 1) for v in x]
    if isinstance(x, dict):
        return {str(k): _to_primitive_safe(v, _depth=_depth + 1) for k, v in x.items()}
    return str(x)


# -----------------------
# Envelope IO
# -----------------------
def _pack_envelope(payload_bytes: bytes) -> bytes:
    compressed = lz4.frame.compress(payload_bytes)
    env = {
        "checksum": _sha256_hex(compressed),
        "payload_sha": _sha256_hex(payload_bytes),
        "blob": compressed,
    }
    return msgpack.packb(env, use_bin_type=True)


def _unpack_envelope(raw: bytes) -> Optional[Dict[str, Any]]:
    try:
        env = msgpack.unpackb(raw, raw=False)
    except Exception:
        return None

    if not isinstance(env, dict) or "checksum" not in env or "blob" not in env:
        return None

    checksum = env.get("checksum")
    blob = env.get("blob")
    if isinstance(checksum, (bytes, bytearray)):
        checksum = checksum.decode("utf-8", errors="ignore")
    if not isinstance(checksum, str) or not isinstance(blob, (bytes, bytearray)):
        return None

    blob = bytes(blob)
    if _sha256_hex(blob) != checksum:
        return None

    payload_sha = env.get("payload_sha")
    if not isinstance(payload_sha, str):
        payload_sha = None
    return {"blob": blob, "checksum": checksum, "payload_sha": payload_sha}


class MemoryKeyValueStore:
    """In-process store. Used by tests and when no snapshot path is configured."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})

    async def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = value


class FileKeyValueStore:
    """
    Whole-file key/value snapshot on disk.

    Layout: msgpack envelope {checksum, payload_sha, blob=lz4(msgpack(data))}
    where data = {"v", "timestamp", "items": {key: value}}.
    Writes go tmp -> fsync -> rotate backups -> replace; reads walk main then .bak1..N.
    """

    def __init__(self, path: str, max_backups: int = MAX_BACKUPS):
        self.path = os.path.expanduser(path)
        self.max_backups = max(0, int(max_backups))
        self._io_lock = asyncio.Lock()
        self._items: Optional[Dict[str, Any]] = None
        self._disk_failed = False

    @property
    def disk_failed(self) -> bool:
        return self._disk_failed

    # ---------- public ----------

    async def get(self, key: str) -> Optional[Any]:
        async with self._io_lock:
            items = await self._ensure_loaded()
            return items.get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._io_lock:
            items = await self._ensure_loaded()
            items[key] = _to_primitive_safe(value)
            await self._save(items)

    # ---------- internals ----------

    async def _ensure_loaded(self) -> Dict[str, Any]:
        if self._items is None:
            self._items = await self._load()
        return self._items

    def _backup_path(self, i: int) -> str:
        return f"{self.path}.bak{i}"

    async def _load(self) -> Dict[str, Any]:
        for i in range(self.max_backups + 1):
            path = self.path if i == 0 else self._backup_path(i)
            if not os.path.exists(path):
                continue
            try:
                async with aiofiles.open(path, "rb") as f:
                    raw = await f.read()

                env = _unpack_envelope(raw)
                if env is None:
                    log_brain.warning(f"SNAPSHOT CORRUPT | invalid envelope in {path}, skipping")
                    continue

                payload_bytes = lz4.frame.decompress(env["blob"])
                if env.get("payload_sha") and _sha256_hex(payload_bytes) != env["payload_sha"]:
                    log_brain.warning(f"SNAPSHOT SHA MISMATCH | {path} (continuing anyway)")

                data = msgpack.unpackb(payload_bytes, raw=False)
                if not isinstance(data, dict):
                    log_brain.warning(f"SNAPSHOT INVALID ROOT | {path}, skipping")
                    continue
                v = data.get("v")
                if v not in ACCEPTED_VERSIONS:
                    log_brain.warning(f"SNAPSHOT VERSION UNSUPPORTED | {v} in {path}, skipping")
                    continue
                items = data.get("items")
                if not isinstance(items, dict):
                    log_brain.warning(f"SNAPSHOT INVALID ITEMS | {path}, skipping")
                    continue

                log_brain.info(f"SNAPSHOT RESTORED | {path} keys={len(items)}")
                return dict(items)
            except Exception as e:
                log_brain.error(f"SNAPSHOT LOAD FAILED | {path}: {e}")

        log_brain.info(f"SNAPSHOT EMPTY | no usable file at {self.path}")
        return {}

    async def _save(self, items: Dict[str, Any]) -> None:
        try:
            data = {"v": PERSISTENCE_VERSION, "timestamp": float(time.time()), "items": items}
            payload_bytes = msgpack.packb(_to_primitive_safe(data), use_bin_type=True)
            envelope = _pack_envelope(payload_bytes)
            await self._atomic_write(envelope)
            self._disk_failed = False
            log_brain.debug(f"SNAPSHOT SAVED | {self.path} size={len(envelope) / 1024:.1f}KB")
        except Exception as e:
            # items stay in memory; next set() retries disk
            self._disk_failed = True
            log_brain.error(f"SNAPSHOT SAVE FAILED | {self.path}: {e} (keeping memory copy)")

    def _rotate_backups(self) -> None:
        if self.max_backups <= 0:
            return
        oldest = self._backup_path(self.max_backups)
        if os.path.exists(oldest):
            try:
                os.unlink(oldest)
            except OSError:
                pass
        for i in range(self.max_backups - 1, 0, -1):
            src = self._backup_path(i)
            if os.path.exists(src):
                try:
                    os.replace(src, self._backup_path(i + 1))
                except OSError:
                    pass

    async def _atomic_write(self, data: bytes) -> None:
        """
        1) write tmp + fsync tmp
        2) rotate backups, move main -> bak1
        3) move tmp -> main (roll back bak1 on failure)
        """
        d = os.path.dirname(self.path)
        if d:
            os.makedirs(d, exist_ok=True)

        tmp = self.path + ".tmp"
        async with aiofiles.open(tmp, "wb") as f:
            await f.write(data)
            await f.flush()
        _fsync_best_effort(tmp)

        bak1 = self._backup_path(1)
        if self.max_backups > 0:
            self._rotate_backups()
            if os.path.exists(self.path):
                try:
                    os.replace(self.path, bak1)
                except OSError:
                    pass

        try:
            os.replace(tmp, self.path)
        except OSError:
            if self.max_backups > 0 and os.path.exists(bak1) and not os.path.exists(self.path):
                try:
                    os.replace(bak1, self.path)
                except OSError:
                    pass
            if os.path.exists(tmp):
                try:
                    os.unlink(tmp)
                except OSError:
                    pass
            raise

        _fsync_best_effort(d or ".")
