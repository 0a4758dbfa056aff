"""
Key-value backends for the persisted optimization cache blob.

All backends store opaque strings under scoped keys and raise
CacheStorageError for any failure of the underlying medium.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Protocol

import redis

from core.config import Settings
from optimization.errors import CacheStorageError


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


def scoped_key(scope: str, key: str) -> str:
    return f"{scope}:{key}" if scope else key


class MemoryKeyValueStore:
    """Process-local store for tests and local development."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileKeyValueStore:
    """One file per key under ``directory``; writes are atomic renames."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        safe = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in key)
        return self.directory / f"{safe}.json"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise CacheStorageError(f"Failed to read {path}: {exc}") from exc

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(value)
            os.replace(tmp_name, path)
        except OSError as exc:
            raise CacheStorageError(f"Failed to write {path}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise CacheStorageError(f"Failed to delete {key}: {exc}") from exc


class RedisKeyValueStore:
    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> str | None:
        try:
            value = self.client.get(key)
        except redis.RedisError as exc:
            raise CacheStorageError(f"Redis GET {key} failed: {exc}") from exc
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def set(self, key: str, value: str) -> None:
        try:
            self.client.set(key, value)
        except redis.RedisError as exc:
            raise CacheStorageError(f"Redis SET {key} failed: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as exc:
            raise CacheStorageError(f"Redis DEL {key} failed: {exc}") from exc


def build_key_value_store(settings: Settings) -> KeyValueStore:
    backend = settings.optimization_cache_backend
    if backend == "redis":
        return RedisKeyValueStore.from_url(settings.redis_url)
    if backend == "file":
        return JsonFileKeyValueStore(settings.optimization_cache_dir)
    if backend == "memory":
        return MemoryKeyValueStore()
    raise ValueError(f"Unknown optimization cache backend: {backend}")
