"""Key-value stores providing durable backing for execution state."""

import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable
from urllib.parse import quote, unquote

from redis import Redis, RedisError

from services.run_context import RunContext


class KeyNotFoundError(KeyError):
    """Raised when a key is not present in a store."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"key not found: {key}")

    def __str__(self) -> str:
        return self.args[0]


class KeyValueStoreError(Exception):
    """Raised when a store cannot read or write a value."""

    pass


class KeyValueStore(ABC):
    """Contract for pluggable persistence of JSON-serializable values."""

    @abstractmethod
    def save(self, ctx: RunContext | None, key: str, value: Any) -> None:
        """Store value under key, replacing any previous value."""

    @abstractmethod
    def load(self, ctx: RunContext | None, key: str) -> Any:
        """Return the value under key or raise KeyNotFoundError."""

    @abstractmethod
    def delete(self, ctx: RunContext | None, key: str) -> None:
        """Remove key. Deleting a missing key is not an error."""

    @abstractmethod
    def list(self, ctx: RunContext | None) -> list[str]:
        """Return all keys in sorted order."""

    @abstractmethod
    def close(self) -> None:
        """Release resources held by the store."""

    def __enter__(self) -> "KeyValueStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


KeyValueStoreFactory = Callable[[str], KeyValueStore]


def _encode(key: str, value: Any) -> str:
    try:
        return json.dumps(value, sort_keys=True)
    except (TypeError, ValueError) as e:
        raise KeyValueStoreError(f"value for key {key} is not JSON serializable: {e}") from e


def _check(ctx: RunContext | None, key: str | None = None) -> None:
    if key is not None and not key:
        raise ValueError("key is required")
    if ctx is not None:
        ctx.raise_if_done()


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store. Values are kept JSON-encoded so callers never share objects."""

    def __init__(self):
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()
        self._closed = False

    def _ensure_open(self) -> None:
        if self._closed:
            raise KeyValueStoreError("store is closed")

    def save(self, ctx: RunContext | None, key: str, value: Any) -> None:
        _check(ctx, key)
        encoded = _encode(key, value)
        with self._lock:
            self._ensure_open()
            self._data[key] = encoded

    def load(self, ctx: RunContext | None, key: str) -> Any:
        _check(ctx, key)
        with self._lock:
            self._ensure_open()
            if key not in self._data:
                raise KeyNotFoundError(key)
            encoded = self._data[key]
        return json.loads(encoded)

    def delete(self, ctx: RunContext | None, key: str) -> None:
        _check(ctx, key)
        with self._lock:
            self._ensure_open()
            self._data.pop(key, None)

    def list(self, ctx: RunContext | None) -> list[str]:
        _check(ctx)
        with self._lock:
            self._ensure_open()
            return sorted(self._data)

    def close(self) -> None:
        with self._lock:
            self._closed = True


class FileKeyValueStore(KeyValueStore):
    """Stores one JSON document per key in a directory."""

    _SUFFIX = ".json"

    def __init__(self, directory: str):
        if not directory:
            raise ValueError("directory is required")
        self._directory = directory
        self._lock = threading.Lock()
        os.makedirs(directory, exist_ok=True)

    @property
    def directory(self) -> str:
        return self._directory

    def _path(self, key: str) -> str:
        return os.path.join(self._directory, quote(key, safe="") + self._SUFFIX)

    def save(self, ctx: RunContext | None, key: str, value: Any) -> None:
        _check(ctx, key)
        encoded = _encode(key, value)
        with self._lock:
            fd, tmp_path = tempfile.mkstemp(dir=self._directory, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(encoded)
                os.replace(tmp_path, self._path(key))
            except OSError as e:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise KeyValueStoreError(f"failed to write key {key}: {e}") from e

    def load(self, ctx: RunContext | None, key: str) -> Any:
        _check(ctx, key)
        path = self._path(key)
        with self._lock:
            try:
                with open(path, "r", encoding="utf-8") as f:
                    return json.load(f)
            except FileNotFoundError:
                raise KeyNotFoundError(key) from None
            except json.JSONDecodeError as e:
                raise KeyValueStoreError(f"corrupt value for key {key}: {e}") from e

    def delete(self, ctx: RunContext | None, key: str) -> None:
        _check(ctx, key)
        with self._lock:
            try:
                os.remove(self._path(key))
            except FileNotFoundError:
                pass

    def list(self, ctx: RunContext | None) -> list[str]:
        _check(ctx)
        with self._lock:
            names = os.listdir(self._directory)
        return sorted(
            unquote(name[: -len(self._SUFFIX)])
            for name in names
            if name.endswith(self._SUFFIX)
        )

    def close(self) -> None:
        pass


class RedisKeyValueStore(KeyValueStore):
    """Stores JSON strings in Redis under a per-namespace prefix."""

    def __init__(self, redis_client: Redis, namespace: str, close_client: bool = False):
        if redis_client is None:
            raise ValueError("redis_client is required")
        if not namespace:
            raise ValueError("namespace is required")
        self._redis = redis_client
        self._namespace = namespace
        self._close_client = close_client

    def _key(self, key: str) -> str:
        return f"kv:{self._namespace}:{key}"

    def save(self, ctx: RunContext | None, key: str, value: Any) -> None:
        _check(ctx, key)
        encoded = _encode(key, value)
        try:
            self._redis.set(self._key(key), encoded)
        except RedisError as e:
            raise KeyValueStoreError(f"failed to write key {key}: {e}") from e

    def load(self, ctx: RunContext | None, key: str) -> Any:
        _check(ctx, key)
        data = self._redis.get(self._key(key))
        if data is None:
            raise KeyNotFoundError(key)
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        return json.loads(data)

    def delete(self, ctx: RunContext | None, key: str) -> None:
        _check(ctx, key)
        self._redis.delete(self._key(key))

    def list(self, ctx: RunContext | None) -> list[str]:
        _check(ctx)
        prefix = self._key("")
        keys = []
        for raw in self._redis.scan_iter(match=f"{prefix}*"):
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            keys.append(raw[len(prefix):])
        return sorted(keys)

    def close(self) -> None:
        if self._close_client:
            self._redis.close()


def memory_store_factory() -> KeyValueStoreFactory:
    """Factory producing an independent in-memory store per namespace."""
    return lambda namespace: InMemoryKeyValueStore()


def file_store_factory(base_dir: str) -> KeyValueStoreFactory:
    """Factory producing a file store in a per-namespace subdirectory."""
    if not base_dir:
        raise ValueError("base_dir is required")
    return lambda namespace: FileKeyValueStore(os.path.join(base_dir, namespace))


def redis_store_factory(redis_client: Redis) -> KeyValueStoreFactory:
    """Factory producing Redis stores sharing one client."""
    if redis_client is None:
        raise ValueError("redis_client is required")
    return lambda namespace: RedisKeyValueStore(redis_client, namespace)
