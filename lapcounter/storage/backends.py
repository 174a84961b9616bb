"""
Object Store Backends: key → bytes blob storage

Every backend offers the same minimal contract the session store relies on:
- put(key, data)   whole-object overwrite
- get(key)         bytes, or None when the key is absent
- list(prefix)     keys under a prefix
- delete(key)

No backend promises read-after-write consistency, compare-and-swap or
transactions; callers must treat every read as possibly stale.

Implementations:
- InMemoryObjectStore: development/testing, with stale-read and failure
  injection to reproduce an eventually consistent blob store
- FileSystemBackend:   one file per key under a root directory
- S3Backend:           AWS S3 / MinIO / R2 via boto3
- RedisBackend:        redis.asyncio, keys scanned by prefix
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from lapcounter.core import constants as C
from lapcounter.core.config import StoreConfig
from lapcounter.core.errors import TransientStoreError
from lapcounter.core.types import Result, Ok, Err

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObjectMetadata:
    """Metadata returned by a successful put."""
    key: str
    size_bytes: int
    etag: str
    written_at: datetime


def _metadata(key: str, data: bytes) -> ObjectMetadata:
    return ObjectMetadata(
        key=key,
        size_bytes=len(data),
        etag=hashlib.md5(data).hexdigest(),
        written_at=datetime.now(timezone.utc),
    )


class ObjectStoreBackend(ABC):
    """Abstract blob store interface."""

    @abstractmethod
    async def put(self, key: str, data: bytes) -> Result[ObjectMetadata, TransientStoreError]:
        """Store object, overwriting any existing value."""

    @abstractmethod
    async def get(self, key: str) -> Result[Optional[bytes], TransientStoreError]:
        """Retrieve object; Ok(None) when absent."""

    @abstractmethod
    async def list(self, prefix: str) -> Result[List[str], TransientStoreError]:
        """Keys starting with prefix, sorted."""

    @abstractmethod
    async def delete(self, key: str) -> Result[bool, TransientStoreError]:
        """Delete object; Ok(False) when it did not exist."""

    async def close(self) -> None:
        """Release connections. Default: nothing to release."""


# =============================================================================
# IN-MEMORY
# =============================================================================
class InMemoryObjectStore(ObjectStoreBackend):
    """
    In-memory blob store with eventual-consistency simulation.

    Args:
        stale_reads: After each put, this many subsequent reads of the
            same key still observe the previous value (None for a new key).
            list() hides newly created keys while their reads are stale.
        latency_s: Delay before every operation. Even at 0 the call yields
            to the event loop, so concurrent requests interleave at every
            store access the way they would against a remote store.

    Example:
        store = InMemoryObjectStore(stale_reads=1)
        await store.put("sessions/a.json", b"v2")
        await store.get("sessions/a.json")   # previous value
        await store.get("sessions/a.json")   # b"v2"
    """

    __slots__ = (
        "_objects", "_previous", "_stale_remaining", "_stale_reads",
        "_latency_s", "_lock", "_fail_puts", "_fail_gets",
        "put_count", "get_count", "write_log",
    )

    def __init__(self, stale_reads: int = 0, latency_s: float = 0.0) -> None:
        self._objects: Dict[str, bytes] = {}
        self._previous: Dict[str, Optional[bytes]] = {}
        self._stale_remaining: Dict[str, int] = {}
        self._stale_reads = stale_reads
        self._latency_s = latency_s
        self._lock = asyncio.Lock()
        self._fail_puts = 0
        self._fail_gets = 0
        self.put_count = 0
        self.get_count = 0
        self.write_log: List[str] = []

    def fail_next_puts(self, count: int) -> None:
        """Make the next `count` puts fail with a transient error."""
        self._fail_puts = count

    def fail_next_gets(self, count: int) -> None:
        """Make the next `count` gets fail with a transient error."""
        self._fail_gets = count

    def set_stale_reads(self, count: int) -> None:
        self._stale_reads = count

    async def _simulate_network_latency(self) -> None:
        await asyncio.sleep(self._latency_s)

    async def put(self, key: str, data: bytes) -> Result[ObjectMetadata, TransientStoreError]:
        await self._simulate_network_latency()
        async with self._lock:
            self.put_count += 1
            if self._fail_puts > 0:
                self._fail_puts -= 1
                return Err(TransientStoreError.write_failed(key))
            if self._stale_reads > 0:
                self._previous[key] = self._objects.get(key)
                self._stale_remaining[key] = self._stale_reads
            self._objects[key] = bytes(data)
            self.write_log.append(key)
            return Ok(_metadata(key, data))

    async def get(self, key: str) -> Result[Optional[bytes], TransientStoreError]:
        await self._simulate_network_latency()
        async with self._lock:
            self.get_count += 1
            if self._fail_gets > 0:
                self._fail_gets -= 1
                return Err(TransientStoreError.read_failed(key))
            remaining = self._stale_remaining.get(key, 0)
            if remaining > 0:
                self._stale_remaining[key] = remaining - 1
                return Ok(self._previous.get(key))
            return Ok(self._objects.get(key))

    async def list(self, prefix: str) -> Result[List[str], TransientStoreError]:
        await self._simulate_network_latency()
        async with self._lock:
            keys = []
            for key in self._objects:
                if not key.startswith(prefix):
                    continue
                if self._stale_remaining.get(key, 0) > 0 and self._previous.get(key) is None:
                    continue
                keys.append(key)
            return Ok(sorted(keys))

    async def delete(self, key: str) -> Result[bool, TransientStoreError]:
        await self._simulate_network_latency()
        async with self._lock:
            existed = self._objects.pop(key, None) is not None
            self._previous.pop(key, None)
            self._stale_remaining.pop(key, None)
            return Ok(existed)

    def peek(self, key: str) -> Optional[bytes]:
        """Latest written value, bypassing staleness (test inspection)."""
        return self._objects.get(key)


# =============================================================================
# FILESYSTEM
# =============================================================================
class FileSystemBackend(ObjectStoreBackend):
    """
    Local filesystem blob store.

    Objects stored at: {data_dir}/{key}. Writes go to a temp file in the
    same directory and are renamed into place, so readers never observe a
    half-written document.
    """

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)

    def _key_to_path(self, key: str) -> Path:
        path = (self._data_dir / key).resolve()
        root = self._data_dir.resolve()
        if root not in path.parents:
            raise ValueError(f"Key escapes data directory: {key}")
        return path

    def _write(self, key: str, data: bytes) -> None:
        path = self._key_to_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _read(self, key: str) -> Optional[bytes]:
        path = self._key_to_path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def _list(self, prefix: str) -> List[str]:
        root = self._data_dir.resolve()
        keys = []
        for path in root.rglob("*"):
            if not path.is_file() or path.name.startswith(".tmp-"):
                continue
            key = path.relative_to(root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def _delete(self, key: str) -> bool:
        path = self._key_to_path(key)
        if not path.exists():
            return False
        path.unlink()
        return True

    async def put(self, key: str, data: bytes) -> Result[ObjectMetadata, TransientStoreError]:
        try:
            await asyncio.to_thread(self._write, key, data)
            return Ok(_metadata(key, data))
        except (OSError, ValueError) as e:
            return Err(TransientStoreError.write_failed(key, cause=e))

    async def get(self, key: str) -> Result[Optional[bytes], TransientStoreError]:
        try:
            return Ok(await asyncio.to_thread(self._read, key))
        except (OSError, ValueError) as e:
            return Err(TransientStoreError.read_failed(key, cause=e))

    async def list(self, prefix: str) -> Result[List[str], TransientStoreError]:
        try:
            return Ok(await asyncio.to_thread(self._list, prefix))
        except OSError as e:
            return Err(TransientStoreError.read_failed(prefix, cause=e))

    async def delete(self, key: str) -> Result[bool, TransientStoreError]:
        try:
            return Ok(await asyncio.to_thread(self._delete, key))
        except (OSError, ValueError) as e:
            return Err(TransientStoreError.write_failed(key, cause=e))


# =============================================================================
# S3
# =============================================================================
class S3Backend(ObjectStoreBackend):
    """
    S3-compatible blob store.

    Supports AWS S3, MinIO, Cloudflare R2 and other compatible services.
    boto3 is synchronous, so each call runs in a worker thread.
    """

    def __init__(self, config: StoreConfig) -> None:
        self._config = config
        self._client: Any = None

    def _get_client(self) -> Any:
        """Lazy initialize S3 client."""
        if self._client is None:
            import boto3

            self._client = boto3.client(
                "s3",
                endpoint_url=self._config.s3_endpoint,
                region_name=self._config.s3_region,
            )
        return self._client

    @staticmethod
    def _is_missing(error: Exception) -> bool:
        response = getattr(error, "response", None) or {}
        code = response.get("Error", {}).get("Code")
        return code in ("NoSuchKey", "404", "NotFound")

    def _put(self, key: str, data: bytes) -> None:
        self._get_client().put_object(
            Bucket=self._config.s3_bucket,
            Key=key,
            Body=data,
            ContentType="application/json",
        )

    def _get(self, key: str) -> Optional[bytes]:
        from botocore.exceptions import ClientError

        try:
            response = self._get_client().get_object(Bucket=self._config.s3_bucket, Key=key)
        except ClientError as e:
            if self._is_missing(e):
                return None
            raise
        return response["Body"].read()

    def _list(self, prefix: str) -> List[str]:
        paginator = self._get_client().get_paginator("list_objects_v2")
        keys: List[str] = []
        for page in paginator.paginate(
            Bucket=self._config.s3_bucket,
            Prefix=prefix,
            PaginationConfig={"PageSize": C.LIST_PAGE_SIZE},
        ):
            keys.extend(obj["Key"] for obj in page.get("Contents", []))
        return sorted(keys)

    def _delete(self, key: str) -> bool:
        self._get_client().delete_object(Bucket=self._config.s3_bucket, Key=key)
        return True

    async def put(self, key: str, data: bytes) -> Result[ObjectMetadata, TransientStoreError]:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            await asyncio.to_thread(self._put, key, data)
            return Ok(_metadata(key, data))
        except (BotoCoreError, ClientError) as e:
            return Err(TransientStoreError.write_failed(key, cause=e))

    async def get(self, key: str) -> Result[Optional[bytes], TransientStoreError]:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            return Ok(await asyncio.to_thread(self._get, key))
        except (BotoCoreError, ClientError) as e:
            return Err(TransientStoreError.read_failed(key, cause=e))

    async def list(self, prefix: str) -> Result[List[str], TransientStoreError]:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            return Ok(await asyncio.to_thread(self._list, prefix))
        except (BotoCoreError, ClientError) as e:
            return Err(TransientStoreError.read_failed(prefix, cause=e))

    async def delete(self, key: str) -> Result[bool, TransientStoreError]:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            return Ok(await asyncio.to_thread(self._delete, key))
        except (BotoCoreError, ClientError) as e:
            return Err(TransientStoreError.write_failed(key, cause=e))


# =============================================================================
# REDIS
# =============================================================================
class RedisBackend(ObjectStoreBackend):
    """
    Redis as a plain key → bytes store.

    Only GET/SET/DEL/SCAN are used; no Lua, no WATCH, so the store keeps the
    same weak guarantees as any other blob backend.
    """

    def __init__(self, config: StoreConfig) -> None:
        self._config = config
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            import redis.asyncio as aioredis

            self._client = aioredis.from_url(
                self._config.redis_url,
                socket_timeout=self._config.timeout_s,
            )
        return self._client

    @staticmethod
    def _escape_pattern(prefix: str) -> str:
        for ch in ("\\", "*", "?", "[", "]"):
            prefix = prefix.replace(ch, "\\" + ch)
        return prefix + "*"

    async def put(self, key: str, data: bytes) -> Result[ObjectMetadata, TransientStoreError]:
        from redis.exceptions import RedisError

        try:
            await self._get_client().set(key, data)
            return Ok(_metadata(key, data))
        except RedisError as e:
            return Err(TransientStoreError.write_failed(key, cause=e))

    async def get(self, key: str) -> Result[Optional[bytes], TransientStoreError]:
        from redis.exceptions import RedisError

        try:
            return Ok(await self._get_client().get(key))
        except RedisError as e:
            return Err(TransientStoreError.read_failed(key, cause=e))

    async def list(self, prefix: str) -> Result[List[str], TransientStoreError]:
        from redis.exceptions import RedisError

        try:
            keys = []
            async for raw in self._get_client().scan_iter(
                match=self._escape_pattern(prefix), count=C.LIST_PAGE_SIZE,
            ):
                keys.append(raw.decode() if isinstance(raw, bytes) else raw)
            return Ok(sorted(keys))
        except RedisError as e:
            return Err(TransientStoreError.read_failed(prefix, cause=e))

    async def delete(self, key: str) -> Result[bool, TransientStoreError]:
        from redis.exceptions import RedisError

        try:
            return Ok(bool(await self._get_client().delete(key)))
        except RedisError as e:
            return Err(TransientStoreError.write_failed(key, cause=e))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def create_backend(config: StoreConfig) -> ObjectStoreBackend:
    """Instantiate the backend named in configuration."""
    if config.backend == "memory":
        return InMemoryObjectStore()
    if config.backend == "filesystem":
        return FileSystemBackend(config.data_dir)
    if config.backend == "s3":
        return S3Backend(config)
    if config.backend == "redis":
        return RedisBackend(config)
    raise ValueError(f"Unknown store backend '{config.backend}'")
