from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol

from redis import Redis
from redis.exceptions import RedisError

from .codec import CacheSnapshot, decode_snapshot, encode_snapshot

logger = logging.getLogger("cache")


class CacheStore(Protocol):
    def read(self) -> Optional[CacheSnapshot]:
        ...

    def write(self, snapshot: CacheSnapshot) -> None:
        ...

    def invalidate(self) -> None:
        ...


class FileCacheStore:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def read(self) -> Optional[CacheSnapshot]:
        try:
            data = self.path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Failed to read cache snapshot from %s: %s", self.path, exc)
            return None
        return decode_snapshot(data)

    def write(self, snapshot: CacheSnapshot) -> None:
        data = encode_snapshot(snapshot)
        staging = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            staging.write_bytes(data)
            staging.replace(self.path)
        except OSError as exc:
            logger.warning("Failed to persist cache snapshot to %s: %s", self.path, exc)
            return
        logger.info("Cache snapshot written to %s (%s bytes)", self.path, len(data))

    def invalidate(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to remove cache snapshot %s: %s", self.path, exc)


class RedisCacheStore:
    def __init__(self, client: Redis, key: str = "soundmap:som-cache") -> None:
        self.client = client
        self.key = key

    def read(self) -> Optional[CacheSnapshot]:
        try:
            data = self.client.get(self.key)
        except RedisError as exc:
            logger.warning("Failed to read cache snapshot %s from redis: %s", self.key, exc)
            return None
        if data is None:
            return None
        if isinstance(data, str):
            data = data.encode("utf-8")
        return decode_snapshot(data)

    def write(self, snapshot: CacheSnapshot) -> None:
        data = encode_snapshot(snapshot)
        try:
            self.client.set(self.key, data)
        except RedisError as exc:
            logger.warning("Failed to persist cache snapshot %s to redis: %s", self.key, exc)
            return
        logger.info("Cache snapshot written to redis key %s (%s bytes)", self.key, len(data))

    def invalidate(self) -> None:
        try:
            self.client.delete(self.key)
        except RedisError as exc:
            logger.warning("Failed to remove cache snapshot %s from redis: %s", self.key, exc)

