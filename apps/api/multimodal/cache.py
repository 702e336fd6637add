"""Result cache keyed by asset content, shared across workers through Redis."""

from __future__ import annotations

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)


def build_cache_key(kind: str, content_hash: Optional[str], options: Optional[Dict[str, Any]] = None) -> str:
    material = json.dumps(
        {"kind": kind, "content_hash": content_hash, "options": options or {}},
        sort_keys=True,
        default=str,
    )
    return "vex:analysis:" + hashlib.sha256(material.encode("utf-8")).hexdigest()


class ResultCache(ABC):
    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def put(self, key: str, value: Dict[str, Any]) -> None:
        ...


class InMemoryResultCache(ResultCache):
    """Process-local cache, used in tests and single-process runs."""

    def __init__(self):
        self._entries: Dict[str, Dict[str, Any]] = {}

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        return dict(entry) if entry is not None else None

    async def put(self, key: str, value: Dict[str, Any]) -> None:
        self._entries[key] = dict(value)


class RedisResultCache(ResultCache):
    def __init__(self, url: str, ttl_seconds: int):
        self.url = url
        self.ttl_seconds = max(int(ttl_seconds), 1)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        client = redis.from_url(self.url, decode_responses=True)
        try:
            raw = await client.get(key)
        finally:
            await client.aclose()
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable cache entry %s", key)
            return None

    async def put(self, key: str, value: Dict[str, Any]) -> None:
        client = redis.from_url(self.url, decode_responses=True)
        try:
            await client.set(key, json.dumps(value, default=str), ex=self.ttl_seconds)
        finally:
            await client.aclose()


def get_result_cache() -> Optional[ResultCache]:
    if not settings.ANALYSIS_CACHE_ENABLED:
        return None
    return RedisResultCache(settings.REDIS_URL, settings.ANALYSIS_CACHE_TTL_SECONDS)
