from __future__ import annotations

import time
from datetime import timedelta
from typing import Callable

import redis
import structlog

from intake.config import Settings
from intake.state import CacheEntry, IdentityScope, OnboardingRecord

logger = structlog.get_logger()

DEFAULT_RETENTION = timedelta(days=7)


def _now_ms() -> int:
    return int(time.time() * 1000)


class LocalCache:
    """Identity-scoped onboarding cache with a fixed retention window.

    Uses Redis when a client is given and an in-process dict otherwise; Redis
    errors fall back to the dict so a flaky cache never stops the wizard.
    """

    def __init__(
        self,
        client: redis.Redis | None = None,
        *,
        namespace: str = "onboarding",
        retention: timedelta = DEFAULT_RETENTION,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._client = client
        self._memory: dict[str, str] = {}
        self.namespace = namespace
        self.retention = retention
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "LocalCache":
        client = redis.Redis.from_url(settings.redis_url, decode_responses=True) if settings.redis_url else None
        return cls(
            client,
            namespace=settings.cache_namespace,
            retention=timedelta(days=settings.cache_retention_days),
        )

    @property
    def retention_ms(self) -> int:
        return int(self.retention.total_seconds() * 1000)

    @property
    def placeholder_prefix(self) -> str:
        return f"{self.namespace}:placeholder:"

    def key_for(self, scope: IdentityScope) -> str:
        return scope.cache_key(self.namespace)

    def is_expired(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.timestamp >= self.retention_ms

    def load(self, scope: IdentityScope) -> CacheEntry | None:
        return self.read_entry(self.key_for(scope))

    def store(
        self,
        scope: IdentityScope,
        record: OnboardingRecord,
        *,
        completed_steps: list[int] | None = None,
        progress: float = 0.0,
    ) -> CacheEntry:
        if not scope.is_real:
            raise ValueError(f"refusing to cache onboarding data under {scope}")
        entry = CacheEntry(
            record=record,
            completed_steps=completed_steps if completed_steps is not None else record.completed_steps,
            progress=progress,
            timestamp=self._clock(),
        )
        self.write_entry(self.key_for(scope), entry)
        return entry

    def delete(self, scope: IdentityScope) -> None:
        self._delete(self.key_for(scope))

    def read_entry(self, key: str) -> CacheEntry | None:
        raw = self._get(key)
        if not raw:
            return None
        try:
            entry = CacheEntry.model_validate_json(raw)
        except ValueError as exc:
            logger.error("discarding unreadable cache entry", key=key, error=str(exc)[:200])
            self._delete(key)
            return None
        if self.is_expired(entry):
            logger.info("discarding expired cache entry", key=key, timestamp=entry.timestamp)
            self._delete(key)
            return None
        return entry

    def write_entry(self, key: str, entry: CacheEntry) -> None:
        self._set(key, entry.model_dump_json())

    def placeholder_entries(self) -> list[tuple[str, CacheEntry]]:
        found: list[tuple[str, CacheEntry]] = []
        for key in self._keys(self.placeholder_prefix):
            entry = self.read_entry(key)
            if entry is not None:
                found.append((key, entry))
        return found

    def delete_placeholders(self) -> int:
        keys = self._keys(self.placeholder_prefix)
        for key in keys:
            self._delete(key)
        return len(keys)

    def _get(self, key: str) -> str | None:
        if self._client is not None:
            try:
                raw = self._client.get(key)
            except redis.RedisError as exc:
                logger.warning("redis read failed, using memory", key=key, error=str(exc))
            else:
                if raw:
                    return raw
        return self._memory.get(key)

    def _set(self, key: str, payload: str) -> None:
        if self._client is None:
            self._memory[key] = payload
            return
        try:
            self._client.set(key, payload, px=self.retention_ms)
        except redis.RedisError as exc:
            logger.warning("redis write failed, using memory", key=key, error=str(exc))
            self._memory[key] = payload

    def _delete(self, key: str) -> None:
        self._memory.pop(key, None)
        if self._client is None:
            return
        try:
            self._client.delete(key)
        except redis.RedisError as exc:
            logger.warning("redis delete failed", key=key, error=str(exc))

    def _keys(self, prefix: str) -> list[str]:
        keys = {k for k in self._memory if k.startswith(prefix)}
        if self._client is not None:
            try:
                keys.update(self._client.scan_iter(match=f"{prefix}*"))
            except redis.RedisError as exc:
                logger.warning("redis scan failed", prefix=prefix, error=str(exc))
        return sorted(keys)
