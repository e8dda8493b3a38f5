from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from functools import lru_cache
from typing import Protocol

import redis
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from shiftwatch.db import atomic
from shiftwatch.errors import NotFoundError
from shiftwatch.models import Admin, Guard
from shiftwatch.settings import get_redis_url, get_settings, uses_redis_version_cache

logger = logging.getLogger("shiftwatch.session_versions")


class PrincipalKind(str, enum.Enum):
    GUARD = "guard"
    ADMIN = "admin"


_PRINCIPAL_MODELS: dict[PrincipalKind, type[Guard] | type[Admin]] = {
    PrincipalKind.GUARD: Guard,
    PrincipalKind.ADMIN: Admin,
}


def _model_for(kind: PrincipalKind) -> type[Guard] | type[Admin]:
    return _PRINCIPAL_MODELS[PrincipalKind(kind)]


class TokenVersionCache(Protocol):
    def get(self, kind: PrincipalKind, principal_id: int) -> int | None: ...

    def set(self, kind: PrincipalKind, principal_id: int, version: int) -> None: ...


class MemoryTokenVersionCache:
    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, int], tuple[int, float]] = {}

    def get(self, kind: PrincipalKind, principal_id: int) -> int | None:
        key = (PrincipalKind(kind).value, principal_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            version, expires_at = entry
            if expires_at <= self._clock():
                self._entries.pop(key, None)
                return None
            return version

    def set(self, kind: PrincipalKind, principal_id: int, version: int) -> None:
        key = (PrincipalKind(kind).value, principal_id)
        with self._lock:
            self._entries[key] = (int(version), self._clock() + self.ttl_seconds)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class RedisTokenVersionCache:
    """Shared cache across workers. Redis failures count as a miss."""

    def __init__(self, client: redis.Redis, ttl_seconds: int) -> None:
        self._client = client
        self.ttl_seconds = max(1, int(ttl_seconds))

    @staticmethod
    def _key(kind: PrincipalKind, principal_id: int) -> str:
        return f"token_version:{PrincipalKind(kind).value}:{principal_id}"

    def get(self, kind: PrincipalKind, principal_id: int) -> int | None:
        try:
            raw = self._client.get(self._key(kind, principal_id))
        except redis.RedisError:
            logger.warning(
                "token_version_cache_read_failed",
                extra={"kind": PrincipalKind(kind).value, "principal_id": principal_id},
            )
            return None
        if raw is None:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            return None

    def set(self, kind: PrincipalKind, principal_id: int, version: int) -> None:
        try:
            self._client.set(self._key(kind, principal_id), int(version), ex=self.ttl_seconds)
        except redis.RedisError:
            logger.warning(
                "token_version_cache_write_failed",
                extra={"kind": PrincipalKind(kind).value, "principal_id": principal_id},
            )


class SessionVersionGuard:
    """Per-principal token versions.

    The principal row is the source of truth. The cache only short-cuts a
    matching version; anything else is re-read from the row, so a stale entry
    can keep a revoked credential alive for at most the cache TTL and never
    rejects a current one.
    """

    def __init__(self, cache: TokenVersionCache) -> None:
        self.cache = cache

    def bump_version(self, db: Session, kind: PrincipalKind, principal_id: int) -> int:
        model = _model_for(kind)
        with atomic(db):
            new_version = db.scalar(
                update(model)
                .where(model.id == principal_id)
                .values(token_version=model.token_version + 1)
                .returning(model.token_version)
            )
            if new_version is None:
                raise NotFoundError(code="PRINCIPAL_NOT_FOUND", message="Account not found.")
        self.cache.set(kind, principal_id, int(new_version))
        logger.info(
            "token_version_bumped",
            extra={"kind": PrincipalKind(kind).value, "principal_id": principal_id, "token_version": new_version},
        )
        return int(new_version)

    def stored_version(self, db: Session, kind: PrincipalKind, principal_id: int) -> int | None:
        model = _model_for(kind)
        value = db.scalar(select(model.token_version).where(model.id == principal_id))
        return int(value) if value is not None else None

    def is_current(self, db: Session, kind: PrincipalKind, principal_id: int, presented_version: int) -> bool:
        cached = self.cache.get(kind, principal_id)
        if cached is not None and cached == presented_version:
            return True
        stored = self.stored_version(db, kind, principal_id)
        if stored is None:
            return False
        self.cache.set(kind, principal_id, stored)
        return stored == presented_version


@lru_cache
def get_session_version_guard() -> SessionVersionGuard:
    settings = get_settings()
    cache: TokenVersionCache
    if uses_redis_version_cache():
        client = redis.Redis.from_url(get_redis_url(), decode_responses=True)
        cache = RedisTokenVersionCache(client, settings.token_version_cache_ttl_seconds)
    else:
        cache = MemoryTokenVersionCache(settings.token_version_cache_ttl_seconds)
    return SessionVersionGuard(cache)
