"""
Unified identity registry.

Maps voiceprint person identifiers, character-book IDs, display names and
aliases onto one canonical identity. The cache and the alias index live behind
a single ``anyio.Lock``; readers and writers take the same lock so a resolve
never observes a half-rebuilt index.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from functools import partial
from typing import Callable

import anyio

from xiaoguang_lite.domain.errors import DuplicateMasterError, ImmutableCanonicalIdError
from xiaoguang_lite.domain.identity import Identity, now_ms
from xiaoguang_lite.infra.sqlite.identity_repository import IdentityRepository

logger = logging.getLogger(__name__)

IdentityUpdater = Callable[[Identity], Identity]


class IdentityRegistry:
    def __init__(self, repository: IdentityRepository | None = None) -> None:
        self.repository = repository
        self._lock = anyio.Lock()
        self._cache: dict[str, Identity] = {}
        self._alias_index: dict[str, str] = {}
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> int:
        async with self._lock:
            loaded: list[Identity] = []
            if self.repository is not None:
                loaded = await anyio.to_thread.run_sync(self.repository.list_all)
            self._cache.clear()
            self._alias_index.clear()
            for identity in loaded:
                self._cache_locked(identity)
            self._initialized = True
        logger.info("[IdentityRegistry] loaded %d identities", len(loaded))
        return len(loaded)

    async def resolve(self, identifier: str | None) -> Identity | None:
        async with self._lock:
            return self._resolve_locked(identifier)

    async def register(self, identity: Identity, *, persist: bool = True) -> Identity:
        async with self._lock:
            master = self._master_locked()
            if (
                identity.is_master
                and master is not None
                and master.canonical_id != identity.canonical_id
            ):
                raise DuplicateMasterError(master.canonical_id, identity.canonical_id)
            if persist:
                await self._persist(identity)
            previous = self._cache.get(identity.canonical_id)
            if previous is not None:
                self._uncache_locked(previous)
            self._cache_locked(identity)
        logger.info(
            "[IdentityRegistry] registered %s (%s)",
            identity.canonical_id,
            identity.display_name,
        )
        return identity

    async def update(
        self, canonical_id: str, updater: IdentityUpdater
    ) -> Identity | None:
        async with self._lock:
            return await self._update_locked(canonical_id, updater)

    async def add_alias(self, identifier: str, alias: str) -> Identity | None:
        value = str(alias or "").strip()
        if not value:
            raise ValueError("alias must not be blank")
        async with self._lock:
            identity = self._resolve_locked(identifier)
            if identity is None:
                return None
            return await self._update_locked(
                identity.canonical_id,
                lambda current: current.with_aliases(current.aliases | {value}),
            )

    async def remove_alias(self, identifier: str, alias: str) -> Identity | None:
        value = str(alias or "").strip()
        async with self._lock:
            identity = self._resolve_locked(identifier)
            if identity is None:
                return None
            return await self._update_locked(
                identity.canonical_id,
                lambda current: current.with_aliases(current.aliases - {value}),
            )

    async def get_character_id(self, identifier: str) -> str | None:
        identity = await self.resolve(identifier)
        return identity.character_id if identity else None

    async def get_display_name(self, identifier: str) -> str | None:
        identity = await self.resolve(identifier)
        return identity.display_name if identity else None

    async def get_master(self) -> Identity | None:
        async with self._lock:
            return self._master_locked()

    async def has_master(self) -> bool:
        return await self.get_master() is not None

    async def list_all(self) -> list[Identity]:
        async with self._lock:
            return sorted(self._cache.values(), key=lambda x: x.created_at)

    async def _update_locked(
        self, canonical_id: str, updater: IdentityUpdater
    ) -> Identity | None:
        current = self._cache.get(canonical_id)
        if current is None:
            return None
        updated = updater(current)
        if updated.canonical_id != current.canonical_id:
            raise ImmutableCanonicalIdError(current.canonical_id, updated.canonical_id)
        if updated.is_master and not current.is_master:
            master = self._master_locked()
            if master is not None:
                raise DuplicateMasterError(master.canonical_id, canonical_id)
        updated = replace(updated, created_at=current.created_at, updated_at=now_ms())
        await self._persist(updated)
        self._uncache_locked(current)
        self._cache_locked(updated)
        return updated

    def _resolve_locked(self, identifier: str | None) -> Identity | None:
        key = str(identifier or "").strip()
        if not key:
            return None
        direct = self._cache.get(key)
        if direct is not None:
            return direct
        canonical_id = self._alias_index.get(key)
        if canonical_id is not None:
            indexed = self._cache.get(canonical_id)
            if indexed is not None:
                return indexed
        for identity in self._cache.values():
            if identity.answers_to(key):
                return identity
        return None

    def _master_locked(self) -> Identity | None:
        for identity in self._cache.values():
            if identity.is_master:
                return identity
        return None

    def _cache_locked(self, identity: Identity) -> None:
        self._cache[identity.canonical_id] = identity
        for key in identity.identifiers():
            if key == identity.canonical_id:
                continue
            owner = self._alias_index.get(key)
            if owner is not None and owner != identity.canonical_id:
                logger.debug(
                    "[IdentityRegistry] alias %r moves from %s to %s",
                    key,
                    owner,
                    identity.canonical_id,
                )
            self._alias_index[key] = identity.canonical_id

    def _uncache_locked(self, identity: Identity) -> None:
        self._cache.pop(identity.canonical_id, None)
        for key in identity.identifiers():
            if self._alias_index.get(key) == identity.canonical_id:
                self._alias_index.pop(key, None)

    async def _persist(self, identity: Identity) -> None:
        if self.repository is None:
            return
        await anyio.to_thread.run_sync(partial(self.repository.save, identity))
