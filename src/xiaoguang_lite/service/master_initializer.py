from __future__ import annotations

import logging
from dataclasses import replace

from xiaoguang_lite.domain.identity import (
    MASTER_CANONICAL_ID,
    MASTER_DEFAULT_ALIASES,
    MASTER_DEFAULT_NAME,
    Identity,
    now_ms,
)
from xiaoguang_lite.domain.knowledge import (
    ASSISTANT_CHARACTER_ID,
    CharacterProfile,
    Relationship,
    RelationType,
)
from xiaoguang_lite.service.character_book import CharacterBook
from xiaoguang_lite.service.identity_registry import IdentityRegistry

logger = logging.getLogger(__name__)

DEFAULT_MASTER_PERSON_ID = "master_default"


class MasterInitializer:
    """Single entry point that makes sure the master exists in both the
    identity registry and the character book, linked by one character id."""

    def __init__(self, registry: IdentityRegistry, character_book: CharacterBook) -> None:
        self.registry = registry
        self.character_book = character_book

    async def ensure_master(self) -> Identity:
        existing = await self.registry.get_master()
        if existing is not None:
            await self._ensure_profile(existing)
            return existing

        profiles = await self.character_book.list_profiles()
        flagged = next((p for p in profiles if p.is_master), None)
        if flagged is not None:
            logger.info("[MasterInitializer] adopting master profile %s", flagged.character_id)
            identity = Identity(
                canonical_id=MASTER_CANONICAL_ID,
                character_id=flagged.character_id,
                person_identifier=DEFAULT_MASTER_PERSON_ID,
                display_name=flagged.name,
                aliases=MASTER_DEFAULT_ALIASES | {flagged.name},
                is_master=True,
            )
            await self.registry.register(identity)
            await self._ensure_relationship(flagged.character_id)
            return identity

        misflagged = next(
            (
                p
                for p in profiles
                if MASTER_DEFAULT_NAME in (p.name, p.nickname) and not p.is_master
            ),
            None,
        )
        if misflagged is not None:
            logger.warning(
                "[MasterInitializer] repairing profile %s named %s without master flag",
                misflagged.character_id,
                MASTER_DEFAULT_NAME,
            )
            repaired = replace(
                misflagged,
                is_master=True,
                name=MASTER_DEFAULT_NAME,
                nickname=MASTER_DEFAULT_NAME,
                updated_at=now_ms(),
            )
            await self.character_book.save_profile(repaired)
            identity = Identity.create_master(
                character_id=repaired.character_id,
                person_identifier=DEFAULT_MASTER_PERSON_ID,
            )
            await self.registry.register(identity)
            await self._ensure_relationship(repaired.character_id)
            return identity

        return await self._create_default_master()

    async def update_master_voiceprint(
        self, person_identifier: str, person_name: str | None = None
    ) -> Identity | None:
        master = await self.registry.get_master()
        if master is None:
            logger.warning("[MasterInitializer] no master identity; voiceprint not linked")
            return None

        def _apply(identity: Identity) -> Identity:
            aliases = set(identity.aliases) | {person_identifier}
            if person_name and person_name != identity.display_name:
                aliases.add(person_name)
            return replace(identity, person_identifier=person_identifier).with_aliases(aliases)

        updated = await self.registry.update(master.canonical_id, _apply)
        logger.info("[MasterInitializer] master voiceprint -> %s", person_identifier)
        return updated

    async def add_master_alias(self, alias: str) -> Identity | None:
        master = await self.registry.get_master()
        if master is None:
            logger.warning("[MasterInitializer] no master identity; alias %r dropped", alias)
            return None
        return await self.registry.add_alias(master.canonical_id, alias)

    async def _create_default_master(self) -> Identity:
        stamp = now_ms()
        character_id = f"char_{stamp}_master"
        await self.character_book.save_profile(
            CharacterProfile(
                character_id=character_id,
                name=MASTER_DEFAULT_NAME,
                nickname=MASTER_DEFAULT_NAME,
                is_master=True,
                bio="小光的主人",
                background="小光的主人，通过文字聊天进行互动",
            )
        )
        await self._ensure_relationship(character_id)
        identity = Identity.create_master(
            character_id=character_id, person_identifier=DEFAULT_MASTER_PERSON_ID
        )
        await self.registry.register(identity)
        logger.info("[MasterInitializer] created default master %s", character_id)
        return identity

    async def _ensure_profile(self, identity: Identity) -> None:
        character_id = identity.character_id
        if not character_id:
            return
        if await self.character_book.get_profile(character_id) is None:
            logger.info("[MasterInitializer] creating missing master profile %s", character_id)
            await self.character_book.save_profile(
                CharacterProfile(
                    character_id=character_id,
                    name=identity.display_name,
                    nickname=identity.display_name,
                    is_master=True,
                    bio="小光的主人",
                )
            )
        await self._ensure_relationship(character_id)

    async def _ensure_relationship(self, character_id: str) -> None:
        existing = await self.character_book.get_relationship(ASSISTANT_CHARACTER_ID, character_id)
        if existing is not None:
            return
        await self.character_book.save_relationship(
            Relationship(
                from_character_id=ASSISTANT_CHARACTER_ID,
                to_character_id=character_id,
                relation_type=RelationType.MASTER,
                intimacy=1.0,
                trust=1.0,
                is_master_relationship=True,
            )
        )
        logger.info("[MasterInitializer] linked master relationship for %s", character_id)
