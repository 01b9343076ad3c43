from __future__ import annotations

import random
import time
from dataclasses import dataclass, field, replace
from typing import Any

MASTER_CANONICAL_ID = "master_001"
MASTER_DEFAULT_NAME = "主人"
MASTER_DEFAULT_ALIASES = frozenset({"主人", "master", "master_default"})


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Identity:
    """One person across voiceprint IDs, character-book IDs, names and aliases."""

    canonical_id: str
    display_name: str
    character_id: str | None = None
    person_identifier: str | None = None
    aliases: frozenset[str] = field(default_factory=frozenset)
    is_master: bool = False
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def __post_init__(self) -> None:
        if not str(self.canonical_id or "").strip():
            raise ValueError("canonical_id must not be blank")
        if not str(self.display_name or "").strip():
            raise ValueError("display_name must not be blank")
        object.__setattr__(self, "aliases", _clean_aliases(self.aliases))

    def identifiers(self) -> set[str]:
        out = {self.canonical_id, self.display_name, *self.aliases}
        if self.character_id:
            out.add(self.character_id)
        if self.person_identifier:
            out.add(self.person_identifier)
        return {x for x in out if x}

    def answers_to(self, identifier: str) -> bool:
        return (
            identifier == self.character_id
            or identifier == self.person_identifier
            or identifier == self.display_name
            or identifier in self.aliases
        )

    def with_aliases(self, aliases: Any) -> "Identity":
        return replace(self, aliases=_clean_aliases(aliases))

    def to_dict(self) -> dict[str, Any]:
        return {
            "canonical_id": self.canonical_id,
            "character_id": self.character_id,
            "person_identifier": self.person_identifier,
            "display_name": self.display_name,
            "aliases": sorted(self.aliases),
            "is_master": self.is_master,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def generate_canonical_id(prefix: str = "id") -> str:
        return f"{prefix}_{now_ms()}_{random.randint(0, 9999)}"

    @classmethod
    def create_master(
        cls,
        display_name: str = MASTER_DEFAULT_NAME,
        character_id: str | None = None,
        person_identifier: str | None = None,
    ) -> "Identity":
        return cls(
            canonical_id=MASTER_CANONICAL_ID,
            character_id=character_id,
            person_identifier=person_identifier,
            display_name=display_name,
            aliases=MASTER_DEFAULT_ALIASES,
            is_master=True,
        )


def _clean_aliases(value: Any) -> frozenset[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        value = [value]
    return frozenset(str(x).strip() for x in value if str(x).strip())
