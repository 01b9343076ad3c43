from __future__ import annotations

import json
from typing import Any

from xiaoguang_lite.domain.identity import Identity
from xiaoguang_lite.infra.sqlite.db import SQLiteEngine


class IdentityRepository:
    def __init__(self, engine: SQLiteEngine) -> None:
        self.engine = engine

    def save(self, identity: Identity) -> None:
        self.engine.execute(
            """
            INSERT INTO identities(
                canonical_id,character_id,person_identifier,display_name,
                aliases_json,is_master,created_at,updated_at
            ) VALUES(?,?,?,?,?,?,?,?)
            ON CONFLICT(canonical_id) DO UPDATE SET
              character_id=excluded.character_id,
              person_identifier=excluded.person_identifier,
              display_name=excluded.display_name,
              aliases_json=excluded.aliases_json,
              is_master=excluded.is_master,
              updated_at=excluded.updated_at
            """,
            (
                identity.canonical_id,
                identity.character_id,
                identity.person_identifier,
                identity.display_name,
                json.dumps(sorted(identity.aliases), ensure_ascii=False),
                1 if identity.is_master else 0,
                int(identity.created_at),
                int(identity.updated_at),
            ),
        )

    def get(self, canonical_id: str) -> Identity | None:
        row = self.engine.query_one(
            "SELECT * FROM identities WHERE canonical_id=?", (canonical_id,)
        )
        return None if row is None else _to_identity(row)

    def list_all(self) -> list[Identity]:
        rows = self.engine.query_all("SELECT * FROM identities ORDER BY created_at ASC")
        return [_to_identity(row) for row in rows]

    def delete(self, canonical_id: str) -> int:
        return self.engine.execute(
            "DELETE FROM identities WHERE canonical_id=?", (canonical_id,)
        )


def _to_identity(row: dict[str, Any]) -> Identity:
    try:
        aliases = json.loads(str(row.get("aliases_json") or "[]"))
    except json.JSONDecodeError:
        aliases = []
    return Identity(
        canonical_id=str(row["canonical_id"]),
        character_id=row.get("character_id") or None,
        person_identifier=row.get("person_identifier") or None,
        display_name=str(row["display_name"]),
        aliases=frozenset(str(a) for a in aliases if str(a).strip())
        if isinstance(aliases, list)
        else frozenset(),
        is_master=bool(row.get("is_master")),
        created_at=int(row["created_at"]),
        updated_at=int(row["updated_at"]),
    )
