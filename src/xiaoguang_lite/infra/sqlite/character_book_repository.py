from __future__ import annotations

import json
from dataclasses import asdict
from typing import Any

from xiaoguang_lite.domain.knowledge import (
    CharacterMemory,
    CharacterProfile,
    MemoryCategory,
    Relationship,
    RelationType,
)
from xiaoguang_lite.infra.sqlite.db import SQLiteEngine


class CharacterBookRepository:
    def __init__(self, engine: SQLiteEngine) -> None:
        self.engine = engine

    # profiles

    def save_profile(self, profile: CharacterProfile) -> None:
        payload = asdict(profile)
        payload["aliases"] = list(profile.aliases)
        payload["interests"] = list(profile.interests)
        self.engine.execute(
            """
            INSERT INTO character_profiles(
                character_id,name,is_master,platform_id,profile_json,
                created_at,last_seen_at,updated_at
            ) VALUES(?,?,?,?,?,?,?,?)
            ON CONFLICT(character_id) DO UPDATE SET
              name=excluded.name,
              is_master=excluded.is_master,
              platform_id=excluded.platform_id,
              profile_json=excluded.profile_json,
              last_seen_at=excluded.last_seen_at,
              updated_at=excluded.updated_at
            """,
            (
                profile.character_id,
                profile.name,
                1 if profile.is_master else 0,
                profile.platform_id,
                json.dumps(payload, ensure_ascii=False),
                int(profile.created_at),
                int(profile.last_seen_at),
                int(profile.updated_at),
            ),
        )

    def get_profile(self, character_id: str) -> CharacterProfile | None:
        row = self.engine.query_one(
            "SELECT profile_json FROM character_profiles WHERE character_id=?",
            (character_id,),
        )
        return None if row is None else _to_profile(row["profile_json"])

    def get_profile_by_platform_id(self, platform_id: str) -> CharacterProfile | None:
        row = self.engine.query_one(
            "SELECT profile_json FROM character_profiles WHERE platform_id=? LIMIT 1",
            (platform_id,),
        )
        return None if row is None else _to_profile(row["profile_json"])

    def list_profiles(self) -> list[CharacterProfile]:
        rows = self.engine.query_all(
            "SELECT profile_json FROM character_profiles ORDER BY last_seen_at DESC"
        )
        return [p for p in (_to_profile(r["profile_json"]) for r in rows) if p]

    def delete_profile(self, character_id: str) -> int:
        with self.engine.transaction() as conn:
            conn.execute("DELETE FROM character_memories WHERE character_id=?", (character_id,))
            conn.execute(
                """
                DELETE FROM character_relationships
                WHERE from_character_id=? OR to_character_id=?
                """,
                (character_id, character_id),
            )
            return conn.execute(
                "DELETE FROM character_profiles WHERE character_id=?", (character_id,)
            ).rowcount

    # memories

    def save_memory(self, memory: CharacterMemory) -> None:
        self.engine.execute(
            """
            INSERT INTO character_memories(
                memory_id,character_id,category,content,importance,emotional_valence,
                emotion_tag,emotion_intensity,tags_json,related_json,access_count,
                last_accessed,created_at,expires_at
            ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?)
            ON CONFLICT(memory_id) DO UPDATE SET
              category=excluded.category,
              content=excluded.content,
              importance=excluded.importance,
              emotional_valence=excluded.emotional_valence,
              emotion_tag=excluded.emotion_tag,
              emotion_intensity=excluded.emotion_intensity,
              tags_json=excluded.tags_json,
              related_json=excluded.related_json,
              access_count=excluded.access_count,
              last_accessed=excluded.last_accessed,
              expires_at=excluded.expires_at
            """,
            (
                memory.memory_id,
                memory.character_id,
                memory.category.value,
                memory.content,
                float(memory.importance),
                float(memory.emotional_valence),
                memory.emotion_tag,
                memory.emotion_intensity,
                json.dumps(list(memory.tags), ensure_ascii=False),
                json.dumps(list(memory.related_memories), ensure_ascii=False),
                int(memory.access_count),
                int(memory.last_accessed),
                int(memory.created_at),
                memory.expires_at,
            ),
        )

    def get_memory(self, memory_id: str) -> CharacterMemory | None:
        row = self.engine.query_one(
            "SELECT * FROM character_memories WHERE memory_id=?", (memory_id,)
        )
        return None if row is None else _to_memory(row)

    def list_memories(
        self, character_id: str, category: MemoryCategory | None = None
    ) -> list[CharacterMemory]:
        sql = "SELECT * FROM character_memories WHERE character_id=?"
        params: list[Any] = [character_id]
        if category is not None:
            sql += " AND category=?"
            params.append(category.value)
        sql += " ORDER BY importance DESC, created_at DESC"
        return [_to_memory(row) for row in self.engine.query_all(sql, params)]

    def delete_memory(self, memory_id: str) -> int:
        return self.engine.execute(
            "DELETE FROM character_memories WHERE memory_id=?", (memory_id,)
        )

    def delete_expired_memories(self, now: int) -> list[str]:
        rows = self.engine.query_all(
            """
            SELECT memory_id FROM character_memories
            WHERE expires_at IS NOT NULL AND expires_at < ?
            """,
            (int(now),),
        )
        ids = [str(r["memory_id"]) for r in rows]
        if ids:
            self.engine.executemany(
                "DELETE FROM character_memories WHERE memory_id=?", [(i,) for i in ids]
            )
        return ids

    def memory_counts(self, character_id: str) -> dict[str, int]:
        rows = self.engine.query_all(
            """
            SELECT category, COUNT(*) AS n FROM character_memories
            WHERE character_id=? GROUP BY category
            """,
            (character_id,),
        )
        return {str(r["category"]): int(r["n"]) for r in rows}

    # relationships

    def save_relationship(self, rel: Relationship) -> None:
        self.engine.execute(
            """
            INSERT INTO character_relationships(
                relationship_id,from_character_id,to_character_id,relation_type,
                intimacy,trust,description,interaction_count,first_met_at,
                last_interaction_at,is_master_relationship
            ) VALUES(?,?,?,?,?,?,?,?,?,?,?)
            ON CONFLICT(from_character_id,to_character_id) DO UPDATE SET
              relation_type=excluded.relation_type,
              intimacy=excluded.intimacy,
              trust=excluded.trust,
              description=excluded.description,
              interaction_count=excluded.interaction_count,
              last_interaction_at=excluded.last_interaction_at,
              is_master_relationship=excluded.is_master_relationship
            """,
            (
                rel.relationship_id,
                rel.from_character_id,
                rel.to_character_id,
                rel.relation_type.value,
                float(rel.intimacy),
                float(rel.trust),
                rel.description,
                int(rel.interaction_count),
                int(rel.first_met_at),
                int(rel.last_interaction_at),
                1 if rel.is_master_relationship else 0,
            ),
        )

    def get_relationship(self, from_id: str, to_id: str) -> Relationship | None:
        row = self.engine.query_one(
            """
            SELECT * FROM character_relationships
            WHERE from_character_id=? AND to_character_id=?
            """,
            (from_id, to_id),
        )
        return None if row is None else _to_relationship(row)

    def list_relationships_from(self, character_id: str) -> list[Relationship]:
        rows = self.engine.query_all(
            """
            SELECT * FROM character_relationships WHERE from_character_id=?
            ORDER BY is_master_relationship DESC, intimacy DESC
            """,
            (character_id,),
        )
        return [_to_relationship(row) for row in rows]

    def get_master_relationship(self) -> Relationship | None:
        row = self.engine.query_one(
            "SELECT * FROM character_relationships WHERE is_master_relationship=1 LIMIT 1"
        )
        return None if row is None else _to_relationship(row)

    # consolidation

    def record_consolidation(self, rows: list[tuple[Any, ...]]) -> int:
        """Rows are (character_id, memory_id, decision, salience, reason, evaluator, created_at)."""
        return self.engine.executemany(
            """
            INSERT INTO consolidation_records(
                character_id,memory_id,decision,salience,reason,evaluator,created_at
            ) VALUES(?,?,?,?,?,?,?)
            """,
            rows,
        )

    def list_consolidation_records(
        self, character_id: str, limit: int = 100
    ) -> list[dict[str, Any]]:
        return self.engine.query_all(
            """
            SELECT character_id,memory_id,decision,salience,reason,evaluator,created_at
            FROM consolidation_records WHERE character_id=?
            ORDER BY created_at DESC, id DESC LIMIT ?
            """,
            (character_id, max(1, int(limit))),
        )


def _loads(raw: Any, default: Any) -> Any:
    try:
        return json.loads(str(raw or ""))
    except json.JSONDecodeError:
        return default


def _to_profile(raw: Any) -> CharacterProfile | None:
    data = _loads(raw, None)
    if not isinstance(data, dict) or not data.get("character_id"):
        return None
    data["aliases"] = tuple(data.get("aliases") or ())
    data["interests"] = tuple(data.get("interests") or ())
    known = set(CharacterProfile.__dataclass_fields__)
    return CharacterProfile(**{k: v for k, v in data.items() if k in known})


def _to_memory(row: dict[str, Any]) -> CharacterMemory:
    tags = _loads(row.get("tags_json"), [])
    related = _loads(row.get("related_json"), [])
    return CharacterMemory(
        memory_id=str(row["memory_id"]),
        character_id=str(row["character_id"]),
        category=MemoryCategory(str(row["category"])),
        content=str(row["content"]),
        importance=float(row["importance"]),
        emotional_valence=float(row["emotional_valence"]),
        emotion_tag=row.get("emotion_tag"),
        emotion_intensity=(
            float(row["emotion_intensity"]) if row.get("emotion_intensity") is not None else None
        ),
        tags=tuple(str(t) for t in tags) if isinstance(tags, list) else (),
        related_memories=tuple(str(r) for r in related) if isinstance(related, list) else (),
        access_count=int(row["access_count"]),
        last_accessed=int(row["last_accessed"]),
        created_at=int(row["created_at"]),
        expires_at=int(row["expires_at"]) if row.get("expires_at") is not None else None,
    )


def _to_relationship(row: dict[str, Any]) -> Relationship:
    return Relationship(
        relationship_id=str(row["relationship_id"]),
        from_character_id=str(row["from_character_id"]),
        to_character_id=str(row["to_character_id"]),
        relation_type=RelationType(str(row["relation_type"])),
        intimacy=float(row["intimacy"]),
        trust=float(row["trust"]),
        description=row.get("description"),
        interaction_count=int(row["interaction_count"]),
        first_met_at=int(row["first_met_at"]),
        last_interaction_at=int(row["last_interaction_at"]),
        is_master_relationship=bool(row["is_master_relationship"]),
    )
