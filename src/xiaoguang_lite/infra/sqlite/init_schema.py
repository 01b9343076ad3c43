from __future__ import annotations

from xiaoguang_lite.infra.sqlite.db import SQLiteEngine


def init_schema(engine: SQLiteEngine) -> None:
    ddl = [
        """
        CREATE TABLE IF NOT EXISTS identities (
            canonical_id TEXT PRIMARY KEY,
            character_id TEXT,
            person_identifier TEXT,
            display_name TEXT NOT NULL,
            aliases_json TEXT NOT NULL DEFAULT '[]',
            is_master INTEGER NOT NULL DEFAULT 0,
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS world_entries (
            entry_id TEXT PRIMARY KEY,
            keys_json TEXT NOT NULL,
            content TEXT NOT NULL,
            category TEXT NOT NULL DEFAULT 'KNOWLEDGE',
            priority INTEGER NOT NULL DEFAULT 100,
            enabled INTEGER NOT NULL DEFAULT 1,
            insertion_order INTEGER NOT NULL DEFAULT 100,
            case_sensitive INTEGER NOT NULL DEFAULT 0,
            metadata_json TEXT NOT NULL DEFAULT '{}',
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS character_profiles (
            character_id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            is_master INTEGER NOT NULL DEFAULT 0,
            platform_id TEXT,
            profile_json TEXT NOT NULL,
            created_at INTEGER NOT NULL,
            last_seen_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS character_memories (
            memory_id TEXT PRIMARY KEY,
            character_id TEXT NOT NULL,
            category TEXT NOT NULL,
            content TEXT NOT NULL,
            importance REAL NOT NULL DEFAULT 0.5,
            emotional_valence REAL NOT NULL DEFAULT 0,
            emotion_tag TEXT,
            emotion_intensity REAL,
            tags_json TEXT NOT NULL DEFAULT '[]',
            related_json TEXT NOT NULL DEFAULT '[]',
            access_count INTEGER NOT NULL DEFAULT 0,
            last_accessed INTEGER NOT NULL,
            created_at INTEGER NOT NULL,
            expires_at INTEGER
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS character_relationships (
            relationship_id TEXT PRIMARY KEY,
            from_character_id TEXT NOT NULL,
            to_character_id TEXT NOT NULL,
            relation_type TEXT NOT NULL,
            intimacy REAL NOT NULL DEFAULT 0.5,
            trust REAL NOT NULL DEFAULT 0.5,
            description TEXT,
            interaction_count INTEGER NOT NULL DEFAULT 0,
            first_met_at INTEGER NOT NULL,
            last_interaction_at INTEGER NOT NULL,
            is_master_relationship INTEGER NOT NULL DEFAULT 0,
            UNIQUE(from_character_id, to_character_id)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS consolidation_records (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            character_id TEXT NOT NULL,
            memory_id TEXT NOT NULL,
            decision TEXT NOT NULL,
            salience REAL NOT NULL,
            reason TEXT NOT NULL,
            evaluator TEXT NOT NULL,
            created_at INTEGER NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_identities_character ON identities(character_id)",
        "CREATE INDEX IF NOT EXISTS idx_identities_person ON identities(person_identifier)",
        "CREATE INDEX IF NOT EXISTS idx_memories_character ON character_memories(character_id, category)",
        "CREATE INDEX IF NOT EXISTS idx_relationships_from ON character_relationships(from_character_id)",
        "CREATE INDEX IF NOT EXISTS idx_consolidation_character ON consolidation_records(character_id, created_at)",
    ]
    for stmt in ddl:
        engine.execute(stmt)
    # at most one master identity
    engine.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_identities_single_master
        ON identities(is_master) WHERE is_master=1
        """
    )
