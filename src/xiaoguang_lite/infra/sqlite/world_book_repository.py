from __future__ import annotations

import json
from typing import Any

from xiaoguang_lite.domain.knowledge import WorldEntry, WorldEntryCategory
from xiaoguang_lite.infra.sqlite.db import SQLiteEngine


class WorldBookRepository:
    def __init__(self, engine: SQLiteEngine) -> None:
        self.engine = engine

    def upsert(self, entry: WorldEntry) -> None:
        self.engine.execute(
            """
            INSERT INTO world_entries(
                entry_id,keys_json,content,category,priority,enabled,
                insertion_order,case_sensitive,metadata_json,created_at,updated_at
            ) VALUES(?,?,?,?,?,?,?,?,?,?,?)
            ON CONFLICT(entry_id) DO UPDATE SET
              keys_json=excluded.keys_json,
              content=excluded.content,
              category=excluded.category,
              priority=excluded.priority,
              enabled=excluded.enabled,
              insertion_order=excluded.insertion_order,
              case_sensitive=excluded.case_sensitive,
              metadata_json=excluded.metadata_json,
              updated_at=excluded.updated_at
            """,
            _to_row(entry),
        )

    def upsert_many(self, entries: list[WorldEntry]) -> int:
        for entry in entries:
            self.upsert(entry)
        return len(entries)

    def get(self, entry_id: str) -> WorldEntry | None:
        row = self.engine.query_one(
            "SELECT * FROM world_entries WHERE entry_id=?", (entry_id,)
        )
        return None if row is None else _to_entry(row)

    def list_all(self, *, enabled_only: bool = False) -> list[WorldEntry]:
        sql = "SELECT * FROM world_entries"
        if enabled_only:
            sql += " WHERE enabled=1"
        sql += " ORDER BY priority DESC, insertion_order ASC, created_at ASC"
        return [_to_entry(row) for row in self.engine.query_all(sql)]

    def list_by_category(self, category: WorldEntryCategory) -> list[WorldEntry]:
        rows = self.engine.query_all(
            """
            SELECT * FROM world_entries WHERE category=? AND enabled=1
            ORDER BY priority DESC, insertion_order ASC
            """,
            (category.value,),
        )
        return [_to_entry(row) for row in rows]

    def delete(self, entry_id: str) -> int:
        return self.engine.execute("DELETE FROM world_entries WHERE entry_id=?", (entry_id,))

    def count(self) -> int:
        return int(self.engine.query_scalar("SELECT COUNT(*) AS n FROM world_entries"))


def _to_row(entry: WorldEntry) -> tuple[Any, ...]:
    return (
        entry.entry_id,
        json.dumps(list(entry.keys), ensure_ascii=False),
        entry.content,
        entry.category.value,
        int(entry.priority),
        1 if entry.enabled else 0,
        int(entry.insertion_order),
        1 if entry.case_sensitive else 0,
        json.dumps(entry.metadata, ensure_ascii=False),
        int(entry.created_at),
        int(entry.updated_at),
    )


def _to_entry(row: dict[str, Any]) -> WorldEntry:
    keys = _json(row.get("keys_json"), [])
    metadata = _json(row.get("metadata_json"), {})
    return WorldEntry(
        entry_id=str(row["entry_id"]),
        keys=tuple(str(k) for k in keys) if isinstance(keys, list) else (),
        content=str(row["content"]),
        category=WorldEntryCategory.parse(row.get("category"), WorldEntryCategory.KNOWLEDGE),
        priority=int(row.get("priority") or 0),
        enabled=bool(row.get("enabled")),
        insertion_order=int(row.get("insertion_order") or 0),
        case_sensitive=bool(row.get("case_sensitive")),
        metadata=metadata if isinstance(metadata, dict) else {},
        created_at=int(row["created_at"]),
        updated_at=int(row["updated_at"]),
    )


def _json(raw: Any, default: Any) -> Any:
    try:
        return json.loads(str(raw or ""))
    except json.JSONDecodeError:
        return default
