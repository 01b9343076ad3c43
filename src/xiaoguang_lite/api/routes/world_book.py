from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from xiaoguang_lite.domain.knowledge import WorldEntry, WorldEntryCategory, WorldScene

router = APIRouter(prefix="/api/v1/world-book", tags=["world-book"])


class EntryRequest(BaseModel):
    entry_id: str | None = None
    keys: list[str] = Field(default_factory=list)
    content: str = Field(default="", max_length=20000)
    category: WorldEntryCategory = WorldEntryCategory.KNOWLEDGE
    priority: int = 100
    enabled: bool = True
    insertion_order: int = 100
    case_sensitive: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class EntryPatch(BaseModel):
    enabled: bool | None = None
    priority: int | None = None


class SceneRequest(BaseModel):
    scene_id: str = Field(min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=128)
    description: str = ""
    active_rules: list[str] = Field(default_factory=list)
    context_data: dict[str, Any] = Field(default_factory=dict)
    priority: int = 50
    enabled: bool = True


def _entry_dict(entry: WorldEntry) -> dict[str, Any]:
    return {
        "entry_id": entry.entry_id,
        "keys": list(entry.keys),
        "content": entry.content,
        "category": entry.category.value,
        "priority": entry.priority,
        "enabled": entry.enabled,
        "insertion_order": entry.insertion_order,
        "case_sensitive": entry.case_sensitive,
        "metadata": dict(entry.metadata),
        "created_at": entry.created_at,
        "updated_at": entry.updated_at,
    }


@router.get("/entries")
async def list_entries(
    request: Request, enabled_only: bool = False, category: WorldEntryCategory | None = None
) -> dict[str, Any]:
    world_book = request.app.state.world_book
    if category is not None:
        entries = await world_book.entries_by_category(category)
    else:
        entries = await world_book.list_entries(enabled_only=enabled_only)
    items = [_entry_dict(e) for e in entries]
    return {"status": "ok", "result": {"items": items, "total_count": len(items)}}


@router.post("/entries")
async def add_entry(payload: EntryRequest, request: Request) -> dict[str, Any]:
    keys = tuple(k.strip() for k in payload.keys if k.strip())
    entry = WorldEntry(
        entry_id=(payload.entry_id or "").strip() or uuid.uuid4().hex,
        keys=keys,
        content=payload.content,
        category=payload.category,
        priority=payload.priority,
        enabled=payload.enabled,
        insertion_order=payload.insertion_order,
        case_sensitive=payload.case_sensitive,
        metadata=payload.metadata,
    )
    try:
        saved = await request.app.state.world_book.add_entry(entry)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok", "result": _entry_dict(saved)}


@router.patch("/entries/{entry_id}")
async def patch_entry(entry_id: str, payload: EntryPatch, request: Request) -> dict[str, Any]:
    world_book = request.app.state.world_book
    entry = await world_book.get_entry(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"entry not found: {entry_id}")
    if payload.enabled is not None:
        entry = await world_book.set_entry_enabled(entry_id, payload.enabled)
    if payload.priority is not None:
        entry = await world_book.update_priority(entry_id, payload.priority)
    return {"status": "ok", "result": _entry_dict(entry)}


@router.delete("/entries/{entry_id}")
async def delete_entry(entry_id: str, request: Request) -> dict[str, Any]:
    if not await request.app.state.world_book.delete_entry(entry_id):
        raise HTTPException(status_code=404, detail=f"entry not found: {entry_id}")
    return {"status": "ok", "result": {"entry_id": entry_id, "deleted": True}}


@router.get("/trigger")
async def trigger(request: Request, query: str, max_tokens: int | None = None) -> dict[str, Any]:
    if not query.strip():
        raise HTTPException(status_code=400, detail="query must not be blank")
    world_book = request.app.state.world_book
    entries = await world_book.trigger_by_query(query)
    injected = await world_book.inject_world_info(query, max_tokens)
    return {
        "status": "ok",
        "result": {"items": [_entry_dict(e) for e in entries], "injected": injected},
    }


@router.put("/scene")
async def set_scene(payload: SceneRequest, request: Request) -> dict[str, Any]:
    scene = WorldScene(
        scene_id=payload.scene_id,
        name=payload.name,
        description=payload.description,
        active_rules=tuple(payload.active_rules),
        context_data=payload.context_data,
        priority=payload.priority,
        enabled=payload.enabled,
    )
    request.app.state.world_book.set_current_scene(scene)
    return {"status": "ok", "result": {"scene_id": scene.scene_id, "context": scene.context_string()}}


@router.delete("/scene")
async def clear_scene(request: Request) -> dict[str, Any]:
    request.app.state.world_book.set_current_scene(None)
    return {"status": "ok", "result": None}


@router.get("/stats")
async def stats(request: Request) -> dict[str, Any]:
    return {"status": "ok", "result": await request.app.state.world_book.statistics()}


@router.get("/lorebook")
async def export_lorebook(request: Request) -> dict[str, Any]:
    return {"status": "ok", "result": await request.app.state.world_book.export_lorebook()}


@router.post("/lorebook")
async def import_lorebook(payload: dict[str, Any], request: Request) -> dict[str, Any]:
    imported = await request.app.state.world_book.import_lorebook(payload)
    return {"status": "ok", "result": {"imported": imported}}
