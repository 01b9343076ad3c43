from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field, field_validator

from xiaoguang_lite.domain.identity import now_ms
from xiaoguang_lite.domain.knowledge import (
    DAY_MS,
    CharacterMemory,
    CharacterProfile,
    MemoryCategory,
    Relationship,
    RelationType,
)

router = APIRouter(prefix="/api/v1/characters", tags=["characters"])


class ProfileRequest(BaseModel):
    character_id: str = Field(min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=128)
    aliases: list[str] = Field(default_factory=list)
    nickname: str | None = None
    gender: str | None = None
    age: int | None = Field(default=None, ge=0, le=200)
    platform_id: str | None = None
    bio: str | None = None
    personality: str | None = None
    traits: dict[str, float] = Field(default_factory=dict)
    interests: list[str] = Field(default_factory=list)
    background: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class MemoryRequest(BaseModel):
    content: str = Field(min_length=1, max_length=10000)
    category: MemoryCategory = MemoryCategory.SHORT_TERM
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    emotional_valence: float = Field(default=0.0, ge=-1.0, le=1.0)
    emotion_tag: str | None = None
    emotion_intensity: float | None = Field(default=None, ge=0.0, le=1.0)
    tags: list[str] = Field(default_factory=list)
    ttl_days: int | None = Field(default=None, ge=1, le=3650)

    @field_validator("content")
    @classmethod
    def _validate_content(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("content must not be blank")
        return v


class RelationshipRequest(BaseModel):
    to_character_id: str = Field(min_length=1, max_length=128)
    relation_type: RelationType = RelationType.ACQUAINTANCE
    intimacy: float = Field(default=0.5, ge=0.0, le=1.0)
    trust: float = Field(default=0.5, ge=0.0, le=1.0)
    description: str | None = None


class InteractionRequest(BaseModel):
    to_character_id: str = Field(min_length=1, max_length=128)
    emotional_impact: float = Field(default=0.0, ge=-10.0, le=10.0)
    trust_impact: float = Field(default=0.0, ge=-10.0, le=10.0)


def _profile_dict(profile: CharacterProfile) -> dict[str, Any]:
    return {
        "character_id": profile.character_id,
        "name": profile.name,
        "aliases": list(profile.aliases),
        "nickname": profile.nickname,
        "platform_id": profile.platform_id,
        "bio": profile.bio,
        "is_master": profile.is_master,
        "personality": profile.personality,
        "interests": list(profile.interests),
        "background": profile.background,
        "last_seen_at": profile.last_seen_at,
    }


def _relationship_dict(rel: Relationship) -> dict[str, Any]:
    return {
        "relationship_id": rel.relationship_id,
        "from_character_id": rel.from_character_id,
        "to_character_id": rel.to_character_id,
        "relation_type": rel.relation_type.value,
        "intimacy": rel.effective_intimacy,
        "trust": rel.effective_trust,
        "description": rel.description,
        "interaction_count": rel.interaction_count,
        "is_master_relationship": rel.is_master_relationship,
        "strength": round(rel.strength(), 4),
    }


async def _require_profile(request: Request, character_id: str) -> CharacterProfile:
    profile = await request.app.state.character_book.get_profile(character_id)
    if profile is None:
        raise HTTPException(status_code=404, detail=f"character not found: {character_id}")
    return profile


@router.get("")
async def list_profiles(request: Request) -> dict[str, Any]:
    items = [_profile_dict(p) for p in await request.app.state.character_book.list_profiles()]
    return {"status": "ok", "result": {"items": items, "total_count": len(items)}}


@router.post("")
async def save_profile(payload: ProfileRequest, request: Request) -> dict[str, Any]:
    character_book = request.app.state.character_book
    existing = await character_book.get_profile(payload.character_id)
    if existing is not None and existing.is_master:
        raise HTTPException(status_code=409, detail="master profile is managed by the server")
    profile = CharacterProfile(
        character_id=payload.character_id.strip(),
        name=payload.name.strip(),
        aliases=tuple(a.strip() for a in payload.aliases if a.strip()),
        nickname=payload.nickname,
        gender=payload.gender,
        age=payload.age,
        platform_id=payload.platform_id,
        bio=payload.bio,
        personality=payload.personality,
        traits=payload.traits,
        interests=tuple(payload.interests),
        background=payload.background,
        custom_fields=payload.custom_fields,
    )
    saved = await character_book.save_profile(profile)
    return {"status": "ok", "result": _profile_dict(saved)}


@router.post("/cards")
async def import_card(payload: dict[str, Any], request: Request) -> dict[str, Any]:
    profile = await request.app.state.character_book.import_character_card(payload)
    return {"status": "ok", "result": _profile_dict(profile)}


@router.post("/memories/cleanup")
async def cleanup_memories(request: Request) -> dict[str, Any]:
    removed = await request.app.state.character_book.cleanup_expired_memories()
    return {"status": "ok", "result": {"removed": removed}}


@router.post("/memories/{memory_id}/access")
async def record_access(memory_id: str, request: Request) -> dict[str, Any]:
    memory = await request.app.state.character_book.record_memory_access(memory_id)
    if memory is None:
        raise HTTPException(status_code=404, detail=f"memory not found: {memory_id}")
    return {"status": "ok", "result": memory.to_dict()}


@router.delete("/memories/{memory_id}")
async def delete_memory(memory_id: str, request: Request) -> dict[str, Any]:
    if not await request.app.state.character_book.delete_memory(memory_id):
        raise HTTPException(status_code=404, detail=f"memory not found: {memory_id}")
    return {"status": "ok", "result": {"memory_id": memory_id, "deleted": True}}


@router.get("/{character_id}")
async def get_profile(character_id: str, request: Request) -> dict[str, Any]:
    profile = await _require_profile(request, character_id)
    return {"status": "ok", "result": _profile_dict(profile)}


@router.delete("/{character_id}")
async def delete_profile(character_id: str, request: Request) -> dict[str, Any]:
    profile = await _require_profile(request, character_id)
    if profile.is_master:
        raise HTTPException(status_code=409, detail="master profile cannot be deleted")
    await request.app.state.character_book.delete_profile(character_id)
    return {"status": "ok", "result": {"character_id": character_id, "deleted": True}}


@router.get("/{character_id}/card")
async def export_card(character_id: str, request: Request) -> dict[str, Any]:
    card = await request.app.state.character_book.export_character_card(character_id)
    if card is None:
        raise HTTPException(status_code=404, detail=f"character not found: {character_id}")
    return {"status": "ok", "result": card}


@router.get("/{character_id}/memories")
async def list_memories(
    character_id: str, request: Request, category: MemoryCategory | None = None
) -> dict[str, Any]:
    rows = await request.app.state.character_book.get_memories(character_id, category)
    return {
        "status": "ok",
        "result": {"items": [m.to_dict() for m in rows], "total_count": len(rows)},
    }


@router.post("/{character_id}/memories")
async def add_memory(character_id: str, payload: MemoryRequest, request: Request) -> dict[str, Any]:
    await _require_profile(request, character_id)
    now = now_ms()
    memory = CharacterMemory(
        character_id=character_id,
        content=payload.content,
        category=payload.category,
        importance=payload.importance,
        emotional_valence=payload.emotional_valence,
        emotion_tag=payload.emotion_tag,
        emotion_intensity=payload.emotion_intensity,
        tags=tuple(t.strip() for t in payload.tags if t.strip()),
        created_at=now,
        last_accessed=now,
        expires_at=now + payload.ttl_days * DAY_MS if payload.ttl_days else None,
    )
    saved = await request.app.state.character_book.add_memory(memory)
    return {"status": "ok", "result": saved.to_dict()}


@router.get("/{character_id}/memories/search")
async def search_memories(
    character_id: str, request: Request, query: str, limit: int = 20
) -> dict[str, Any]:
    if not query.strip():
        raise HTTPException(status_code=400, detail="query must not be blank")
    if limit < 1 or limit > 100:
        raise HTTPException(status_code=400, detail="limit out of range")
    rows = await request.app.state.character_book.search_memories(character_id, query, limit)
    return {
        "status": "ok",
        "result": {"items": [m.to_dict() for m in rows], "total_count": len(rows)},
    }


@router.get("/{character_id}/context")
async def character_context(
    character_id: str, request: Request, query: str = "", max_tokens: int = 1000
) -> dict[str, Any]:
    ctx = await request.app.state.character_book.build_character_context(
        character_id, query, max_tokens=max_tokens
    )
    if ctx is None:
        raise HTTPException(status_code=404, detail=f"character not found: {character_id}")
    return {"status": "ok", "result": ctx.to_dict()}


@router.post("/{character_id}/consolidate")
async def consolidate(character_id: str, request: Request) -> dict[str, Any]:
    await _require_profile(request, character_id)
    result = await request.app.state.character_book.consolidate_memories(character_id)
    return {"status": "ok", "result": result.to_dict()}


@router.get("/{character_id}/consolidations")
async def consolidations(character_id: str, request: Request, limit: int = 100) -> dict[str, Any]:
    rows = await request.app.state.character_book.consolidation_history(character_id, limit)
    return {"status": "ok", "result": {"items": rows, "total_count": len(rows)}}


@router.get("/{character_id}/relationships")
async def relationships(character_id: str, request: Request) -> dict[str, Any]:
    rows = await request.app.state.character_book.relationships_from(character_id)
    return {"status": "ok", "result": {"items": [_relationship_dict(r) for r in rows]}}


@router.post("/{character_id}/relationships")
async def save_relationship(
    character_id: str, payload: RelationshipRequest, request: Request
) -> dict[str, Any]:
    if payload.relation_type == RelationType.MASTER:
        raise HTTPException(status_code=400, detail="master relationship is managed by the server")
    character_book = request.app.state.character_book
    existing = await character_book.get_relationship(character_id, payload.to_character_id)
    fields: dict[str, Any] = {
        "from_character_id": character_id,
        "to_character_id": payload.to_character_id,
        "relation_type": payload.relation_type,
        "intimacy": payload.intimacy,
        "trust": payload.trust,
        "description": payload.description,
    }
    if existing is not None:
        if existing.is_master_relationship:
            raise HTTPException(status_code=409, detail="master relationship is locked")
        fields.update(
            relationship_id=existing.relationship_id,
            interaction_count=existing.interaction_count,
            first_met_at=existing.first_met_at,
        )
    saved = await character_book.save_relationship(Relationship(**fields))
    return {"status": "ok", "result": _relationship_dict(saved)}


@router.post("/{character_id}/interactions")
async def record_interaction(
    character_id: str, payload: InteractionRequest, request: Request
) -> dict[str, Any]:
    rel = await request.app.state.character_book.record_interaction(
        character_id,
        payload.to_character_id,
        emotional_impact=payload.emotional_impact,
        trust_impact=payload.trust_impact,
    )
    return {"status": "ok", "result": _relationship_dict(rel)}
