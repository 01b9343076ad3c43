from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field, field_validator

router = APIRouter(prefix="/api/v1/knowledge", tags=["knowledge"])


class RetrieveRequest(BaseModel):
    query: str = Field(min_length=1, max_length=10000)
    character_ids: list[str] = Field(default_factory=list)
    max_tokens: int | None = Field(default=None, ge=1, le=32000)

    @field_validator("query")
    @classmethod
    def _validate_query(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("query must not be blank")
        return v


@router.post("/retrieve")
async def retrieve(payload: RetrieveRequest, request: Request) -> dict[str, Any]:
    engine = request.app.state.retrieval_engine
    context = await engine.retrieve_context(
        payload.query, payload.character_ids, max_tokens=payload.max_tokens
    )
    return {"status": "ok", "result": context.to_dict()}


@router.get("/{character_id}/timeline")
async def timeline(
    request: Request,
    character_id: str,
    start_time: int,
    end_time: int,
    limit: int = 20,
) -> dict[str, Any]:
    if end_time < start_time:
        raise HTTPException(status_code=400, detail="end_time before start_time")
    rows = await request.app.state.retrieval_engine.retrieve_timeline_memories(
        character_id, start_time, end_time, limit
    )
    return {"status": "ok", "result": {"items": [m.to_dict() for m in rows]}}


@router.get("/{character_id}/emotional")
async def emotional(
    request: Request,
    character_id: str,
    min_valence: float = Query(default=-1.0, ge=-1.0, le=1.0),
    max_valence: float = Query(default=1.0, ge=-1.0, le=1.0),
    limit: int = 20,
) -> dict[str, Any]:
    if max_valence < min_valence:
        raise HTTPException(status_code=400, detail="max_valence below min_valence")
    rows = await request.app.state.retrieval_engine.retrieve_emotional_memories(
        character_id, min_valence, max_valence, limit
    )
    return {"status": "ok", "result": {"items": [m.to_dict() for m in rows]}}


@router.get("/{character_id}/tags")
async def by_tags(
    request: Request,
    character_id: str,
    tags: list[str] | None = Query(default=None),
    match_all: bool = False,
    limit: int = 20,
) -> dict[str, Any]:
    if not tags:
        raise HTTPException(status_code=400, detail="at least one tag is required")
    rows = await request.app.state.retrieval_engine.retrieve_memories_by_tags(
        character_id, tags, match_all=match_all, limit=limit
    )
    return {"status": "ok", "result": {"items": [m.to_dict() for m in rows]}}
