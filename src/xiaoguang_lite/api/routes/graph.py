from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

router = APIRouter(prefix="/api/v1/graph", tags=["graph"])


class RelationRequest(BaseModel):
    person_a: str = Field(min_length=1, max_length=128)
    person_b: str = Field(min_length=1, max_length=128)
    relation_type: str = Field(min_length=1, max_length=64)
    description: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    source: str = "api"


@router.post("/relations")
async def record_relation(payload: RelationRequest, request: Request) -> dict[str, Any]:
    a = payload.person_a.strip()
    b = payload.person_b.strip()
    if not a or not b or a == b:
        raise HTTPException(status_code=400, detail="two different person names are required")
    record = await request.app.state.relationship_network.record_relation(
        a,
        b,
        payload.relation_type.strip(),
        description=payload.description,
        confidence=payload.confidence,
        source=payload.source,
    )
    if record is None:
        raise HTTPException(status_code=503, detail="graph store unavailable")
    return {"status": "ok", "result": record.to_dict()}


@router.get("/relations")
async def person_relations(request: Request, person: str, limit: int = 10) -> dict[str, Any]:
    name = person.strip()
    if not name:
        raise HTTPException(status_code=400, detail="person must not be blank")
    if limit < 1 or limit > 200:
        raise HTTPException(status_code=400, detail="limit out of range")
    rows = await request.app.state.relationship_network.person_relations(name, limit)
    return {
        "status": "ok",
        "result": {"items": [r.to_dict() for r in rows], "total_count": len(rows)},
    }


@router.get("/path")
async def relation_path(
    request: Request, from_person: str, to_person: str, max_depth: int = 5
) -> dict[str, Any]:
    if not from_person.strip() or not to_person.strip():
        raise HTTPException(status_code=400, detail="both persons are required")
    if max_depth < 1 or max_depth > 10:
        raise HTTPException(status_code=400, detail="max_depth out of range")
    path = await request.app.state.retrieval_engine.find_relationship_path(
        from_person, to_person, max_depth
    )
    return {"status": "ok", "result": path.to_dict() if path is not None else None}


@router.get("/neighbors")
async def neighbors(
    request: Request, person: str, depth: int = 1, limit: int = 20
) -> dict[str, Any]:
    name = person.strip()
    if not name:
        raise HTTPException(status_code=400, detail="person must not be blank")
    if depth < 1 or depth > 4 or limit < 1 or limit > 200:
        raise HTTPException(status_code=400, detail="depth or limit out of range")
    rows = await request.app.state.relationship_network.neighbors(name, depth, limit)
    return {"status": "ok", "result": {"items": rows, "total_count": len(rows)}}
