from __future__ import annotations

from dataclasses import replace
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field, field_validator

from xiaoguang_lite.domain.errors import DuplicateMasterError, ImmutableCanonicalIdError
from xiaoguang_lite.domain.identity import Identity

router = APIRouter(prefix="/api/v1/identities", tags=["identities"])


class IdentityCreate(BaseModel):
    display_name: str = Field(min_length=1, max_length=128)
    canonical_id: str | None = None
    character_id: str | None = None
    person_identifier: str | None = None
    aliases: list[str] = Field(default_factory=list)
    is_master: bool = False

    @field_validator("display_name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("display_name must not be blank")
        return v

    @field_validator("canonical_id", "character_id", "person_identifier")
    @classmethod
    def _normalize_optional(cls, value: str | None) -> str | None:
        if value is None:
            return None
        v = value.strip()
        return v or None


class IdentityPatch(BaseModel):
    display_name: str | None = None
    character_id: str | None = None
    person_identifier: str | None = None
    aliases: list[str] | None = None


class AliasRequest(BaseModel):
    alias: str = Field(min_length=1, max_length=128)


@router.get("")
async def list_identities(request: Request) -> dict[str, Any]:
    items = [i.to_dict() for i in await request.app.state.identity_registry.list_all()]
    return {"status": "ok", "result": {"items": items, "total_count": len(items)}}


@router.post("")
async def register_identity(payload: IdentityCreate, request: Request) -> dict[str, Any]:
    registry = request.app.state.identity_registry
    identity = Identity(
        canonical_id=payload.canonical_id or Identity.generate_canonical_id(),
        display_name=payload.display_name,
        character_id=payload.character_id,
        person_identifier=payload.person_identifier,
        aliases=payload.aliases,
        is_master=payload.is_master,
    )
    try:
        saved = await registry.register(identity)
    except DuplicateMasterError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"status": "ok", "result": saved.to_dict()}


@router.get("/resolve")
async def resolve_identity(request: Request, identifier: str) -> dict[str, Any]:
    if not identifier.strip():
        raise HTTPException(status_code=400, detail="identifier must not be blank")
    identity = await request.app.state.identity_registry.resolve(identifier)
    if identity is None:
        raise HTTPException(status_code=404, detail=f"identity not found: {identifier}")
    return {"status": "ok", "result": identity.to_dict()}


@router.get("/master")
async def get_master(request: Request) -> dict[str, Any]:
    master = await request.app.state.identity_registry.get_master()
    if master is None:
        raise HTTPException(status_code=404, detail="master not registered")
    return {"status": "ok", "result": master.to_dict()}


@router.patch("/{canonical_id}")
async def patch_identity(
    canonical_id: str, payload: IdentityPatch, request: Request
) -> dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True)
    if "display_name" in changes and not str(changes["display_name"] or "").strip():
        raise HTTPException(status_code=400, detail="display_name must not be blank")

    def _apply(current: Identity) -> Identity:
        aliases = changes.pop("aliases", None)
        updated = replace(current, **changes)
        return updated.with_aliases(aliases) if aliases is not None else updated

    try:
        updated = await request.app.state.identity_registry.update(canonical_id, _apply)
    except ImmutableCanonicalIdError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if updated is None:
        raise HTTPException(status_code=404, detail=f"identity not found: {canonical_id}")
    return {"status": "ok", "result": updated.to_dict()}


@router.post("/{canonical_id}/aliases")
async def add_alias(canonical_id: str, payload: AliasRequest, request: Request) -> dict[str, Any]:
    try:
        updated = await request.app.state.identity_registry.add_alias(canonical_id, payload.alias)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if updated is None:
        raise HTTPException(status_code=404, detail=f"identity not found: {canonical_id}")
    return {"status": "ok", "result": updated.to_dict()}


@router.delete("/{canonical_id}/aliases/{alias}")
async def remove_alias(canonical_id: str, alias: str, request: Request) -> dict[str, Any]:
    updated = await request.app.state.identity_registry.remove_alias(canonical_id, alias)
    if updated is None:
        raise HTTPException(status_code=404, detail=f"identity not found: {canonical_id}")
    return {"status": "ok", "result": updated.to_dict()}
