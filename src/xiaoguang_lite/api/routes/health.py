from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    state = request.app.state
    semantic_index = state.semantic_index
    return {
        "status": "ok",
        "result": {
            "app": state.settings.app_name,
            "identities": len(await state.identity_registry.list_all()),
            "vector": semantic_index.stats() if semantic_index is not None else None,
            "graph": await state.relationship_network.stats(),
        },
    }
