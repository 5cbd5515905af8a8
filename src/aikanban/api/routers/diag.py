from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter

from ...services.model_router import ModelRouter

router = APIRouter(prefix="/diag", tags=["diagnostics"])


@router.get("/llm")
async def diag_llm() -> Dict[str, Any]:
    """Report which provider each AI feature would use. Keys are never echoed."""
    model_router = ModelRouter()
    purposes: Dict[str, Any] = {}
    for purpose in ModelRouter.ROUTING_POLICY:
        selection = model_router.maybe_select_provider(purpose)
        purposes[purpose] = {
            "provider": selection.name if selection else "none",
            "model": selection.model if selection else None,
            "base_url": selection.base_url if selection else None,
            "ready": selection is not None,
        }
    return {
        "providers": {name: model_router.provider_available(name) for name in ModelRouter.PROVIDER_CONFIG},
        "purposes": purposes,
        "ready": all(p["ready"] for p in purposes.values()),
    }
