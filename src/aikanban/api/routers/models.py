from __future__ import annotations

from fastapi import APIRouter

from ...domain.chat_models import ModelCatalog
from ...services.model_router import ModelRouter


router = APIRouter(tags=["models"])


@router.get("/models", response_model=ModelCatalog)
def list_task_models() -> ModelCatalog:
    # Models a client may pick for a per-task aiPrompt
    return ModelCatalog(
        models=list(ModelRouter.ALLOWED_TASK_MODELS),
        defaultModel=ModelRouter.DEFAULT_TASK_MODEL,
    )
