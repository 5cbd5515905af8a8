from __future__ import annotations

from typing import Any
from fastapi import APIRouter, Body, Depends

from ...domain.chat_models import AIChatError, AIChatReply, AIChatRequest
from ...services.chat_proxy import ChatProxy, get_chat_proxy, get_gemini_chat_proxy


router = APIRouter(prefix="/ai", tags=["ai"])

_ERRORS = {400: {"model": AIChatError}, 429: {"model": AIChatError}, 500: {"model": AIChatError}}


def _chat_request(body: Any) -> AIChatRequest:
    # Non-object bodies carry no message; the proxy answers them with a 400.
    if isinstance(body, dict):
        return AIChatRequest.model_validate(body)
    return AIChatRequest()


@router.post("/chat", response_model=AIChatReply, responses=_ERRORS)
async def ai_chat(
    body: Any = Body(None),
    proxy: ChatProxy = Depends(get_chat_proxy),
):
    """Forward one user message to the assistant and return its reply.

    A missing or blank ``message`` yields 400 ``{"error": "Message required"}``;
    upstream failures yield 500 ``{"error": "AI failed", "details": ...}``.
    """
    req = _chat_request(body)
    reply = await proxy.reply(req.sessionId, req.message)
    return AIChatReply(reply=reply)


@router.post("/gemini", response_model=AIChatReply, responses=_ERRORS)
async def ai_gemini(
    body: Any = Body(None),
    proxy: ChatProxy = Depends(get_gemini_chat_proxy),
):
    req = _chat_request(body)
    reply = await proxy.reply(req.sessionId, req.message)
    return AIChatReply(reply=reply)
