from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import socketio
from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from ..config import get_settings
from ..infrastructure.chat_session_store import chat_session_counts
from ..infrastructure.task_gateway import get_task_gateway
from ..observability.metrics import metrics_middleware_factory
from ..security.rate_limit import RateLimitExceeded
from ..services.chat_proxy import ChatRequestInvalid, ChatUpstreamError
from ..services.task_agent import TaskAgent
from ..services.task_change_bridge import TaskChangeBridge
from ..services.task_relay import TaskRelay
from .routers.ai_chat import router as ai_chat_router
from .routers.diag import router as diag_router
from .routers.models import router as models_router

load_dotenv()  # SUPABASE_URL, SUPABASE_KEY, OPENROUTER_API_KEY, HF_TOKEN, GEMINI_API_KEY, ...

logger = logging.getLogger("aikanban.api")

settings = get_settings()

sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins=settings.allowed_origins,
    max_http_buffer_size=5_000_000,
)
relay = TaskRelay(sio)
agent = TaskAgent(broadcaster=relay.broadcast_rows)
relay.agent = agent
relay.register()
bridge = TaskChangeBridge(relay.broadcast_rows)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    # Fail fast on a misconfigured task store instead of on the first socket.
    gateway = get_task_gateway()
    if get_settings().realtime_bridge_enabled:
        await bridge.start(gateway)
    worker = None
    if get_settings().task_agent_enabled:
        worker = asyncio.create_task(agent.run_forever(get_settings().task_agent_interval_seconds))
    try:
        yield
    finally:
        if worker is not None:
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        await bridge.stop()


app = FastAPI(title="AI Kanban API", version="0.1.0", lifespan=lifespan)

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

# Routers
app.include_router(ai_chat_router)
app.include_router(models_router)
app.include_router(diag_router)

# The web client calls everything under /api
app.include_router(ai_chat_router, prefix="/api")
app.include_router(models_router, prefix="/api")
app.include_router(diag_router, prefix="/api")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChatRequestInvalid)
async def _chat_request_invalid(_request: Request, exc: ChatRequestInvalid) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(ChatUpstreamError)
async def _chat_upstream_error(_request: Request, exc: ChatUpstreamError) -> JSONResponse:
    content = {"error": str(exc)}
    if exc.details:
        content["details"] = exc.details
    return JSONResponse(status_code=500, content=content)


@app.exception_handler(RateLimitExceeded)
async def _rate_limited(_request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"error": "Rate limit exceeded"},
        headers={"Retry-After": str(exc.retry_after_seconds)},
    )


def _health() -> dict:
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "task_store": get_settings().task_store,
            "task_agent": "on" if get_settings().task_agent_enabled else "off",
            "chat_sessions": chat_session_counts(),
        },
    }


@app.get("/")
def root():
    return {"name": "AI Kanban API", "version": "0.1.0"}


@app.get("/health")
def health():
    return _health()


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.get("/api/health")
def api_health():
    return _health()


@app.get("/api/metrics")
def api_metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


# Socket.IO shares the port; anything that is not /socket.io goes to FastAPI.
asgi_app = socketio.ASGIApp(sio, other_asgi_app=app)
