from __future__ import annotations

import os
from datetime import UTC, datetime
from typing import Dict, List

from dotenv import load_dotenv
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from ..infrastructure.context_buffer import get_context_buffer
from ..observability.metrics import metrics_middleware_factory
from ..services.model_registry import PROVIDER_CONFIG
from .routers.chat import _inflight, router as chat_router

# .env supplies backend keys, REDIS_URL, JWT_SECRET, ...
load_dotenv()

SERVICE_NAME = "Chat Stream API"
SERVICE_VERSION = "0.1.0"
DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000"


def cors_origins() -> List[str]:
    raw = os.getenv("CHATSTREAM_CORS_ORIGINS", DEFAULT_CORS_ORIGINS)
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def configured_backends() -> Dict[str, bool]:
    return {name: bool(os.getenv(cfg["api_key_env"])) for name, cfg in PROVIDER_CONFIG.items()}


app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION)

app.middleware("http")(metrics_middleware_factory())

app.include_router(chat_router)
app.include_router(chat_router, prefix="/api")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
def root():
    return {"name": SERVICE_NAME, "version": SERVICE_VERSION, "stream": "/chat/stream"}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "store": os.getenv("CHATSTREAM_STORE_IMPL", "memory").lower(),
            "context_buffer": "redis" if get_context_buffer().enabled else "disabled",
            "backends": configured_backends(),
        },
        "inflight_turns": len(_inflight),
    }


@app.get("/metrics")
def metrics() -> Response:
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)
