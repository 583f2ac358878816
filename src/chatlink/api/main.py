from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone

from dotenv import load_dotenv
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from ..core.state_machine import LIVE_STATES
from ..observability.metrics import metrics_middleware_factory
from ..services.gateway import get_gateway
from .routers.connection import router as connection_router
from .routers.operations import router as operations_router
from .routers.pairing import router as pairing_router

load_dotenv()  # Load environment variables from .env if present (JWT_SECRET, CHATLINK_RELAY_URL, etc.)


@asynccontextmanager
async def lifespan(app: FastAPI):
    gateway = get_gateway()
    if gateway.settings.autostart:
        await gateway.start()
    try:
        yield
    finally:
        if gateway.settings.autostart:
            await gateway.stop()


app = FastAPI(title="ChatLink Gateway API", version="0.1.0", lifespan=lifespan)

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

# Routers
app.include_router(connection_router)
app.include_router(pairing_router)
app.include_router(operations_router)

# Also expose the same routers under /api for the dashboard proxy
app.include_router(connection_router, prefix="/api")
app.include_router(pairing_router, prefix="/api")
app.include_router(operations_router, prefix="/api")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
def root():
    return {"name": "ChatLink Gateway API", "version": "0.1.0"}


def _health() -> dict:
    gateway = get_gateway()
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "mode": gateway.settings.mode,
        "components": {
            "registry": len(gateway.registry),
            "live": gateway.registry.count_in(*LIVE_STATES),
            "reminders": "running" if gateway.reminders.running else "stopped",
        },
    }


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
