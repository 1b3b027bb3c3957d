from __future__ import annotations

from datetime import UTC, datetime
from dotenv import load_dotenv
import logging
import os
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.analysis import router as analysis_router
from ..observability.metrics import metrics_middleware_factory

load_dotenv()  # Load environment variables from .env if present (WORDWARE_API_KEY, prompt ids, etc.)

app = FastAPI(title="Personality Analysis API", version="0.1.0")

logging.basicConfig(level=logging.INFO)

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

app.include_router(analysis_router, prefix="/api")


@app.get("/")
def root():
    return {"name": "Personality Analysis API", "version": "0.1.0"}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "store": os.getenv("PERSONALITY_USER_STORE_IMPL", "memory").lower(),
        },
    }


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
