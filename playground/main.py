from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .catalog import CatalogLoadError, list_models
from .config import get_settings
from .dependencies import active_caches, active_stores, get_counters, get_session_store
from .engine import build_error_envelope, new_request_id
from .metrics import REQUESTS_TOTAL, Counters
from .routers import agent as agent_router
from .routers import sessions as sessions_router


logger = logging.getLogger("llm-playground")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Prepare the session backend; flush caches and close stores on shutdown."""
    settings = get_settings()
    await get_session_store().init()
    logger.info(
        "startup provider=%s memory_store=%s cache_dir=%s",
        settings.provider_name,
        settings.memory_store,
        settings.cache_dir,
    )
    yield
    for caches in active_caches():
        caches.flush()
    for store in active_stores():
        await store.close()


app = FastAPI(title="LLM Playground", version="0.1.0", lifespan=lifespan)
app.state.counters = Counters()


# CORS: controlled by env CORS_ORIGINS (e.g. * or http://localhost:3000)
_cors_origins_list = [o.strip() for o in get_settings().cors_origins.strip().split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(agent_router.router)
app.include_router(sessions_router.router)


@app.middleware("http")
async def count_requests(request: Request, call_next):
    request.app.state.counters.inc(REQUESTS_TOTAL)
    return await call_next(request)


@app.get("/")
async def root() -> Dict[str, Any]:
    """
    Service metadata endpoint.
    """
    settings = get_settings()
    return {
        "service": settings.service_name,
        "provider": settings.provider_name,
        "default_model": settings.default_model,
        "docs": "/docs",
        "health": "/health",
        "models": "/models",
        "metrics": "/metrics",
    }


@app.get("/health")
async def health() -> JSONResponse:
    """
    Simple health check. Returns 200 when the model catalogue loads.
    """
    try:
        count = len(list_models())
    except (OSError, CatalogLoadError) as exc:
        status_code, body = build_error_envelope(
            request_id=new_request_id(),
            status_code=500,
            code="INTERNAL_ERROR",
            message=str(exc),
            details=None,
        )
        return JSONResponse(status_code=status_code, content=body)

    settings = get_settings()
    payload = {
        "status": "ok",
        "provider": settings.provider_name,
        "memory_store": settings.memory_store,
        "models": count,
    }
    return JSONResponse(status_code=200, content=payload)


@app.get("/metrics")
async def metrics(counters: Counters = Depends(get_counters)) -> Dict[str, Any]:
    """Process counters since startup."""
    return {"counters": counters.snapshot()}


@app.get("/models")
async def models(task: str | None = None) -> JSONResponse:
    """Model catalogue, optionally filtered by task (e.g. text-generation)."""
    return JSONResponse(status_code=200, content={"models": list_models(task)})


def get_app() -> FastAPI:
    """Convenience accessor for external runners."""
    return app
