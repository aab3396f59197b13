"""
Mini-agent API: POST /agent/run (JSON) and POST /agent/stream (server-sent events).

Stream events, in order: start, step (one per trace step), result, usage, end.
A failure after the stream has opened emits server_error instead of end.
Input errors are returned as JSON envelopes before the stream opens.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse

from playground.cache import Caches
from playground.config import get_settings
from playground.dependencies import (
    get_caches,
    get_counters,
    get_provider,
    get_session_store,
    get_toolbox,
    rate_limit_client_id,
)
from playground.engine import (
    AgentOrchestrator,
    AgentTurn,
    ErrorEnvelope,
    build_error_envelope,
    log_agent_run,
    new_request_id,
    parse_agent_request,
    process_agent_request,
)
from playground.metrics import SSE_STARTS_TOTAL, Counters
from playground.providers import BaseProvider
from playground.rate_limit import RUN_RULE, STREAM_RULE, get_rate_limiter
from playground.storage.session_store import SessionStore
from playground.summarizer import Summarizer
from playground.tools import Toolbox

logger = logging.getLogger("llm-playground")

router = APIRouter(prefix="/agent", tags=["agent"])


def get_orchestrator(
    provider: BaseProvider = Depends(get_provider),
    store: SessionStore = Depends(get_session_store),
    toolbox: Toolbox = Depends(get_toolbox),
    caches: Caches = Depends(get_caches),
    counters: Counters = Depends(get_counters),
) -> AgentOrchestrator:
    settings = get_settings()
    summarizer = Summarizer(
        provider,
        cache=caches.summaries,
        model=settings.default_model,
        strategy=settings.summary_strategy,
        counters=counters,
    )
    return AgentOrchestrator(provider, store, toolbox, summarizer=summarizer, settings=settings, counters=counters)


def _agent_error(status_code: int, code: str, message: str, details: Any = None, request_id: Optional[str] = None) -> JSONResponse:
    _, body = build_error_envelope(
        request_id=request_id or new_request_id(),
        status_code=status_code,
        code=code,
        message=message,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=body)


async def _rate_limited(request: Request, rule: str) -> Optional[JSONResponse]:
    decision = await get_rate_limiter().check(rule, rate_limit_client_id(request))
    if decision.allowed:
        return None
    resp = _agent_error(
        429,
        "RATE_LIMITED",
        "Too many requests, please try again later",
        details={"retry_after": decision.retry_after},
    )
    resp.headers["Retry-After"] = str(decision.retry_after)
    return resp


def _sse(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


@router.post("/run")
async def agent_run(
    request: Request,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Run one agent turn and return the full response body."""
    limited = await _rate_limited(request, RUN_RULE)
    if limited is not None:
        return limited
    result = await process_agent_request(request=request, orchestrator=orchestrator)
    return JSONResponse(status_code=result["status_code"], content=result["body"])


@router.post("/stream", response_model=None)
async def agent_stream(
    request: Request,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
) -> Any:
    """Run one agent turn, streaming trace steps as they happen."""
    limited = await _rate_limited(request, STREAM_RULE)
    if limited is not None:
        return limited

    request_id = new_request_id()
    try:
        run_request, session_key = await parse_agent_request(request)
    except ErrorEnvelope as exc:
        return _agent_error(exc.status_code, exc.code, exc.message, exc.details, request_id=request_id)

    async def event_stream():
        start = time.monotonic()
        queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        orchestrator.counters.inc(SSE_STARTS_TOTAL)
        yield _sse("start", {"requestId": request_id, "sessionId": session_key})

        task = asyncio.create_task(
            orchestrator.run(run_request, session_key, debug=run_request.debug, on_step=queue.put_nowait)
        )
        task.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while True:
                step = await queue.get()
                if step is None:
                    break
                yield _sse("step", {"step": step})

            try:
                turn: AgentTurn = task.result()
            except Exception as exc:
                logger.exception("agent stream failed request_id=%s", request_id)
                _, body = build_error_envelope(
                    request_id=request_id,
                    status_code=500,
                    code="INTERNAL_ERROR",
                    message="Model call failed",
                    details={"message": str(exc)},
                )
                yield _sse("server_error", body)
                log_agent_run(
                    request_id=request_id,
                    status_code=500,
                    latency_ms=(time.monotonic() - start) * 1000.0,
                    streamed=True,
                )
                return

            body = turn.to_response()
            steps = body.pop("steps")
            yield _sse("result", body)
            yield _sse(
                "usage",
                {"usage": body["usage"], "costUsd": body["costUsd"], "durationMs": body["durationMs"]},
            )
            yield _sse("end", {"requestId": request_id, "steps": len(steps)})
            log_agent_run(
                request_id=request_id,
                status_code=200,
                latency_ms=(time.monotonic() - start) * 1000.0,
                streamed=True,
            )
        finally:
            if not task.done():
                task.cancel()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
