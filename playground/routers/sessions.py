"""
Session memory API: GET /sessions/{id}, POST /sessions/{id}/messages, DELETE /sessions/{id}.

Session ids are namespaced per caller the same way the agent routes do it.
Error responses use the standard envelope (400/401/422).
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from playground.config import get_settings
from playground.dependencies import AuthError, build_session_key, enforce_auth, get_session_store
from playground.engine import build_error_envelope, new_request_id
from playground.models import AppendMessagesRequest
from playground.storage.session_store import SessionStore

router = APIRouter(prefix="/sessions", tags=["sessions"])


def _session_error(status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    _, body = build_error_envelope(
        request_id=new_request_id(),
        status_code=status_code,
        code=code,
        message=message,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=body)


def _authorized_key(request: Request, session_id: str) -> str:
    enforce_auth(request)
    return build_session_key(request, session_id)


@router.get("/{session_id}")
async def get_session(
    session_id: str,
    request: Request,
    store: SessionStore = Depends(get_session_store),
) -> JSONResponse:
    """Return stored messages (oldest first) and the rolling summary, if any."""
    try:
        key = _authorized_key(request, session_id)
    except AuthError as exc:
        return _session_error(401, "UNAUTHORIZED", str(exc))

    messages = await store.recent(key, limit=get_settings().memory_max_items)
    summary = await store.get_summary(key)
    return JSONResponse(
        status_code=200,
        content={
            "session_id": key,
            "status": await store.status(key),
            "messages": messages,
            "summary": summary.model_dump() if summary else None,
        },
    )


@router.post("/{session_id}/messages")
async def post_session_messages(
    session_id: str,
    request: Request,
    store: SessionStore = Depends(get_session_store),
) -> JSONResponse:
    """
    Append messages. Body: { "messages": [ { "role", "content" }, ... ] }.
    Returns 200 with { ok, session_id, appended, last_seq }.
    """
    try:
        key = _authorized_key(request, session_id)
    except AuthError as exc:
        return _session_error(401, "UNAUTHORIZED", str(exc))

    try:
        body = await request.json()
    except ValueError:
        return _session_error(400, "MALFORMED_REQUEST", "Request body must be valid JSON")
    try:
        parsed = AppendMessagesRequest.model_validate(body)
    except ValidationError as exc:
        return _session_error(
            422,
            "INPUT_VALIDATION_ERROR",
            "Request body failed validation",
            details=[{"path": list(err["loc"]), "message": err["msg"]} for err in exc.errors()],
        )

    last_seq = None
    for message in parsed.messages:
        last_seq = await store.append(key, message.model_dump())
    return JSONResponse(
        status_code=200,
        content={"ok": True, "session_id": key, "appended": len(parsed.messages), "last_seq": last_seq},
    )


@router.delete("/{session_id}")
async def delete_session(
    session_id: str,
    request: Request,
    store: SessionStore = Depends(get_session_store),
) -> JSONResponse:
    """Clear messages and summary; the session is marked archived."""
    try:
        key = _authorized_key(request, session_id)
    except AuthError as exc:
        return _session_error(401, "UNAUTHORIZED", str(exc))

    await store.clear(key)
    return JSONResponse(status_code=200, content={"ok": True, "session_id": key, "status": "archived"})
