from __future__ import annotations

import hmac
import os
from functools import lru_cache
from typing import Any, Dict, Optional, Tuple

from fastapi import Depends, Request
import jwt
from jwt import PyJWKClient

from .cache import Caches, build_caches
from .config import get_settings
from .corpus import NotesCorpus
from .metrics import Counters
from .providers import BaseProvider, build_provider
from .storage.session_store import SessionStore, build_session_store
from .tools import Toolbox
from .weather import WeatherClient

DEFAULT_SESSION_ID = "mini-agent"


def get_provider(request: Request) -> BaseProvider:
    """
    Dependency returning the active provider.

    An ``X-API-Key`` header overrides the configured key for this request.
    Tests override this function via FastAPI's dependency_overrides.
    """

    return build_provider(api_key_override=request.headers.get("X-API-Key") or None)


_stores: Dict[Tuple[Any, ...], SessionStore] = {}
_caches: Dict[Tuple[Any, ...], Caches] = {}


def get_session_store() -> SessionStore:
    """One store per backend configuration, created on first use."""
    settings = get_settings()
    key = (
        settings.memory_store,
        settings.memory_max_items,
        settings.memory_ttl_seconds,
        settings.redis_url,
        settings.db_path,
        os.getenv("DATABASE_URL"),
    )
    store = _stores.get(key)
    if store is None:
        store = build_session_store(settings)
        _stores[key] = store
    return store


def get_caches() -> Caches:
    settings = get_settings()
    key = (settings.cache_dir, settings.cache_flush_delay)
    caches = _caches.get(key)
    if caches is None:
        caches = build_caches(settings.cache_dir, flush_delay=settings.cache_flush_delay)
        _caches[key] = caches
    return caches


def active_caches() -> Tuple[Caches, ...]:
    return tuple(_caches.values())


def active_stores() -> Tuple[SessionStore, ...]:
    return tuple(_stores.values())


def get_toolbox(
    provider: BaseProvider = Depends(get_provider),
    caches: Caches = Depends(get_caches),
) -> Toolbox:
    settings = get_settings()
    weather = None
    if settings.weather_api_key:
        weather = WeatherClient(settings.weather_api_key, timeout=settings.tool_timeout_seconds)
    return Toolbox(
        corpus=NotesCorpus(settings.notes_dir, provider=provider, embeddings=caches.embeddings),
        weather=weather,
        timeout=settings.tool_timeout_seconds,
        top_k=settings.docs_top_k,
    )


def get_counters(request: Request) -> Counters:
    """Counters owned by the app (see ``playground.main``)."""
    return request.app.state.counters


class AuthError(RuntimeError):
    """Raised when authentication fails."""


def _get_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization") or ""
    if not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


@lru_cache(maxsize=4)
def _jwks_client(jwks_url: str) -> PyJWKClient:
    # PyJWKClient caches signing keys by kid; one client per URL.
    return PyJWKClient(jwks_url)


def _verify_clerk_token(token: str) -> Dict[str, Any]:
    settings = get_settings()
    if not settings.clerk_jwt_key and not settings.clerk_jwks_url:
        raise AuthError("Clerk auth is not configured")

    try:
        header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise AuthError("Invalid session token") from exc
    if header.get("alg") != "RS256":
        raise AuthError("Unsupported token algorithm")

    decode_kwargs: Dict[str, Any] = {
        "algorithms": ["RS256"],
        "options": {"verify_aud": bool(settings.clerk_audience)},
    }
    if settings.clerk_issuer:
        decode_kwargs["issuer"] = settings.clerk_issuer
    if settings.clerk_audience:
        decode_kwargs["audience"] = settings.clerk_audience

    try:
        if settings.clerk_jwt_key:
            key: Any = settings.clerk_jwt_key
        else:
            key = _jwks_client(settings.clerk_jwks_url or "").get_signing_key_from_jwt(token).key
        claims = jwt.decode(token, key, **decode_kwargs)
    except jwt.PyJWTError as exc:
        raise AuthError("Invalid or expired session token") from exc

    parties = settings.clerk_authorized_parties
    if parties and claims.get("azp") not in parties:
        raise AuthError("Unauthorized token issuer")
    return claims


def _clerk_mode() -> bool:
    settings = get_settings()
    return not settings.auth_token and bool(settings.clerk_jwt_key or settings.clerk_jwks_url)


def require_clerk_user_id(request: Request) -> str:
    """Verify the Clerk session (bearer token or ``__session`` cookie) and return its subject."""
    token = _get_bearer_token(request) or request.cookies.get("__session")
    if not token:
        raise AuthError("Missing session token")
    user_id = _verify_clerk_token(token).get("sub")
    if not user_id:
        raise AuthError("Missing user id in token")
    return str(user_id)


def enforce_auth(request: Request) -> None:
    """
    Auth guard used by agent and session endpoints.

    Priority:
    - If AUTH_TOKEN is set, accept only that bearer token.
    - Otherwise, if Clerk is configured, require a valid Clerk session token;
      the verified subject is kept on ``request.state`` for session keys.
    - If neither is configured, authentication is effectively disabled.
    """
    settings = get_settings()
    if settings.auth_token:
        supplied = _get_bearer_token(request)
        if supplied is None:
            raise AuthError("Missing or invalid Authorization header")
        if not hmac.compare_digest(supplied, settings.auth_token):
            raise AuthError("Invalid bearer token")
        return

    if _clerk_mode():
        request.state.caller_id = require_clerk_user_id(request)


def resolve_caller_id(request: Request) -> Optional[str]:
    """Verified Clerk subject in Clerk mode, else the X-User-Id header."""
    if _clerk_mode():
        verified = getattr(request.state, "caller_id", None)
        return verified or require_clerk_user_id(request)
    caller = (request.headers.get("X-User-Id") or "").strip()
    return caller or None


def build_session_key(request: Request, session_id: Optional[str] = None) -> str:
    """
    Per-caller session key: body sessionId, else X-Session-Id, else the
    default scope; prefixed with ``<callerId>:`` unless already prefixed.
    """
    raw = str(session_id or request.headers.get("X-Session-Id") or "").strip() or DEFAULT_SESSION_ID
    caller = resolve_caller_id(request)
    if not caller or raw.startswith(f"{caller}:"):
        return raw
    return f"{caller}:{raw}"


def rate_limit_client_id(request: Request) -> str:
    caller = (request.headers.get("X-User-Id") or "").strip()
    if caller:
        return caller
    return request.client.host if request.client else "anonymous"
