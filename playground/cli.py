"""CLI entry point for the llm-playground package."""

from __future__ import annotations

import asyncio
import json
import os
import platform
import shutil
import sys
from typing import Any, Dict

# OpenRouter: one API key for many models (OpenAI, Claude, Gemini, etc.)
OPENROUTER_KEYS_URL = "https://openrouter.ai/keys"
WEATHER_KEYS_URL = "https://www.weatherapi.com/signup.aspx"
MIN_PYTHON = (3, 10)
CLI_SESSION = "cli"

# Starter .env printed by the setup banner.
ENV_TEMPLATE = (
    "PROVIDER=openrouter",
    "OPENROUTER_API_KEY=YOUR_KEY_HERE",
    "OPENROUTER_MODEL=openai/gpt-4o-mini",
    "WEATHER_API_KEY=YOUR_KEY_HERE",
    "NOTES_DIR=./notes",
    "MEMORY_STORE=sql",
    "SUMMARY_STRATEGY=model",
)


def _print_setup_banner(
    provider: str,
    memory_store: str,
    port: int,
    *,
    for_startup: bool = True,
) -> None:
    """Print setup/LLM instructions. If for_startup, show 'playground started' line; else show 'Setup' header."""
    provider_note = "no API key required" if provider == "stub" else "API key from .env"
    base = f"http://localhost:{port}"
    print()
    if for_startup:
        print("✅ LLM playground started | memory store: {}".format(memory_store))
    else:
        print("LLM Playground Setup")
        print("Memory store: {}  |  Provider: {} ({})".format(memory_store, provider, provider_note))
    if for_startup:
        print("Provider: {} ({})".format(provider, provider_note))
    print()
    print("Docs:     {}/docs".format(base))
    print("Agent:    {}/agent/run".format(base))
    print("Models:   {}/models".format(base))
    print()
    print("────────────────────────────────────────────")
    print("Get an API key from OpenRouter (one key for many models):")
    print("   {}".format(OPENROUTER_KEYS_URL))
    print("Optional: a WeatherAPI.com key enables the weather tool:")
    print("   {}".format(WEATHER_KEYS_URL))
    print()
    print("Put these in .env next to where you run llm-playground:")
    print()
    for line in ENV_TEMPLATE:
        print(f"   {line}")
    print()
    print("Then restart: stop the server (Ctrl+C) and run llm-playground again.")
    print()


def _python_version_str() -> str:
    return ".".join(str(part) for part in sys.version_info[:3])


def _print_help() -> None:
    print("LLM Playground CLI")
    print()
    print("Usage:")
    print("  llm-playground                Start the API server")
    print("  llm-playground setup          Print setup/env guidance")
    print("  llm-playground doctor         Print environment diagnostics")
    print('  llm-playground ask "<prompt>" Run one agent turn and print the answer')
    print()


def _print_doctor() -> None:
    from .config import get_settings

    settings = get_settings()
    print("LLM Playground Doctor")
    print()
    print(f"Platform: {platform.platform()}")
    print(f"Python:   {_python_version_str()}")
    print(f"Exe:      {sys.executable}")
    print(f"In venv:  {'yes' if sys.prefix != sys.base_prefix else 'no'}")
    print(f"PATH bin: {shutil.which('llm-playground') or 'not found'}")
    print(f"Provider: {settings.provider_name}")
    print(f"Memory:   {settings.memory_store}")
    print(f"Notes:    {settings.notes_dir} ({'found' if os.path.isdir(settings.notes_dir) else 'missing'})")
    print(f"Cache:    {settings.cache_dir or 'memory only'}")
    print(f"Weather:  {'configured' if settings.weather_api_key else 'no WEATHER_API_KEY'}")
    if sys.version_info < MIN_PYTHON:
        print(
            f"Issue: Python is below required minimum {MIN_PYTHON[0]}.{MIN_PYTHON[1]}."
        )


async def _ask(prompt: str) -> Dict[str, Any]:
    from .cache import build_caches
    from .config import get_settings
    from .corpus import NotesCorpus
    from .engine import AgentOrchestrator
    from .models import AgentRunRequest
    from .providers import build_provider
    from .storage.session_store import build_session_store
    from .summarizer import Summarizer
    from .tools import Toolbox
    from .weather import WeatherClient

    settings = get_settings()
    provider = build_provider()
    store = build_session_store(settings)
    caches = build_caches(settings.cache_dir, flush_delay=settings.cache_flush_delay)
    toolbox = Toolbox(
        corpus=NotesCorpus(settings.notes_dir, provider=provider, embeddings=caches.embeddings),
        weather=WeatherClient(settings.weather_api_key) if settings.weather_api_key else None,
        timeout=settings.tool_timeout_seconds,
        top_k=settings.docs_top_k,
    )
    summarizer = Summarizer(
        provider,
        cache=caches.summaries,
        model=settings.default_model,
        strategy=settings.summary_strategy,
    )
    orchestrator = AgentOrchestrator(provider, store, toolbox, summarizer=summarizer, settings=settings)
    await store.init()
    try:
        turn = await orchestrator.run(AgentRunRequest(prompt=prompt), CLI_SESSION)
    finally:
        caches.flush()
        await store.close()
    return turn.to_response()


def _print_turn(body: Dict[str, Any]) -> None:
    print(body["answer"])
    print()
    print(f"intent: {body['intent']}  model: {body['model']}  durationMs: {body['durationMs']}")
    for source in body["sources"]:
        label = source.get("file") or source.get("title") or source.get("url")
        print(f"  [{source['type']}] {label}")
    print(f"steps: {json.dumps(body['steps'])}")


def main() -> None:
    """Run the playground server or handle setup/doctor/ask commands."""
    from .config import get_settings

    port = int(os.environ.get("PORT", "4280"))
    host = os.environ.get("HOST", "0.0.0.0")
    settings = get_settings()

    if len(sys.argv) > 1:
        subcommand = sys.argv[1].strip().lower()
        if subcommand in {"-h", "--help", "help"}:
            _print_help()
            sys.exit(0)
        if subcommand == "setup":
            _print_setup_banner(
                provider=settings.provider_name,
                memory_store=settings.memory_store,
                port=port,
                for_startup=False,
            )
            sys.exit(0)
        if subcommand == "doctor":
            _print_doctor()
            sys.exit(0)
        if subcommand == "ask":
            prompt = " ".join(sys.argv[2:]).strip()
            if not prompt:
                print('Error: usage: llm-playground ask "<prompt>"', file=sys.stderr)
                sys.exit(2)
            _print_turn(asyncio.run(_ask(prompt)))
            sys.exit(0)

    import uvicorn

    _print_setup_banner(
        provider=settings.provider_name,
        memory_store=settings.memory_store,
        port=port,
        for_startup=True,
    )

    uvicorn.run(
        "playground.main:app",
        host=host,
        port=port,
        factory=False,
    )


if __name__ == "__main__":
    main()
    sys.exit(0)
