from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from .catalog import get_catalog, get_model


def _first(usage: Mapping[str, Any], *names: str) -> Optional[int]:
    for name in names:
        value = usage.get(name)
        if value is not None:
            return value
    return None


def normalize_usage(usage: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Optional[int]]]:
    """Provider usage (snake or camel case) as promptTokens/completionTokens/totalTokens."""
    if not usage:
        return None
    return {
        "promptTokens": _first(usage, "promptTokens", "prompt_tokens"),
        "completionTokens": _first(usage, "completionTokens", "completion_tokens"),
        "totalTokens": _first(usage, "totalTokens", "total_tokens"),
    }


def estimate_cost_usd(usage: Optional[Mapping[str, Any]], model: Optional[str] = None) -> Optional[float]:
    """
    Estimated USD cost from per-million-token prices in the catalogue. Models
    without prices are billed at the catalogue's price model.
    """
    if not usage:
        return None
    info = get_model(model)
    if info is None or info.input_per_m is None:
        info = get_model(get_catalog().price_model)
    if info is None:
        return None
    prompt = (_first(usage, "prompt_tokens", "promptTokens") or 0) / 1_000_000
    completion = (_first(usage, "completion_tokens", "completionTokens") or 0) / 1_000_000
    cost = prompt * (info.input_per_m or 0.0) + completion * (info.output_per_m or 0.0)
    return round(cost, 6)
