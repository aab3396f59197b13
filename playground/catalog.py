from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger("llm-playground")

# Model catalogue YAML lives next to this module (playground/catalog.yaml).
CATALOG_PATH = Path(__file__).parent / "catalog.yaml"

DEFAULT_CONTEXT_WINDOW = 8192


@dataclass(frozen=True)
class ModelInfo:
    id: str
    label: str
    task: str
    context_window: int
    input_per_m: Optional[float] = None
    output_per_m: Optional[float] = None


@dataclass(frozen=True)
class Catalog:
    models: Dict[str, ModelInfo]
    default_context_window: int
    price_model: str


class CatalogLoadError(RuntimeError):
    """Raised when the model catalogue cannot be parsed."""


def _coerce_model(model_id: str, raw: Any) -> ModelInfo:
    if not isinstance(raw, dict):
        raise CatalogLoadError(f"Catalogue entry for '{model_id}' must be a mapping")
    input_price = raw.get("input_per_m")
    output_price = raw.get("output_per_m")
    return ModelInfo(
        id=model_id,
        label=str(raw.get("label", model_id)),
        task=str(raw.get("task", "text-generation")),
        context_window=int(raw.get("context_window", DEFAULT_CONTEXT_WINDOW)),
        input_per_m=float(input_price) if input_price is not None else None,
        output_per_m=float(output_price) if output_price is not None else None,
    )


def load_catalog(path: Path = CATALOG_PATH) -> Catalog:
    """Load and validate the model catalogue."""
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        raise CatalogLoadError("Catalogue YAML must deserialize to a mapping")

    defaults = data.get("default") or {}
    models_raw = data.get("models") or {}
    if not isinstance(models_raw, dict):
        raise CatalogLoadError("Catalogue 'models' must be a mapping")

    models = {str(k).lower(): _coerce_model(str(k), v) for k, v in models_raw.items()}
    return Catalog(
        models=models,
        default_context_window=int(defaults.get("context_window", DEFAULT_CONTEXT_WINDOW)),
        price_model=str(defaults.get("price_model", "gpt-4o-mini")).lower(),
    )


@lru_cache(maxsize=1)
def get_catalog() -> Catalog:
    return load_catalog()


def get_model(model: Optional[str]) -> Optional[ModelInfo]:
    return get_catalog().models.get(str(model or "").lower())


def context_window(model: Optional[str]) -> int:
    """Approximate context window for a model; unknown models get the default."""
    info = get_model(model)
    if info is None:
        return get_catalog().default_context_window
    return info.context_window


def list_models(task: Optional[str] = None) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for info in get_catalog().models.values():
        if task and info.task != task:
            continue
        out.append({"label": info.label, "value": info.id, "task": info.task, "context_window": info.context_window})
    return out
