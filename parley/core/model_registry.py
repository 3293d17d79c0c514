"""
Model catalog: which models exist, how to reach them, and what they cost.

Built-in defaults can be extended or overridden in ~/.parley/models.yaml:

    engine:
      default_model: sonnet
      monthly_budget: 20
    models:
      - id: sonnet
        provider: anthropic
        model: claude-sonnet-4-6
        context_window: 200000
    providers:
      anthropic:
        api_key_env: ANTHROPIC_API_KEY
    pricing:
      claude-sonnet-4-6: {input: 3, output: 15, cache_write: 3.75, cache_read: 0.3}
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import yaml

from parley.core.providers.base import ReasoningConfig
from parley.core.usage import DEFAULT_PRICING
from parley.models.config import (
    CatalogFile,
    EngineConfig,
    ModelEntry,
    PriceEntry,
    ProviderEntry,
    load_catalog_file,
)

logger = logging.getLogger(__name__)

DEFAULT_MODELS = [
    ModelEntry(id="opus", name="Opus 4.6", provider="anthropic", model="claude-opus-4-6"),
    ModelEntry(id="sonnet", name="Sonnet 4.6", provider="anthropic", model="claude-sonnet-4-6"),
    ModelEntry(id="haiku", name="Haiku 4.5", provider="anthropic", model="claude-haiku-4-5-20251001"),
    ModelEntry(id="gpt-5.2", name="GPT-5.2", provider="openai", model="gpt-5.2-2025-12-11"),
    ModelEntry(id="gpt-5-mini", name="GPT-5 Mini", provider="openai", model="gpt-5-mini-2025-08-07"),
    ModelEntry(
        id="gemini-3.1-pro-fast",
        name="Gemini 3.1 Pro (Low)",
        provider="google",
        model="gemini-3.1-pro-preview",
        context_window=1_048_576,
        thinking="low",
    ),
    ModelEntry(
        id="gemini-3.1-pro-deep",
        name="Gemini 3.1 Pro (High)",
        provider="google",
        model="gemini-3.1-pro-preview",
        context_window=1_048_576,
        thinking="high",
    ),
    ModelEntry(
        id="gemini-flash",
        name="Gemini 3 Flash",
        provider="google",
        model="gemini-3-flash-preview",
        context_window=1_048_576,
        thinking="medium",
    ),
]

DEFAULT_PROVIDERS = {
    "anthropic": ProviderEntry(api_key_env="ANTHROPIC_API_KEY", url="https://api.anthropic.com/v1/messages"),
    "openai": ProviderEntry(api_key_env="OPENAI_API_KEY", url="https://api.openai.com/v1/responses"),
    "google": ProviderEntry(
        api_key_env="GOOGLE_API_KEY", url="https://generativelanguage.googleapis.com/v1beta/models"
    ),
}

_ADAPTIVE = re.compile(r"claude-(opus|sonnet)-4-6")
_MANUAL = re.compile(r"claude-(opus|sonnet)-4")
_OPENAI_REASONING = re.compile(r"gpt-5|o\d")


def get_thinking_config(model: str, vendor: str, level: str | None = None) -> ReasoningConfig | None:
    """
    Reasoning request for a vendor model, or None when it does not support one.

    Args:
        model: Vendor model identifier
        vendor: "anthropic", "relay", "openai" or "google" (the inner vendor
            for relay calls to OpenAI or Google)
        level: Catalog override; "none" disables reasoning
    """
    if level == "none":
        return None

    if vendor in ("anthropic", "relay"):
        if _ADAPTIVE.search(model):
            return ReasoningConfig(mode="adaptive", effort=level or "medium")
        if _MANUAL.search(model):
            return ReasoningConfig(mode="manual", budget_tokens=10_000)

    if vendor == "openai" and _OPENAI_REASONING.search(model):
        return ReasoningConfig(mode="openai", effort=level or "medium")

    if vendor == "google" and "lite" not in model:
        if "gemini-3" in model:
            return ReasoningConfig(mode="google", level=level or "high")
        if "gemini-2.5" in model:
            return ReasoningConfig(mode="google25", budget_tokens=8192)

    return None


class ModelCatalog:
    """
    Models, vendor endpoints and pricing, with user overrides from YAML.
    """

    def __init__(self, base_dir: Path | None = None):
        if base_dir is None:
            base_dir = Path.home() / ".parley"
        self.base_dir = base_dir
        self._cache: CatalogFile | None = None

    def _models_path(self) -> Path:
        return self.base_dir / "models.yaml"

    def _load(self) -> CatalogFile:
        if self._cache is not None:
            return self._cache

        loaded = load_catalog_file(self._models_path())

        models = {m.id: m for m in DEFAULT_MODELS}
        models.update({m.id: m for m in loaded.models})
        providers = dict(DEFAULT_PROVIDERS)
        providers.update(loaded.providers)
        pricing = dict(DEFAULT_PRICING)
        pricing.update(loaded.pricing)

        self._cache = CatalogFile(
            engine=loaded.engine,
            models=list(models.values()),
            providers=providers,
            pricing=pricing,
        )
        return self._cache

    def reload(self) -> None:
        self._cache = None

    # ── Lookup ────────────────────────────────────────────────────────

    @property
    def engine(self) -> EngineConfig:
        return self._load().engine

    @property
    def pricing(self) -> dict[str, PriceEntry]:
        return self._load().pricing

    def list_models(self) -> list[ModelEntry]:
        return list(self._load().models)

    def find(self, model: str | None) -> ModelEntry | None:
        """Find by catalog id first, then by vendor model identifier."""
        if not model:
            return None
        models = self._load().models
        for entry in models:
            if entry.id == model:
                return entry
        for entry in models:
            if entry.model == model:
                return entry
        return None

    def default_model(self) -> ModelEntry | None:
        data = self._load()
        return self.find(data.engine.default_model) or (data.models[0] if data.models else None)

    def provider(self, vendor: str) -> ProviderEntry | None:
        return self._load().providers.get(vendor)

    def thinking_config(self, entry: ModelEntry, vendor: str | None = None) -> ReasoningConfig | None:
        return get_thinking_config(entry.model, vendor or entry.provider, entry.thinking)

    # ── Persistence ───────────────────────────────────────────────────

    def set_default(self, model_id: str) -> None:
        """Persist the default model id. Raises KeyError for unknown ids."""
        if self.find(model_id) is None:
            raise KeyError(model_id)
        path = self._models_path()
        data: dict[str, Any] = {}
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        data.setdefault("engine", {})["default_model"] = model_id
        self.base_dir.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
        self.reload()


_catalog: ModelCatalog | None = None


def get_model_catalog() -> ModelCatalog:
    """Get the global catalog instance."""
    global _catalog
    if _catalog is None:
        _catalog = ModelCatalog()
    return _catalog
