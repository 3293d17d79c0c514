"""
Credential/access resolution: who to call, where, and with what key.

A direct vendor key wins; otherwise a relay token routes the call through
the billing relay with the real vendor passed as a hint. Returning None
means "no credentials"; OfflineError means credentials exist but could not
be refreshed.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Literal

import httpx

from parley.core.config import RELAY_TOKEN_KEY, get_key_store
from parley.core.errors import OfflineError
from parley.core.model_registry import ModelCatalog, get_model_catalog

logger = logging.getLogger(__name__)

Strategy = Literal["ghost", "cheapest"]

# (vendor, model, key env) tried in order for strategy-based resolution
GHOST_MODELS = [
    ("anthropic", "claude-haiku-4-5-20251001", "ANTHROPIC_API_KEY"),
    ("google", "gemini-2.5-flash-lite", "GOOGLE_API_KEY"),
    ("openai", "gpt-5-nano-2025-08-07", "OPENAI_API_KEY"),
]

CHEAP_MODELS = [
    ("google", "gemini-2.5-flash-lite", "GOOGLE_API_KEY"),
    ("anthropic", "claude-haiku-4-5-20251001", "ANTHROPIC_API_KEY"),
    ("openai", "gpt-5-nano-2025-08-07", "OPENAI_API_KEY"),
]


@dataclass
class Access:
    """Everything needed to address one request."""

    endpoint: str | None
    api_key: str
    vendor: str  # anthropic | openai | google | relay
    model: str
    vendor_hint: str | None = None  # Inner vendor for relay calls

    @property
    def effective_vendor(self) -> str:
        """The vendor whose models and reasoning rules apply."""
        if self.vendor == "relay":
            return self.vendor_hint or "anthropic"
        return self.vendor


class AccessResolver(ABC):
    @abstractmethod
    def resolve(self, model: str | None = None, strategy: Strategy | None = None) -> Access | None:
        """
        Resolve access for a catalog model id or a fallback strategy.

        Raises:
            OfflineError: Credentials exist but the network is unavailable
        """
        ...


def _usable(key: str | None) -> bool:
    return bool(key) and "your-" not in key


class CatalogAccessResolver(AccessResolver):
    """
    Resolves against the model catalog and the key store.

    Args:
        catalog: Model catalog (default: the global one)
        key_source: Callable returning a key by env name (default: KeyStore.get)
        relay_url: Relay endpoint used when only a relay token is available
        token_refresher: Optional callable taking the current relay token
            and returning a fresh one, or None when the user is signed out.
            Network failures surface as httpx.RequestError.
    """

    def __init__(
        self,
        catalog: ModelCatalog | None = None,
        key_source: Callable[[str], str | None] | None = None,
        relay_url: str | None = None,
        token_refresher: Callable[[str], str | None] | None = None,
    ):
        self.catalog = catalog or get_model_catalog()
        self._key_source = key_source or get_key_store().get
        self.relay_url = relay_url or self.catalog.engine.relay_url
        self._token_refresher = token_refresher

    def resolve(self, model: str | None = None, strategy: Strategy | None = None) -> Access | None:
        if strategy == "ghost":
            return self._resolve_from_list(GHOST_MODELS)
        if strategy == "cheapest":
            return self._resolve_from_list(CHEAP_MODELS)
        return self._resolve_model(model)

    def _resolve_model(self, model: str | None) -> Access | None:
        entry = self.catalog.find(model) if model else self.catalog.default_model()
        if entry is None:
            logger.warning("Model '%s' is not in the catalog", model)
            return None

        provider = self.catalog.provider(entry.provider)
        if provider is not None:
            key = self._key_source(provider.api_key_env)
            if _usable(key):
                return Access(
                    endpoint=provider.url,
                    api_key=key,
                    vendor=entry.provider,
                    model=entry.model,
                )

        return self._relay_access(entry.model, entry.provider)

    def _resolve_from_list(self, candidates: list[tuple[str, str, str]]) -> Access | None:
        for vendor, model, key_env in candidates:
            key = self._key_source(key_env)
            if _usable(key):
                provider = self.catalog.provider(vendor)
                return Access(
                    endpoint=provider.url if provider else None,
                    api_key=key,
                    vendor=vendor,
                    model=model,
                )
        vendor, model, _ = candidates[0]
        return self._relay_access(model, vendor)

    def _relay_access(self, model: str, vendor_hint: str) -> Access | None:
        token = self._key_source(RELAY_TOKEN_KEY)
        if not _usable(token):
            return None

        if self._token_refresher is not None:
            try:
                token = self._token_refresher(token)
            except httpx.RequestError as e:
                raise OfflineError() from e
            if not token:
                logger.info("Relay token could not be refreshed; treating as signed out")
                return None

        return Access(
            endpoint=self.relay_url,
            api_key=token,
            vendor="relay",
            model=model,
            vendor_hint=vendor_hint,
        )
