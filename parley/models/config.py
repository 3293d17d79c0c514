"""
Engine and model catalog configuration models.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

Vendor = Literal["anthropic", "openai", "google", "relay"]


class PriceEntry(BaseModel):
    """USD per million tokens for one pricing-table key."""

    input: float = Field(..., ge=0)
    output: float = Field(..., ge=0)
    cache_write: float | None = Field(default=None, ge=0, description="Zero when the vendor does not bill it separately")
    cache_read: float | None = Field(default=None, ge=0, description="Zero when the vendor does not bill it separately")
    long_context: PriceEntry | None = Field(
        default=None, description="Tier applied when the prompt exceeds the large-prompt threshold"
    )


class ModelEntry(BaseModel):
    """A selectable model in the catalog."""

    id: str = Field(..., min_length=1, description="Catalog id used by callers")
    name: str = ""
    provider: Literal["anthropic", "openai", "google"]
    model: str = Field(..., min_length=1, description="Vendor model identifier sent on the wire")
    context_window: int | None = Field(default=None, gt=0)
    thinking: str | None = Field(
        default=None, description="Reasoning level override, or 'none' to disable reasoning"
    )


class ProviderEntry(BaseModel):
    """How to reach one vendor directly."""

    api_key_env: str
    url: str | None = None


class EngineConfig(BaseModel):
    """Runtime settings for the session engine."""

    default_model: str = Field(default="sonnet", description="Catalog id used when a session names none")
    max_tokens: int = Field(default=16384, gt=0)
    max_tool_loop_depth: int | None = Field(
        default=None, gt=0, description="Stop the tool loop visibly after N automatic resends"
    )
    max_tool_workers: int = Field(default=5, gt=0)
    request_timeout: float = Field(default=300.0, gt=0, description="Transport timeout in seconds")
    monthly_budget: float | None = Field(default=None, ge=0, description="USD per calendar month for direct calls")
    telemetry: bool = True
    relay_url: str = "https://relay.parley.dev/api/v1/proxy"


class CatalogFile(BaseModel):
    """Top-level layout of ~/.parley/models.yaml."""

    engine: EngineConfig = Field(default_factory=EngineConfig)
    models: list[ModelEntry] = Field(default_factory=list)
    providers: dict[str, ProviderEntry] = Field(default_factory=dict)
    pricing: dict[str, PriceEntry] = Field(default_factory=dict)


class ConfigError(Exception):
    """Raised when a catalog file does not validate."""

    def __init__(self, path: Path, issues: list[str]):
        self.path = path
        self.issues = issues
        msg = f"Invalid configuration in '{path}':\n" + "\n".join(f"  - {issue}" for issue in issues)
        super().__init__(msg)


def _friendly_validation_errors(path: Path, exc: ValidationError) -> ConfigError:
    issues: list[str] = []
    for error in exc.errors():
        loc = ".".join(str(x) for x in error["loc"])
        if error["type"] == "missing":
            issues.append(f"{loc} is required")
        elif error["type"] == "literal_error":
            allowed = error.get("ctx", {}).get("expected", "")
            issues.append(f"{loc}: must be one of {allowed}")
        else:
            issues.append(f"{loc}: {error['msg']}")
    return ConfigError(path, issues)


def load_catalog_file(path: Path) -> CatalogFile:
    """
    Load and validate a catalog YAML file.

    A missing or empty file yields an empty catalog; invalid content raises
    ConfigError with one line per problem.
    """
    if not path.exists():
        return CatalogFile()

    with open(path) as f:
        data = yaml.safe_load(f)

    if not data:
        return CatalogFile()

    try:
        return CatalogFile(**data)
    except ValidationError as e:
        raise _friendly_validation_errors(path, e) from e
