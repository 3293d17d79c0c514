"""Core module for parley."""

from parley.core.access import Access, AccessResolver, CatalogAccessResolver
from parley.core.config import KeyStore, get_key_store
from parley.core.engine import CompletionResult, SessionEngine
from parley.core.errors import EngineError, classify_failure, classify_stream_error
from parley.core.ledger import UsageLedger
from parley.core.model_registry import ModelCatalog, get_model_catalog
from parley.core.normalizer import EventNormalizer
from parley.core.session_store import SessionStore
from parley.core.telemetry import TelemetryCollector
from parley.core.tokens import TokenBudget, estimate_tokens, get_context_window
from parley.core.tools import FunctionToolExecutor, ToolExecutor, ToolOutcome
from parley.core.transport import HttpxTransport, StreamKey, Transport
from parley.core.usage import calculate_cost, format_cost, normalize_usage

__all__ = [
    "Access",
    "AccessResolver",
    "CatalogAccessResolver",
    "CompletionResult",
    "EngineError",
    "EventNormalizer",
    "FunctionToolExecutor",
    "HttpxTransport",
    "KeyStore",
    "ModelCatalog",
    "SessionEngine",
    "SessionStore",
    "StreamKey",
    "TelemetryCollector",
    "TokenBudget",
    "ToolExecutor",
    "ToolOutcome",
    "Transport",
    "UsageLedger",
    "calculate_cost",
    "classify_failure",
    "classify_stream_error",
    "estimate_tokens",
    "format_cost",
    "get_context_window",
    "get_key_store",
    "get_model_catalog",
    "normalize_usage",
]
