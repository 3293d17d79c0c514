"""Shared engine and session store for the HTTP layer."""

from __future__ import annotations

import threading

from parley.core.engine import SessionEngine
from parley.core.session_store import SessionStore
from parley.models.session import Session

_engine: SessionEngine | None = None
_store: SessionStore | None = None
_lock = threading.Lock()


def get_engine() -> SessionEngine:
    """Get or create the global engine."""
    global _engine
    if _engine is None:
        with _lock:
            if _engine is None:
                _engine = SessionEngine()
    return _engine


def get_session_store() -> SessionStore:
    global _store
    if _store is None:
        with _lock:
            if _store is None:
                _store = SessionStore()
    return _store


def set_engine(engine: SessionEngine | None, store: SessionStore | None = None) -> None:
    """Install a preconfigured engine (and store)."""
    global _engine, _store
    with _lock:
        _engine = engine
        if store is not None:
            _store = store


def reset_engine() -> None:
    """Drop the global engine and store (for shutdown and tests)."""
    global _engine, _store
    with _lock:
        if _engine is not None:
            close = getattr(_engine.transport, "close", None)
            if close is not None:
                close()
        _engine = None
        _store = None


def find_session(session_id: str) -> Session | None:
    """A live session, or a stored one restored into the engine."""
    engine = get_engine()
    session = engine.get_session(session_id)
    if session is not None:
        return session
    stored = get_session_store().load(session_id)
    if stored is None:
        return None
    return engine.restore(stored.snapshot())
