"""
Session persistence.

Sessions are stored as one JSON snapshot per file. Snapshots never carry
runtime state: a restored session is always idle.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from parley.models.session import Session

logger = logging.getLogger(__name__)


class SessionStore:
    """
    Saves and loads session snapshots.

    Directory structure:
        ~/.parley/sessions/<session_id>.json
    """

    def __init__(self, base_dir: Path | None = None):
        """
        Initialize the store.

        Args:
            base_dir: Directory for snapshots (default: ~/.parley/sessions)
        """
        if base_dir is None:
            base_dir = Path.home() / ".parley" / "sessions"
        self.base_dir = base_dir

    def _session_path(self, session_id: str) -> Path:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        return self.base_dir / f"{session_id}.json"

    def save(self, session: Session) -> Path:
        """Write a snapshot of the session, replacing any previous one."""
        path = self._session_path(session.id)
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w") as f:
            json.dump(session.snapshot(), f, indent=2)
        tmp.replace(path)
        return path

    def load(self, session_id: str) -> Session | None:
        """
        Load a session from disk.

        Returns:
            The restored (idle) session, or None if not found
        """
        path = self._session_path(session_id)
        if not path.exists():
            return None
        with open(path) as f:
            data = json.load(f)
        return Session.restore(data)

    def list_sessions(self) -> list[Session]:
        """All stored sessions, newest first. Unreadable files are skipped."""
        sessions: list[Session] = []
        if not self.base_dir.exists():
            return sessions

        for path in self.base_dir.glob("*.json"):
            try:
                with open(path) as f:
                    sessions.append(Session.restore(json.load(f)))
            except (json.JSONDecodeError, ValidationError, OSError) as e:
                logger.warning("Skipping unreadable session file %s: %s", path.name, e)
                continue

        return sorted(sessions, key=lambda s: s.updated_at, reverse=True)

    def delete(self, session_id: str) -> bool:
        """Delete a stored session. Returns True if it existed."""
        path = self._session_path(session_id)
        if path.exists():
            path.unlink()
            return True
        return False
