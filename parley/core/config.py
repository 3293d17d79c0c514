"""
Encrypted API key storage.

Keys live Fernet-encrypted in ~/.parley/keys/. Environment variables always
take precedence over stored values.
"""

import json
import logging
import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

RELAY_TOKEN_KEY = "PARLEY_RELAY_TOKEN"

# Key names the engine knows how to use
KNOWN_KEYS = {
    "ANTHROPIC_API_KEY": "Anthropic (Claude)",
    "OPENAI_API_KEY": "OpenAI (GPT)",
    "GOOGLE_API_KEY": "Google (Gemini)",
    RELAY_TOKEN_KEY: "Billing relay token",
}


class KeyStore:
    """
    Stores API keys encrypted at rest.

    Directory structure:
        ~/.parley/keys/.key      # Encryption key
        ~/.parley/keys/keys.enc  # Encrypted key/value map
    """

    def __init__(self, base_dir: Path | None = None):
        if base_dir is None:
            base_dir = Path.home() / ".parley" / "keys"
        self.base_dir = base_dir
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._fernet = self._get_fernet()
        self._cache: dict[str, str] | None = None

    def _get_fernet(self) -> Fernet:
        key_file = self.base_dir / ".key"

        if key_file.exists():
            key = key_file.read_bytes()
        else:
            key = Fernet.generate_key()
            key_file.write_bytes(key)
            try:
                key_file.chmod(0o600)
            except OSError:
                pass

        return Fernet(key)

    def _keys_path(self) -> Path:
        return self.base_dir / "keys.enc"

    def _load_keys(self) -> dict[str, str]:
        if self._cache is not None:
            return self._cache

        path = self._keys_path()
        if not path.exists():
            self._cache = {}
            return self._cache

        try:
            keys = json.loads(self._fernet.decrypt(path.read_bytes()))
        except (InvalidToken, json.JSONDecodeError):
            logger.warning("Stored keys in %s could not be decrypted; ignoring them", path)
            keys = {}
        self._cache = keys
        return keys

    def _save_keys(self, keys: dict[str, str]) -> None:
        path = self._keys_path()
        path.write_bytes(self._fernet.encrypt(json.dumps(keys).encode()))
        try:
            path.chmod(0o600)
        except OSError:
            pass
        self._cache = keys

    def get(self, name: str) -> str | None:
        """Get a key, preferring the environment over stored values."""
        if os.environ.get(name):
            return os.environ[name]
        return self._load_keys().get(name)

    def set(self, name: str, value: str) -> None:
        keys = dict(self._load_keys())
        keys[name] = value
        self._save_keys(keys)

    def delete(self, name: str) -> bool:
        """Delete a stored key. Returns True if it existed."""
        keys = dict(self._load_keys())
        if name not in keys:
            return False
        del keys[name]
        self._save_keys(keys)
        return True

    def list_keys(self) -> list[str]:
        return sorted(self._load_keys())


_key_store: KeyStore | None = None


def get_key_store() -> KeyStore:
    """Get the global key store instance."""
    global _key_store
    if _key_store is None:
        _key_store = KeyStore()
    return _key_store
