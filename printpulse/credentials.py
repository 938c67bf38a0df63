"""
Credential resolution for the Gemini adapter.

The adapter never reads the environment itself; it is handed a resolver at
construction. The default chain checks the environment first, then a key
file holding a key entered through the settings endpoint.
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional, Protocol, Sequence

from . import config
from .errors import AuthMissingError

logger = logging.getLogger(__name__)

KEY_FIELD = "gemini_api_key"


class CredentialResolver(Protocol):
    def resolve(self) -> Optional[str]:
        ...


class StaticCredentials:
    """A fixed key, mostly for tests and scripts."""

    def __init__(self, api_key: Optional[str]):
        self._api_key = api_key

    def resolve(self) -> Optional[str]:
        return self._api_key or None


class EnvCredentials:
    def __init__(self, names: Sequence[str] = config.CREDENTIAL_ENV_VARS):
        self.names = tuple(names)

    def resolve(self) -> Optional[str]:
        for name in self.names:
            value = os.environ.get(name, "").strip()
            if value:
                return value
        return None


class KeyFileCredentials:
    """
    A manually entered key persisted as JSON on disk.

    Supports the save / clear / has-key flow of the settings endpoint.
    """

    def __init__(self, path: Path = config.CREDENTIALS_FILE):
        self.path = Path(path)

    def resolve(self) -> Optional[str]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable credentials file {self.path}: {e}")
            return None
        value = str(data.get(KEY_FIELD, "")).strip() if isinstance(data, dict) else ""
        return value or None

    def save(self, api_key: str) -> None:
        api_key = api_key.strip()
        if not api_key:
            raise ValueError("API key must not be empty")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps({KEY_FIELD: api_key}), encoding="utf-8")
        logger.info(f"Saved API key to {self.path}")

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
            logger.info(f"Cleared API key at {self.path}")


class ChainedCredentials:
    """Try each resolver in order and return the first key found."""

    def __init__(self, *resolvers: CredentialResolver):
        self.resolvers = resolvers

    def resolve(self) -> Optional[str]:
        for resolver in self.resolvers:
            key = resolver.resolve()
            if key:
                return key
        return None


def default_resolver(key_file: Optional[KeyFileCredentials] = None) -> ChainedCredentials:
    return ChainedCredentials(EnvCredentials(), key_file or KeyFileCredentials())


def require_credential(resolver: CredentialResolver) -> str:
    """Resolve a key or raise AuthMissingError before any network call."""
    key = resolver.resolve()
    if not key:
        raise AuthMissingError(
            "API key not found. Configure GEMINI_API_KEY or save a key in settings."
        )
    return key
