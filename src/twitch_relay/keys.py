"""JSON file backed store of client keys."""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import string
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .config import ConfigError

LOG = logging.getLogger(__name__)

KEY_LENGTH = 10
KEY_ALPHABET = string.ascii_letters + string.digits


class UnknownKeyError(KeyError):
    """Raised when a revoke batch references a key that is not stored."""

    def __init__(self, key: str):
        super().__init__(key)
        self.key = key


def generate_key(length: int = KEY_LENGTH) -> str:
    return "".join(secrets.choice(KEY_ALPHABET) for _ in range(length))


class KeyStore:
    """Maps client keys to the Twitch channel they were issued for.

    Every mutation rewrites the whole file. Mutations are serialized by a lock so
    that concurrent admin requests never interleave their read-modify-persist
    cycles.
    """

    def __init__(self, path: Path, keys: Optional[Dict[str, str]] = None):
        self._path = path
        self._keys: Dict[str, str] = dict(keys or {})
        self._lock = asyncio.Lock()

    @classmethod
    def load(cls, path: str | Path) -> "KeyStore":
        """Read the key file, creating an empty one when it does not exist yet."""
        candidate = Path(path).expanduser()
        if not candidate.exists():
            LOG.info("No key file found at %s, creating new one", candidate)
            try:
                candidate.write_text("{}", encoding="utf-8")
            except OSError as exc:
                raise ConfigError(f"Cannot create key file {candidate}: {exc}") from exc
            return cls(candidate)
        try:
            with candidate.open("r", encoding="utf-8") as fh:
                raw = json.load(fh)
        except (OSError, ValueError) as exc:
            raise ConfigError(f"Cannot read key file {candidate}: {exc}") from exc
        if not isinstance(raw, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in raw.items()
        ):
            raise ConfigError(f"Key file {candidate} must map key strings to channel strings")
        return cls(candidate, raw)

    @property
    def path(self) -> Path:
        return self._path

    def lookup(self, key: str) -> Optional[str]:
        return self._keys.get(key)

    def items(self) -> List[Tuple[str, str]]:
        return list(self._keys.items())

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    async def issue(self, channel: str) -> str:
        async with self._lock:
            key = generate_key()
            while key in self._keys:
                key = generate_key()
            self._keys[key] = channel
            LOG.info("Issued client key for channel %s", channel)
            await self._persist()
            return key

    async def revoke(self, keys: Sequence[str]) -> None:
        async with self._lock:
            for key in keys:
                if key not in self._keys:
                    raise UnknownKeyError(key)
            for key in keys:
                channel = self._keys.pop(key, None)
                if channel is not None:
                    LOG.info("Revoked client key for channel %s", channel)
            await self._persist()

    async def _persist(self) -> None:
        snapshot = dict(self._keys)
        try:
            await asyncio.to_thread(self._write_sync, snapshot)
        except OSError:
            LOG.exception("Failed to persist client keys to %s", self._path)

    def _write_sync(self, snapshot: Dict[str, str]) -> None:
        self._path.write_text(json.dumps(snapshot, indent=3), encoding="utf-8")
