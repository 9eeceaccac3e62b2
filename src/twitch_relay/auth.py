"""Admin secret and client key checks."""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import status

from .keys import KeyStore

LOG = logging.getLogger(__name__)


class ApiError(Exception):
    """Request failure rendered as ``{error_code, description}``."""

    def __init__(self, status_code: int, description: str):
        super().__init__(description)
        self.status_code = status_code
        self.description = description


@dataclass(frozen=True)
class ClientIdentity:
    key: str
    channel: str


def canonical_channel(name: str) -> str:
    return name.strip().lstrip("#").lower()


class AuthService:
    """Resolves client keys through the key store and guards admin calls."""

    def __init__(self, admin_key: str, key_store: KeyStore):
        self._admin_key = admin_key
        self._key_store = key_store

    def require_admin(self, supplied: Optional[str]) -> None:
        if supplied is None:
            LOG.info("No admin key was supplied")
            raise ApiError(status.HTTP_400_BAD_REQUEST, "No admin key was supplied.")
        if len(supplied) < 2 or not hmac.compare_digest(
            supplied.encode("utf-8"), self._admin_key.encode("utf-8")
        ):
            LOG.info("A wrong admin key was supplied")
            raise ApiError(status.HTTP_401_UNAUTHORIZED, "Wrong admin key was supplied.")

    def authenticate(self, client_key: Optional[str]) -> Optional[ClientIdentity]:
        if not client_key or len(client_key) < 2:
            return None
        channel = self._key_store.lookup(client_key)
        if channel is None:
            return None
        return ClientIdentity(key=client_key, channel=canonical_channel(channel))

    def require_client(self, client_key: Optional[str]) -> ClientIdentity:
        if not client_key or len(client_key) < 2:
            raise ApiError(status.HTTP_400_BAD_REQUEST, "No client key was supplied")
        identity = self.authenticate(client_key)
        if identity is None:
            raise ApiError(status.HTTP_401_UNAUTHORIZED, "This client key is wrong")
        return identity
