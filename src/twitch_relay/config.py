"""YAML-backed configuration loading and validation."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_ADMIN_KEY = "AnExposedKey"


class ConfigError(Exception):
    """Raised when configuration fails validation."""


class ServerConfig(BaseModel):
    bind_host: str = "0.0.0.0"
    bind_port: int = 8080
    base_url: Optional[str] = None
    log_level: str = "INFO"


class StorageConfig(BaseModel):
    keys_path: str = "keys.json"


class AdminConfig(BaseModel):
    api_key: Optional[str] = None
    api_key_env: Optional[str] = None

    def resolved_api_key(self) -> str:
        if self.api_key:
            key = self.api_key
        elif self.api_key_env and os.getenv(self.api_key_env):
            key = os.environ[self.api_key_env]
        else:
            raise ConfigError(
                "Admin key is missing. Provide 'admin.api_key' or set the "
                "referenced 'admin.api_key_env'."
            )
        if key == DEFAULT_ADMIN_KEY:
            raise ConfigError("Admin key is not changed, please change it in the config")
        return key


class TwitchConfig(BaseModel):
    username: str
    oauth_token: Optional[str] = None
    oauth_token_env: Optional[str] = None
    host: str = "irc.chat.twitch.tv"
    port: int = 6697
    tls: bool = True

    @field_validator("username")
    @classmethod
    def _lower_username(cls, value: str) -> str:
        value = value.strip().lower()
        if not value:
            raise ValueError("twitch.username cannot be empty")
        return value

    def resolved_oauth_token(self) -> str:
        if self.oauth_token:
            token = self.oauth_token
        elif self.oauth_token_env and os.getenv(self.oauth_token_env):
            token = os.environ[self.oauth_token_env]
        else:
            raise ConfigError(
                f"Twitch user '{self.username}' is missing an OAuth token. "
                "Provide 'twitch.oauth_token' or set the referenced 'twitch.oauth_token_env'."
            )
        # Accept tokens pasted with or without the IRC prefix.
        if token.startswith("oauth:"):
            token = token[len("oauth:") :]
        return token


class AppConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    admin: AdminConfig = Field(default_factory=AdminConfig)
    twitch: TwitchConfig


@dataclass(frozen=True)
class LoadedConfig:
    path: Path
    data: AppConfig


def load_config(path: Optional[str]) -> LoadedConfig:
    """Load and validate the YAML config file."""
    raw_path = path or os.getenv("RELAY_CONFIG", "config.yaml")
    candidate = Path(raw_path).expanduser()
    if not candidate.exists():
        raise ConfigError(
            f"Config file not found: {candidate}. Create it from config.example.yaml"
        )
    with candidate.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    try:
        config = AppConfig.model_validate(raw)
    except Exception as exc:  # noqa: BLE001 - surfacing details
        raise ConfigError(f"Invalid config: {exc}") from exc
    # Secrets are checked up front so a bad deployment fails at startup.
    config.admin.resolved_api_key()
    config.twitch.resolved_oauth_token()
    return LoadedConfig(path=candidate, data=config)
