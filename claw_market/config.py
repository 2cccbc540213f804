"""Configuration management for Claw Market."""

import os
import tempfile
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from claw_market.exceptions import ConfigurationError


# Paths
CONFIG_DIR = Path("~/.claw-market").expanduser()
DEFAULT_CONFIG_PATH = CONFIG_DIR / "config.yaml"
LOCAL_CONFIG_FILENAME = "config.yaml"

AuthMethod = Literal["delegated-credential", "static-token", "none"]


class MarketplaceConfig(BaseModel):
    """Catalog, registry and install locations."""

    catalog_url: str = ""
    registry_url: str = ""
    auth_method: AuthMethod = "none"
    auth_token: str = ""
    managed_skills_dir: str = str(CONFIG_DIR / "skills")
    extensions_dir: str = str(CONFIG_DIR / "extensions")
    catalog_timeout: int = 15
    download_timeout: int = 60
    extract_timeout: int = 30
    install_timeout: int = 120
    max_archive_bytes: int = 50 * 1024 * 1024

    def static_token(self) -> str | None:
        """Configured token, only honoured for the static-token auth method."""
        if self.auth_method == "static-token" and self.auth_token.strip():
            return self.auth_token.strip()
        return None

    def resolved_managed_skills_dir(self) -> Path:
        return Path(self.managed_skills_dir).expanduser().resolve()

    def resolved_extensions_dir(self) -> Path:
        return Path(self.extensions_dir).expanduser().resolve()


class NetworkConfig(BaseModel):
    """Outbound fetch policy."""

    allow_private_network: bool = False
    allowed_hostnames: list[str] = Field(default_factory=list)
    max_redirects: int = 3


class GatewayConfig(BaseModel):
    """HTTP gateway configuration."""

    host: str = "127.0.0.1"
    port: int = 18790
    token: str = ""
    allow_unauthenticated: bool = False


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Claw Market."""

    marketplace: MarketplaceConfig = Field(default_factory=MarketplaceConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="CLAW_MARKET_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "Config":
        """Build settings from an already loaded configuration document."""
        known = {key: document[key] for key in cls.model_fields if key in document}
        return cls(**known)

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        return cls.from_document(load_document(path))

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML; env vars fill sections the file omits."""
        return cls.from_yaml(path)


def resolve_config_path(path: Path | str | None = None) -> Path:
    if path:
        return Path(path).expanduser()
    return Config.resolve_default_config_path()


def load_document(path: Path | str | None = None) -> dict[str, Any]:
    """Read the raw configuration document.

    The document is returned as a plain mapping so that sections this package
    does not model survive a read-modify-write cycle untouched.
    """
    config_path = resolve_config_path(path)
    if not config_path.exists():
        return {}
    with open(config_path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file is not a mapping: {config_path}")
    return data


def write_document(document: dict[str, Any], path: Path | str | None = None) -> Path:
    """Persist the configuration document atomically."""
    config_path = resolve_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{config_path.name}.", suffix=".tmp", dir=str(config_path.parent)
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            yaml.safe_dump(document, f, default_flow_style=False, sort_keys=False)
        os.replace(tmp_name, config_path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return config_path


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
