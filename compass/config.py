"""
Configuration management for compass stores.

The configuration is stored as a TOML file in the store directory.
It names the default analysis provider, per-provider parameters and
credentials, and the retry settings of the analysis pipeline.
"""

import logging
import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w

from .errors import ConfigurationError
from .providers.base import CREDENTIAL_FREE, DEFAULT_PROVIDER, parse_provider
from .types import ProviderName

logger = logging.getLogger(__name__)


CONFIG_FILENAME = "compass.toml"
CONFIG_VERSION = 1

# Environment variables naming the default provider, checked in order
PROVIDER_ENV_VARS = ("COMPASS_AI_PROVIDER", "DEFAULT_AI_PROVIDER")

# Environment fallbacks for credentials, checked in order
CREDENTIAL_ENV_VARS: dict[ProviderName, tuple[str, ...]] = {
    ProviderName.CLAUDE: ("ANTHROPIC_API_KEY",),
    ProviderName.OPENAI: ("COMPASS_OPENAI_API_KEY", "OPENAI_API_KEY"),
    ProviderName.GEMINI: ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    ProviderName.OLLAMA: (),
}


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)
    api_key: Optional[str] = None


@dataclass
class AnalysisConfig:
    """Inner (per provider call) retry settings."""
    provider: Optional[str] = None
    max_attempts: int = 3
    backoff_base: float = 2.0


@dataclass
class QueueConfig:
    """Outer (per job) retry settings."""
    max_attempts: int = 3
    backoff_base: float = 2.0
    job_pause: float = 0.1


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    providers: dict[str, ProviderConfig] = field(default_factory=dict)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()

    # -------------------------------------------------------------------------
    # Settings resolution used by the analysis pipeline
    # -------------------------------------------------------------------------

    def resolve_default_provider(self) -> ProviderName:
        """
        The provider to use when a caller does not name one.

        Order: configured [analysis] provider, then COMPASS_AI_PROVIDER /
        DEFAULT_AI_PROVIDER, then claude. Invalid values are logged and
        skipped.
        """
        candidates = [("config", self.analysis.provider)]
        candidates += [(var, os.environ.get(var)) for var in PROVIDER_ENV_VARS]
        for source, value in candidates:
            if not value:
                continue
            try:
                return parse_provider(value)
            except ConfigurationError:
                logger.warning("Ignoring invalid provider %r from %s", value, source)
        return DEFAULT_PROVIDER

    def resolve_credential(self, provider: "str | ProviderName") -> Optional[str]:
        """
        The API key for a provider, or None if none is configured.

        Order: key stored in [providers.<name>], then environment.
        Local providers (ollama) never need one and return None.
        """
        name = parse_provider(provider)
        if name in CREDENTIAL_FREE:
            return None
        stored = self.providers.get(name.value)
        if stored is not None and stored.api_key:
            return stored.api_key
        for var in CREDENTIAL_ENV_VARS.get(name, ()):
            value = os.environ.get(var)
            if value:
                return value
        return None

    def provider_params(self, provider: "str | ProviderName") -> dict[str, Any]:
        """Constructor parameters for a provider (model, timeout, ...)."""
        stored = self.providers.get(parse_provider(provider).value)
        return dict(stored.params) if stored is not None else {}

    def set_default_provider(self, provider: Optional[str]) -> None:
        """Set (or clear with None) the default provider and save."""
        self.analysis.provider = parse_provider(provider).value if provider else None
        save_config(self)

    def set_api_key(self, provider: str, api_key: Optional[str]) -> None:
        """Store (or clear with None) a provider's API key and save."""
        name = parse_provider(provider)
        if name in CREDENTIAL_FREE:
            raise ConfigurationError(f"Provider '{name.value}' does not use an API key")
        entry = self.providers.setdefault(name.value, ProviderConfig(name.value))
        entry.api_key = api_key or None
        save_config(self)


def get_default_store_path() -> Path:
    """Store directory: COMPASS_STORE_PATH, else ~/.compass."""
    env_path = os.environ.get("COMPASS_STORE_PATH")
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path.home() / ".compass"


def create_default_config(store_path: Path) -> StoreConfig:
    """Create a new config with default settings."""
    return StoreConfig(path=store_path)


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    # Validate version
    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    analysis = data.get("analysis", {})
    queue = data.get("queue", {})

    def parse_provider_section(name: str, section: dict) -> ProviderConfig:
        return ProviderConfig(
            name=name,
            params={k: v for k, v in section.items() if k != "api_key"},
            api_key=section.get("api_key"),
        )

    return StoreConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        analysis=AnalysisConfig(
            provider=analysis.get("provider"),
            max_attempts=int(analysis.get("max_attempts", 3)),
            backoff_base=float(analysis.get("backoff_base", 2.0)),
        ),
        queue=QueueConfig(
            max_attempts=int(queue.get("max_attempts", 3)),
            backoff_base=float(queue.get("backoff_base", 2.0)),
            job_pause=float(queue.get("job_pause", 0.1)),
        ),
        providers={
            name: parse_provider_section(name, section)
            for name, section in data.get("providers", {}).items()
        },
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist. The file may hold API
    keys, so it is written with owner-only permissions.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    def provider_to_dict(p: ProviderConfig) -> dict:
        d = dict(p.params)
        if p.api_key:
            d["api_key"] = p.api_key
        return d

    analysis: dict[str, Any] = {
        "max_attempts": config.analysis.max_attempts,
        "backoff_base": config.analysis.backoff_base,
    }
    # TOML has no null; an unset provider is simply absent
    if config.analysis.provider:
        analysis["provider"] = config.analysis.provider

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "analysis": analysis,
        "queue": {
            "max_attempts": config.queue.max_attempts,
            "backoff_base": config.queue.backoff_base,
            "job_pause": config.queue.job_pause,
        },
        "providers": {
            name: provider_to_dict(p) for name, p in config.providers.items()
        },
    }

    fd = os.open(config.config_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    else:
        config = create_default_config(store_path)
        save_config(config)
        return config
