"""
Base provider protocol and registry.

A provider turns (system prompt, user prompt, JSON schema) into a parsed
object that matches the schema. One class per LLM backend; the analysis
executor only sees the protocol and picks a backend by name through the
registry.
"""

import json
from typing import Any, Optional, Protocol, runtime_checkable

from ..errors import (
    ConfigurationError,
    ProviderCallError,
    ProviderConfigError,
    SchemaValidationError,
)
from ..schema import validate_object
from ..types import ProviderName


DEFAULT_PROVIDER = ProviderName.CLAUDE

# Backends that run locally and need no API key
CREDENTIAL_FREE = frozenset({ProviderName.OLLAMA})


def parse_provider(name: "str | ProviderName") -> ProviderName:
    """
    Resolve a provider name.

    Accepts enum members and case-insensitive strings; "anthropic" is
    accepted as an alias for claude and "google" for gemini.

    Raises:
        ConfigurationError: For an unknown name
    """
    if isinstance(name, ProviderName):
        return name
    key = str(name).strip().lower()
    key = {"anthropic": "claude", "google": "gemini"}.get(key, key)
    try:
        return ProviderName(key)
    except ValueError:
        available = ", ".join(p.value for p in ProviderName)
        raise ConfigurationError(
            f"Unknown provider: '{name}'. Available providers: {available}"
        ) from None


@runtime_checkable
class StructuredOutputProvider(Protocol):
    """
    Generates a schema-conforming object from a prompt pair.

    Example implementation:
        class EchoProvider:
            name = "echo"

            def generate_structured_object(self, system_prompt, user_prompt, schema):
                return {"detected_activity": {}, ...}
    """

    name: str

    def generate_structured_object(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: dict,
    ) -> dict[str, Any]:
        """
        Call the backend and return the parsed, validated object.

        Raises:
            ProviderCallError: On transport failure or invalid output
        """
        ...


def parse_json_object(text: Optional[str], provider: Optional[str] = None) -> dict:
    """
    Parse a model's text reply as a JSON object.

    Strips markdown code fences if present.

    Raises:
        ProviderCallError: If the text is empty, not JSON, or not an object
    """
    if not text or not text.strip():
        raise ProviderCallError("Empty response from model", provider=provider)
    text = text.strip()
    # Strip markdown code fences if present
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else text[3:]
        if text.endswith("```"):
            text = text[:-3].strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProviderCallError(f"Model returned invalid JSON: {e}", provider=provider) from e
    if not isinstance(data, dict):
        raise ProviderCallError(
            f"Model returned {type(data).__name__}, expected a JSON object",
            provider=provider,
        )
    return data


def validated(data: dict, schema: dict, provider: str) -> dict:
    """Validate a parsed object, tagging any failure with the provider name."""
    try:
        validate_object(data, schema)
    except SchemaValidationError as e:
        e.provider = provider
        raise
    return data


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating providers.

    Providers are registered by name and instantiated from configuration,
    so the store's TOML can pick a backend without code changes.

    Example:
        registry = ProviderRegistry()
        registry.register(ProviderName.CLAUDE, ClaudeProvider)
        provider = registry.create("claude", {"model": "claude-haiku-4-5-20251001"})
    """

    def __init__(self):
        self._providers: dict[ProviderName, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily import the backend module so it registers itself."""
        if self._lazy_loaded:
            return
        self._lazy_loaded = True
        from . import llm  # noqa: F401

    def register(self, name: "str | ProviderName", provider_class: type) -> None:
        """Register a provider class."""
        self._providers[parse_provider(name)] = provider_class

    def create(self, name: "str | ProviderName", params: Optional[dict] = None):
        """
        Create a provider instance.

        Raises:
            ConfigurationError: For an unknown or unregistered name
            ProviderConfigError: If the provider could not be constructed
        """
        self._ensure_providers_loaded()
        key = parse_provider(name)
        if key not in self._providers:
            available = ", ".join(p.value for p in self._providers) or "none"
            raise ConfigurationError(
                f"Provider '{key.value}' is not registered. "
                f"Available providers: {available}"
            )
        try:
            return self._providers[key](**(params or {}))
        except ConfigurationError:
            raise
        except ImportError as e:
            raise ProviderConfigError(
                f"Failed to create provider '{key.value}': {e}\n"
                f"Install required dependencies."
            ) from e
        except Exception as e:
            raise ProviderConfigError(
                f"Failed to create provider '{key.value}': {e}"
            ) from e

    def list_providers(self) -> list[str]:
        """List registered provider names."""
        self._ensure_providers_loaded()
        return [p.value for p in self._providers]


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry


def create_provider(
    name: "str | ProviderName",
    *,
    api_key: Optional[str] = None,
    params: Optional[dict] = None,
):
    """
    Build a provider for ``name`` with an already-resolved credential.

    This is the default provider factory used by the analysis executor.
    """
    kwargs = dict(params or {})
    if api_key is not None:
        kwargs["api_key"] = api_key
    return get_registry().create(name, kwargs)
