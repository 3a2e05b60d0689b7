"""
LLM providers for structured entry analysis.

Backends register themselves with the global registry when
``compass.providers.llm`` is imported; ``create_provider`` does that
lazily.
"""

from .base import (
    CREDENTIAL_FREE,
    DEFAULT_PROVIDER,
    ProviderRegistry,
    StructuredOutputProvider,
    create_provider,
    get_registry,
    parse_json_object,
    parse_provider,
)

__all__ = [
    "CREDENTIAL_FREE",
    "DEFAULT_PROVIDER",
    "ProviderRegistry",
    "StructuredOutputProvider",
    "create_provider",
    "get_registry",
    "parse_json_object",
    "parse_provider",
]
