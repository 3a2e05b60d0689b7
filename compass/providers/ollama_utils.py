"""
Ollama server helpers: address resolution and the installed-model check.

An unreachable server or an unreadable model list is a transient failure
(``ProviderCallError``). A model that the server does not have is a setup
problem (``ProviderConfigError``); models are never pulled automatically.
"""

import logging
import os

import requests

from ..errors import ProviderCallError, ProviderConfigError

logger = logging.getLogger(__name__)

PROVIDER_NAME = "ollama"


def ollama_base_url(base_url: str | None = None) -> str:
    """Resolve the Ollama server URL: explicit, then OLLAMA_HOST, then localhost."""
    url = base_url or os.environ.get("OLLAMA_HOST") or "http://localhost:11434"
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"
    return url.rstrip("/")


def ollama_installed_models(base_url: str) -> set[str]:
    """Names ("name:tag") of the models the server has locally.

    Raises:
        ProviderCallError: If the server cannot be reached or answers with
            something other than a model list
    """
    try:
        resp = requests.get(f"{base_url}/api/tags", timeout=5)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise ProviderCallError(
            f"Cannot reach Ollama at {base_url}: {e}. "
            "Is Ollama running? Start it with: ollama serve",
            provider=PROVIDER_NAME,
        ) from e

    try:
        return {m["name"] for m in resp.json().get("models", [])}
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise ProviderCallError(
            f"Unexpected model list from Ollama at {base_url}: {e}",
            provider=PROVIDER_NAME,
        ) from e


def ollama_ensure_model(base_url: str, model: str) -> None:
    """Check that an Ollama model is installed locally.

    Raises:
        ProviderCallError: If the server is unreachable (retryable)
        ProviderConfigError: If the server is up but lacks the model
    """
    installed = ollama_installed_models(base_url)

    # A bare name means ":latest"
    bare = model.split(":")[0]
    candidates = {model, f"{model}:latest", bare, f"{bare}:latest"}
    if candidates & installed:
        return

    logger.warning("Ollama model %s not installed at %s", model, base_url)
    raise ProviderConfigError(
        f"Ollama model '{model}' is not installed. Run: ollama pull {model}"
    )
