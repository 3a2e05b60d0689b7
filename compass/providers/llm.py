"""
Structured-output providers using LLMs.

Each class wraps one backend's SDK behind generate_structured_object().
Transport errors and malformed output both surface as ProviderCallError
so the analysis executor can retry them; a missing key or client library
surfaces at construction time as ProviderConfigError.
"""

import json
import logging
import os

from ..errors import ProviderCallError, ProviderConfigError
from ..types import ProviderName
from .base import get_registry, parse_json_object, validated

logger = logging.getLogger(__name__)

# Sampling temperature for backends that accept one
ANALYSIS_TEMPERATURE = 0.3

# Provider call timeout in seconds
DEFAULT_TIMEOUT = 60.0


class ClaudeProvider:
    """
    Structured output from Anthropic's Claude API.

    The schema is passed as the input schema of a single tool and the
    model is forced to call it, so the reply is already a JSON object.

    Authentication (checked in priority order):
    1. api_key parameter (resolved from store settings by the caller)
    2. ANTHROPIC_API_KEY
    """

    name = ProviderName.CLAUDE.value
    TOOL_NAME = "record_entry_analysis"

    def __init__(
        self,
        model: str = "claude-sonnet-4-20250514",
        api_key: str | None = None,
        max_tokens: int = 2048,
        temperature: float = ANALYSIS_TEMPERATURE,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        try:
            import anthropic
        except ImportError:
            raise ProviderConfigError("ClaudeProvider requires 'anthropic' library")

        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._api_error = anthropic.APIError

        key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not key:
            raise ProviderConfigError(
                "Anthropic authentication required. Set ANTHROPIC_API_KEY "
                "or store a key with: compass config --api-key claude=KEY"
            )

        # Retries are handled by the analysis executor
        self.client = anthropic.Anthropic(api_key=key, timeout=timeout, max_retries=0)

    def generate_structured_object(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: dict,
    ) -> dict:
        """Generate an analysis object using a forced tool call."""
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
                tools=[{
                    "name": self.TOOL_NAME,
                    "description": "Record the structured analysis of one journal entry.",
                    "input_schema": schema,
                }],
                tool_choice={"type": "tool", "name": self.TOOL_NAME},
            )
        except self._api_error as e:
            raise ProviderCallError(f"Claude call failed: {e}", provider=self.name) from e

        for block in response.content or []:
            if getattr(block, "type", None) == "tool_use":
                data = block.input
                if not isinstance(data, dict):
                    raise ProviderCallError(
                        "Claude tool input was not an object", provider=self.name
                    )
                return validated(data, schema, self.name)

        # No tool call; fall back to any JSON in a text block
        text = "".join(
            getattr(block, "text", "") for block in (response.content or [])
        )
        return validated(parse_json_object(text, self.name), schema, self.name)


class OpenAIProvider:
    """
    Structured output from OpenAI's chat API using a strict JSON schema.

    Temperature is never sent.

    Requires: api_key parameter, COMPASS_OPENAI_API_KEY or OPENAI_API_KEY.
    """

    name = ProviderName.OPENAI.value

    def __init__(
        self,
        model: str = "gpt-4o",
        api_key: str | None = None,
        max_tokens: int = 2048,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        try:
            import openai
        except ImportError:
            raise ProviderConfigError("OpenAIProvider requires 'openai' library")

        self.model = model
        self.max_tokens = max_tokens
        self._api_error = openai.OpenAIError

        key = (
            api_key or
            os.environ.get("COMPASS_OPENAI_API_KEY") or
            os.environ.get("OPENAI_API_KEY")
        )
        if not key:
            raise ProviderConfigError(
                "OpenAI API key required. Set COMPASS_OPENAI_API_KEY or OPENAI_API_KEY"
            )

        self._client = openai.OpenAI(api_key=key, timeout=timeout, max_retries=0)

        # GPT-5+ and o-series models take max_completion_tokens
        self._new_api = self.model.startswith(("gpt-5", "o1", "o3", "o4"))

    def _completion_kwargs(self) -> dict:
        """Return model-appropriate token limit kwargs (no temperature)."""
        if self._new_api:
            return {"max_completion_tokens": self.max_tokens}
        return {"max_tokens": self.max_tokens}

    def generate_structured_object(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: dict,
    ) -> dict:
        """Generate an analysis object using json_schema response format."""
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                response_format={
                    "type": "json_schema",
                    "json_schema": {
                        "name": "entry_analysis",
                        "schema": schema,
                        "strict": True,
                    },
                },
                **self._completion_kwargs(),
            )
        except self._api_error as e:
            raise ProviderCallError(f"OpenAI call failed: {e}", provider=self.name) from e

        if not response.choices:
            raise ProviderCallError("OpenAI returned no choices", provider=self.name)
        message = response.choices[0].message
        if getattr(message, "refusal", None):
            raise ProviderCallError(
                f"OpenAI refused the request: {message.refusal}", provider=self.name
            )
        return validated(parse_json_object(message.content, self.name), schema, self.name)


class GeminiProvider:
    """
    Structured output from Google's Gemini API.

    Gemini's response schema dialect does not cover closed objects, so the
    request asks for JSON output and carries the schema in the prompt; the
    reply is validated locally like every other backend.

    Authentication (checked in priority order):
    1. api_key parameter
    2. GEMINI_API_KEY or GOOGLE_API_KEY
    """

    name = ProviderName.GEMINI.value

    def __init__(
        self,
        model: str = "gemini-2.5-flash",
        api_key: str | None = None,
        max_tokens: int = 2048,
        temperature: float = ANALYSIS_TEMPERATURE,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        try:
            import httpx
            from google import genai
            from google.genai import errors as genai_errors
            from google.genai import types as genai_types
        except ImportError:
            raise ProviderConfigError("GeminiProvider requires 'google-genai' library")

        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._types = genai_types
        self._call_errors = (genai_errors.APIError, httpx.HTTPError)

        key = (
            api_key or
            os.environ.get("GEMINI_API_KEY") or
            os.environ.get("GOOGLE_API_KEY")
        )
        if not key:
            raise ProviderConfigError(
                "Gemini API key required. Set GEMINI_API_KEY or GOOGLE_API_KEY"
            )

        self._client = genai.Client(
            api_key=key,
            http_options=genai_types.HttpOptions(timeout=int(timeout * 1000)),
        )

    def generate_structured_object(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: dict,
    ) -> dict:
        """Generate an analysis object in JSON mode."""
        prompt = (
            f"{user_prompt}\n\n"
            f"Respond with JSON matching this schema:\n{json.dumps(schema)}"
        )
        try:
            response = self._client.models.generate_content(
                model=self.model,
                contents=prompt,
                config=self._types.GenerateContentConfig(
                    system_instruction=system_prompt,
                    temperature=self.temperature,
                    max_output_tokens=self.max_tokens,
                    response_mime_type="application/json",
                ),
            )
        except self._call_errors as e:
            raise ProviderCallError(f"Gemini call failed: {e}", provider=self.name) from e

        return validated(parse_json_object(response.text, self.name), schema, self.name)


class OllamaProvider:
    """
    Structured output from a local Ollama server.

    The schema is sent as the chat request's ``format``. No credential is
    needed. Respects OLLAMA_HOST env var (default: http://localhost:11434).

    Construction does no network I/O. The installed-model check runs on
    the first call, so an unreachable server is retried like any other
    failed call.
    """

    name = ProviderName.OLLAMA.value

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str | None = None,
        api_key: str | None = None,
        temperature: float = ANALYSIS_TEMPERATURE,
        timeout: float = 300.0,
    ):
        from .ollama_utils import ollama_base_url

        self.model = model
        self.temperature = temperature
        self.timeout = timeout
        self.base_url = ollama_base_url(base_url)
        self._model_checked = False

    def _ensure_model(self) -> None:
        from .ollama_utils import ollama_ensure_model

        if not self._model_checked:
            ollama_ensure_model(self.base_url, self.model)
            self._model_checked = True

    def generate_structured_object(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: dict,
    ) -> dict:
        """Generate an analysis object using Ollama's schema-constrained output."""
        import requests

        self._ensure_model()
        try:
            response = requests.post(
                f"{self.base_url}/api/chat",
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    "format": schema,
                    "options": {"temperature": self.temperature},
                    "stream": False,
                },
                timeout=(10, self.timeout),  # (connect, read)
            )
        except requests.RequestException as e:
            raise ProviderCallError(f"Ollama call failed: {e}", provider=self.name) from e

        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise ProviderCallError(
                f"Ollama analysis failed (model={self.model}): "
                f"HTTP {response.status_code} from {self.base_url}. {detail}",
                provider=self.name,
            )
        try:
            content = response.json()["message"]["content"]
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderCallError(
                f"Unexpected Ollama response: {e}", provider=self.name
            ) from e
        return validated(parse_json_object(content, self.name), schema, self.name)


# Register providers
_registry = get_registry()
_registry.register(ProviderName.CLAUDE, ClaudeProvider)
_registry.register(ProviderName.OPENAI, OpenAIProvider)
_registry.register(ProviderName.GEMINI, GeminiProvider)
_registry.register(ProviderName.OLLAMA, OllamaProvider)
