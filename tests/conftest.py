"""
Shared pytest fixtures for compass tests.

Provides a scripted structured-output provider so no test talks to a
real LLM backend.
"""

import threading
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from compass.api import Journal
from compass.config import ProviderConfig, QueueConfig, StoreConfig
from compass.errors import ProviderCallError
from compass.schema import schema_goal_ids


# Environment that changes provider and credential resolution
_COMPASS_ENV = (
    "COMPASS_AI_PROVIDER",
    "DEFAULT_AI_PROVIDER",
    "ANTHROPIC_API_KEY",
    "COMPASS_OPENAI_API_KEY",
    "OPENAI_API_KEY",
    "GEMINI_API_KEY",
    "GOOGLE_API_KEY",
    "OLLAMA_HOST",
    "COMPASS_VERBOSE",
)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep tests away from the user's keys and ~/.compass."""
    for var in _COMPASS_ENV:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("COMPASS_STORE_PATH", str(tmp_path / "default-store"))


def analysis_response(
    schema: dict,
    level: str = "partial",
    momentum: str = "medium",
    **overrides: Any,
) -> dict:
    """A valid analysis object for every goal id the schema accepts."""
    data = {
        "detected_activity": {goal_id: level for goal_id in schema_goal_ids(schema)},
        "momentum_signal": momentum,
        "risk_flags": [],
        "suggested_adjustments": None,
        "reframe_type": None,
        "reframe_reason": None,
        "reframe_suggestion": None,
    }
    data.update(overrides)
    return data


class FakeProvider:
    """
    Scripted structured-output provider.

    Each call consumes the next scripted response. A response may be a
    dict (returned as is), an exception (raised) or a callable taking the
    schema. With no script left, a valid "partial" answer is returned.
    """

    name = "fake"

    def __init__(
        self,
        responses: Optional[list] = None,
        fail_times: int = 0,
        fail_if: Optional[Callable[[str], bool]] = None,
    ):
        self.calls: list[dict] = []
        self.fail_times = fail_times
        self.fail_if = fail_if
        self._responses = list(responses or [])
        self._lock = threading.Lock()

    def generate_structured_object(self, system_prompt: str, user_prompt: str, schema: dict) -> dict:
        with self._lock:
            self.calls.append({
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "schema": schema,
            })
            if self.fail_if is not None and self.fail_if(user_prompt):
                raise ProviderCallError("scripted failure", provider=self.name)
            if self.fail_times > 0:
                self.fail_times -= 1
                raise ProviderCallError("transient failure", provider=self.name)
            response = self._responses.pop(0) if self._responses else None

        if response is None:
            return analysis_response(schema)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(schema)
        return response

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def goal_ids_requested(self, call: int = -1) -> list[str]:
        """Goal ids the schema of one call asked for."""
        return schema_goal_ids(self.calls[call]["schema"])


class FakeProviderFactory:
    """Provider factory that records what it was asked to build."""

    def __init__(self, provider: Optional[FakeProvider] = None):
        self.provider = provider or FakeProvider()
        self.created: list[dict] = []

    def __call__(self, name, *, api_key=None, params=None):
        self.created.append({"name": name, "api_key": api_key, "params": params})
        return self.provider


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def provider_factory(fake_provider):
    return FakeProviderFactory(fake_provider)


def make_config(store_path: Path, **provider_keys: str) -> StoreConfig:
    """Store config with no retry delays and stored keys per provider."""
    keys = provider_keys or {"claude": "test-key"}
    return StoreConfig(
        path=store_path,
        queue=QueueConfig(job_pause=0.0),
        providers={
            name: ProviderConfig(name, api_key=key) for name, key in keys.items()
        },
    )


@pytest.fixture
def make_journal(tmp_path, provider_factory):
    """
    Build journals on a temporary store, closed at teardown.

    Defaults: scripted provider, no sleeping between inner retries, zero
    queue backoff, and the worker NOT started automatically.

    Usage:
        def test_something(make_journal):
            journal = make_journal(autostart_worker=True)
    """
    journals = []

    def _make(config: Optional[StoreConfig] = None, **kwargs) -> Journal:
        kwargs.setdefault("provider_factory", provider_factory)
        kwargs.setdefault("sleep", lambda seconds: None)
        kwargs.setdefault("backoff_unit", 0.0)
        kwargs.setdefault("autostart_worker", False)
        journal = Journal(config=config or make_config(tmp_path / "store"), **kwargs)
        journals.append(journal)
        return journal

    yield _make
    for journal in journals:
        journal.close()


@pytest.fixture
def journal(make_journal):
    """A journal whose queue must be drained explicitly."""
    return make_journal()

