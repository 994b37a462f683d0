"""
Pytest configuration for the Hybrid Orchestrator test suite.

Provides fake model adapters and refreshers plus factories that build
isolated orchestrator / vault instances per test.
"""

import asyncio
from datetime import timedelta
from typing import Callable, List, Optional

import pytest

from hybrid_orchestrator.adapters import ModelAdapter, AdapterType, InvokeOptions, HealthStatus, AdapterRegistry
from hybrid_orchestrator.core.config import OrchestratorConfig, VaultConfig
from hybrid_orchestrator.core.exceptions import ProviderError
from hybrid_orchestrator.core.orchestrator import WorkflowOrchestrator
from hybrid_orchestrator.models import Credential, CredentialType, ModelResult
from hybrid_orchestrator.models.job import utcnow
from hybrid_orchestrator.services import (
    CredentialVault,
    CredentialRefresher,
    InMemoryCredentialStore,
    InMemoryEventSink,
    InMemoryJobStore,
)

TEST_SECRET = "unit-test-installation-secret"
TEST_KDF_ITERATIONS = 100_000


class FakeAdapter(ModelAdapter):
    """Scriptable adapter: fixed answer or error, optional delay and chunks."""

    def __init__(
        self,
        model_id: str,
        provider_id: Optional[str] = None,
        content: Optional[str] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
        adapter_type: AdapterType = AdapterType.LOCAL,
        chunks: Optional[List[str]] = None,
        on_invoke: Optional[Callable[[str], None]] = None,
        timeline: Optional[list] = None
    ):
        self.model_id = model_id
        self.provider_id = provider_id or model_id
        self.adapter_type = adapter_type
        self.supports_streaming = bool(chunks)
        self.content = content if content is not None else f"answer from {model_id}"
        self.error = error
        self.delay = delay
        self.chunks = chunks or []
        self.on_invoke = on_invoke
        self.timeline = timeline if timeline is not None else []
        self.prompts: List[str] = []
        self.options: List[InvokeOptions] = []
        self.active = 0
        self.peak_active = 0

    @property
    def call_count(self) -> int:
        return len(self.prompts)

    async def invoke(self, prompt: str, options: InvokeOptions) -> ModelResult:
        self.prompts.append(prompt)
        self.options.append(options)
        self.timeline.append(("start", self.model_id))
        if self.on_invoke is not None:
            self.on_invoke(prompt)

        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            for chunk in self.chunks:
                if options.on_partial_chunk is not None:
                    options.on_partial_chunk(chunk)
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
            self.timeline.append(("end", self.model_id))

        if self.error is not None:
            raise self.error
        return ModelResult(
            content=self.content,
            provider_id=self.provider_id,
            model_id=self.model_id,
            tokens_used=len(self.content.split())
        )

    async def health_check(self) -> HealthStatus:
        if self.error is not None:
            return HealthStatus(ready=False, details=str(self.error))
        return HealthStatus(ready=True)


class FakeRefresher(CredentialRefresher):
    """Counts refreshes and hands back a fresh token after an optional delay."""

    def __init__(self, delay: float = 0.0, error: Optional[Exception] = None, valid_for: float = 3600.0):
        self.delay = delay
        self.error = error
        self.valid_for = valid_for
        self.calls = 0

    async def refresh(self, user_id: str, provider_id: str, credential: Credential) -> Credential:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return Credential(
            access_token=f"refreshed-{self.calls}",
            type=credential.type,
            expires_at=utcnow() + timedelta(seconds=self.valid_for),
            issued_at=utcnow(),
            scopes=list(credential.scopes)
        )


def failing(model_id: str, message: str = "upstream exploded") -> FakeAdapter:
    return FakeAdapter(model_id, error=ProviderError(message, provider_id=model_id, model_id=model_id))


def expired_credential(refresh_token: Optional[str] = "refresh-me") -> Credential:
    return Credential(
        access_token="stale",
        type=CredentialType.OAUTH,
        refresh_token=refresh_token,
        expires_at=utcnow() - timedelta(minutes=5),
        scopes=["chat"]
    )


@pytest.fixture
def fake_adapter():
    """The FakeAdapter class."""
    return FakeAdapter


@pytest.fixture
def failing_adapter():
    """Factory for adapters that always raise ProviderError."""
    return failing


@pytest.fixture
def fake_refresher():
    """The FakeRefresher class."""
    return FakeRefresher


@pytest.fixture
def expired():
    """Factory for already-expired OAuth credentials."""
    return expired_credential


@pytest.fixture
def event_sink():
    return InMemoryEventSink()


@pytest.fixture
def vault_config():
    return VaultConfig(secret=TEST_SECRET, kdf_iterations=TEST_KDF_ITERATIONS)


@pytest.fixture
def make_vault(vault_config):
    """Factory for an isolated vault over an in-memory store."""

    def factory(store=None, event_sink=None, refreshers=None, config=None):
        return CredentialVault(
            store if store is not None else InMemoryCredentialStore(),
            config or vault_config,
            event_sink=event_sink,
            refreshers=refreshers
        )

    return factory


@pytest.fixture
def make_orchestrator(event_sink):
    """Factory for an orchestrator over the given adapters; ``synthesis`` becomes the default synthesis model."""

    def factory(adapters, synthesis=None, vault=None, job_store=None, sink=None, **config):
        registry = AdapterRegistry(list(adapters))
        if synthesis is not None:
            registry.register(synthesis)
            config.setdefault("default_synthesis_model", synthesis.model_id)
        return WorkflowOrchestrator(
            registry,
            vault=vault,
            job_store=job_store if job_store is not None else InMemoryJobStore(),
            event_sink=sink if sink is not None else event_sink,
            config=OrchestratorConfig(**config)
        )

    return factory
