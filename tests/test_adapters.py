"""
Tests for the adapter base class and registry.
"""

import asyncio

import pytest

from hybrid_orchestrator.adapters import AdapterRegistry, AdapterType, BaseModelAdapter, InvokeOptions
from hybrid_orchestrator.core.exceptions import AdapterNotFoundError


class EchoAdapter(BaseModelAdapter):
    """Echoes the prompt back in a provider-shaped response."""

    def __init__(self, model_id="echo", fail=False, **kwargs):
        super().__init__(model_id, **kwargs)
        self.fail = fail

    async def _send(self, prompt, options):
        if self.fail:
            raise ConnectionError("endpoint unreachable")
        return {"choices": [{"text": prompt.upper()}], "usage": {"total_tokens": 7}}

    def _extract_text(self, response):
        return response["choices"][0]["text"]

    def _extract_tokens(self, response):
        return response["usage"]["total_tokens"]


class TestBaseModelAdapter:

    @pytest.mark.asyncio
    async def test_invoke_normalizes_response(self):
        adapter = EchoAdapter(provider_id="echo-co")
        result = await adapter.invoke("hello", InvokeOptions())

        assert result.content == "HELLO"
        assert result.tokens_used == 7
        assert result.cost is None
        assert result.provider_id == "echo-co"
        assert result.model_id == "echo"
        assert result.raw_metadata["adapter"] == "EchoAdapter"

    @pytest.mark.asyncio
    async def test_health_check(self):
        assert (await EchoAdapter().health_check()).ready is True
        status = await EchoAdapter(fail=True).health_check()
        assert status.ready is False
        assert "unreachable" in status.details

    def test_credential_requirement_follows_adapter_type(self):
        assert EchoAdapter().requires_credential is True
        assert EchoAdapter(adapter_type=AdapterType.BROWSER).requires_credential is True
        assert EchoAdapter(adapter_type=AdapterType.LOCAL).requires_credential is False


class TestAdapterRegistry:

    def test_register_and_lookup(self):
        registry = AdapterRegistry([EchoAdapter("a")])
        registry.register(EchoAdapter("b"))
        registry.register(EchoAdapter("c"), model_id="alias")

        assert "a" in registry
        assert len(registry) == 3
        assert registry.model_ids() == ["a", "b", "alias"]
        assert registry.get("alias").model_id == "c"

    def test_unknown_model(self):
        registry = AdapterRegistry()
        with pytest.raises(AdapterNotFoundError) as exc_info:
            registry.get("ghost")
        assert exc_info.value.error_code == "NOT_FOUND"

    def test_unregister(self):
        registry = AdapterRegistry([EchoAdapter("a")])
        assert registry.unregister("a") is True
        assert registry.unregister("a") is False
        assert "a" not in registry

    @pytest.mark.asyncio
    async def test_health_check_all_isolates_failures(self):
        class Exploding(EchoAdapter):
            async def health_check(self):
                raise RuntimeError("probe crashed")

        class Hanging(EchoAdapter):
            async def health_check(self):
                await asyncio.sleep(5)

        registry = AdapterRegistry([EchoAdapter("ok"), EchoAdapter("down", fail=True), Exploding("boom"), Hanging("slow")])
        health = await registry.health_check_all(timeout_seconds=0.05)

        assert health["ok"]["ready"] is True
        assert health["ok"]["adapter_type"] == "api"
        assert health["down"]["ready"] is False
        assert health["boom"]["ready"] is False
        assert "probe crashed" in health["boom"]["details"]
        assert health["slow"]["ready"] is False
