"""
Basic usage example for Hybrid Orchestrator

This example wires a few toy adapters into the orchestrator and runs a plain
prompt, a templated workflow and a vault-backed remote model. No network
access is needed: the adapters answer locally.
"""

import asyncio
import os
import random
from datetime import timedelta

from hybrid_orchestrator import (
    WorkflowOrchestrator,
    AdapterRegistry,
    AdapterType,
    BaseModelAdapter,
    OrchestratorConfig,
    CredentialVault,
    InMemoryCredentialStore,
    LoggingEventSink,
    VaultConfig,
    Credential,
    setup_logger,
)
from hybrid_orchestrator.models.job import utcnow


class ToyAdapter(BaseModelAdapter):
    """Pretends to be a model: answers after a short, random delay."""

    def __init__(self, model_id: str, persona: str, adapter_type: AdapterType = AdapterType.LOCAL, provider_id=None):
        super().__init__(model_id, provider_id=provider_id, adapter_type=adapter_type)
        self.persona = persona

    async def _send(self, prompt, options):
        await asyncio.sleep(random.uniform(0.05, 0.2))
        if options.credential is not None:
            prompt = f"[authenticated] {prompt}"
        return {"text": f"{self.persona} says: {prompt[:60]}", "tokens": len(prompt.split())}

    def _extract_text(self, response):
        return response["text"]

    def _extract_tokens(self, response):
        return response["tokens"]


def build_registry() -> AdapterRegistry:
    return AdapterRegistry([
        ToyAdapter("optimist", "The optimist"),
        ToyAdapter("skeptic", "The skeptic"),
        ToyAdapter("editor", "The editor"),
    ])


async def basic_example():
    """Fan one prompt out to two models and synthesize."""
    print("🚀 Starting Hybrid Orchestrator Example")

    config = OrchestratorConfig(default_synthesis_model="editor")
    async with WorkflowOrchestrator(build_registry(), event_sink=LoggingEventSink(), config=config) as orchestrator:
        handle = await orchestrator.run_prompt("user-1", "Should we rewrite the billing service?", ["optimist", "skeptic"])
        print(f"✅ Job submitted: {handle.job_id}")

        job = await handle
        print(f"📊 Job status: {job.status.value}")
        for model_id, slot in job.results.items():
            print(f"   {model_id}: {getattr(slot, 'content', None) or slot.message}")
        print(f"🧩 Synthesis: {job.synthesis_result.content}")


WORKFLOW = """
workflow_name: design-review
timeout_seconds: 30
stages:
  generate:
    parallel: false
    steps:
      - name: proposal
        models: [optimist]
        prompt_template: "Propose a design for ${{feature}}"
        output_var: proposal
      - name: critique
        models: [skeptic]
        prompt_template: "Critique this proposal: ${{proposal}}"
        output_var: critique
  synthesize:
    model: editor
    prompt_template: "Merge for ${{feature}}: ${{responses}}"
"""


async def workflow_example():
    """Run a two-step workflow whose second prompt uses the first step's output."""
    print("\n🔧 Workflow Example")

    async with WorkflowOrchestrator(build_registry()) as orchestrator:
        handle = await orchestrator.run_workflow("user-1", WORKFLOW, {"feature": "audit logging"})
        job = await handle.wait(timeout=30)

        print(f"📝 Proposal: {job.variables.get('proposal')}")
        print(f"🔍 Critique: {job.variables.get('critique')}")
        print(f"🧩 Result:   {job.variables.get('synthesis')}")


async def vault_example():
    """Store a credential and let the orchestrator hand it to a remote model."""
    print("\n🔐 Credential Vault Example")

    vault = CredentialVault(
        InMemoryCredentialStore(),
        VaultConfig(secret=os.environ.get("HYBRID_VAULT_SECRET", "example-only-secret"))
    )
    await vault.store_credential("user-1", "acme-cloud", Credential(
        access_token="acme-token",
        expires_at=utcnow() + timedelta(hours=1)
    ))

    registry = build_registry()
    registry.register(ToyAdapter("acme-large", "Acme Large", adapter_type=AdapterType.API, provider_id="acme-cloud"))

    config = OrchestratorConfig(default_synthesis_model="editor", fallback_models={"acme-large": "optimist"})
    async with WorkflowOrchestrator(registry, vault=vault, config=config) as orchestrator:
        job = await (await orchestrator.run_prompt("user-1", "Summarize our Q3 incidents", ["acme-large", "skeptic"]))
        print(f"📊 Job status: {job.status.value}")
        print(f"☁️  acme-large: {job.results['acme-large'].content}")

        health = await orchestrator.get_system_health()
        print(f"🏥 System health: {health['status']}")


async def main():
    """Run all examples."""
    setup_logger("hybrid_orchestrator", level="WARNING")
    print("🎯 Hybrid Orchestrator - Examples\n")

    try:
        await basic_example()
        await workflow_example()
        await vault_example()
        print("\n✅ All examples completed successfully!")

    except Exception as e:
        print(f"\n❌ Example failed: {str(e)}")
        import traceback
        traceback.print_exc()


if __name__ == "__main__":
    asyncio.run(main())
