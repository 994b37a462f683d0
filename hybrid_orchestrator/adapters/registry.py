"""
Adapter registry.

Maps model id strings to adapter instances so new providers register without
any change to the orchestrator.
"""

import asyncio
from typing import Dict, List, Optional, Any

from .base import ModelAdapter, HealthStatus
from ..core.exceptions import AdapterNotFoundError
from ..utils.logger import get_logger


class AdapterRegistry:
    """Owned registry of model adapters keyed by model id."""

    def __init__(self, adapters: Optional[List[ModelAdapter]] = None):
        self._adapters: Dict[str, ModelAdapter] = {}
        self.logger = get_logger(__name__)
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ModelAdapter, model_id: Optional[str] = None):
        """Register ``adapter`` under ``model_id`` (defaults to adapter.model_id)."""
        model_id = model_id or adapter.model_id
        if not model_id:
            raise ValueError("Adapter has no model_id")
        if model_id in self._adapters:
            self.logger.warning(f"Replacing adapter registered for model {model_id}")
        self._adapters[model_id] = adapter
        self.logger.info(f"Registered adapter {adapter.adapter_name} for model {model_id}", extra={
            "provider_id": adapter.provider_id,
            "adapter_type": adapter.adapter_type.value
        })

    def unregister(self, model_id: str) -> bool:
        return self._adapters.pop(model_id, None) is not None

    def get(self, model_id: str) -> ModelAdapter:
        adapter = self._adapters.get(model_id)
        if adapter is None:
            raise AdapterNotFoundError(model_id)
        return adapter

    def __contains__(self, model_id: str) -> bool:
        return model_id in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)

    def model_ids(self) -> List[str]:
        return list(self._adapters)

    async def _check_one(self, model_id: str, adapter: ModelAdapter) -> Dict[str, Any]:
        try:
            status = await adapter.health_check()
        except Exception as e:
            status = HealthStatus(ready=False, details=str(e))
        info = status.to_dict()
        info["provider_id"] = adapter.provider_id
        info["adapter_type"] = adapter.adapter_type.value
        return info

    async def health_check_all(self, timeout_seconds: float = 10.0) -> Dict[str, Dict[str, Any]]:
        """Run every adapter's health check concurrently."""
        model_ids = list(self._adapters)
        checks = [
            asyncio.wait_for(self._check_one(model_id, self._adapters[model_id]), timeout=timeout_seconds)
            for model_id in model_ids
        ]
        results = await asyncio.gather(*checks, return_exceptions=True)

        health: Dict[str, Dict[str, Any]] = {}
        for model_id, result in zip(model_ids, results):
            if isinstance(result, BaseException):
                health[model_id] = {
                    "ready": False,
                    "details": f"health check failed: {result!r}",
                    "provider_id": self._adapters[model_id].provider_id,
                    "adapter_type": self._adapters[model_id].adapter_type.value
                }
            else:
                health[model_id] = result
        return health
