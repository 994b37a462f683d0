"""
Base model adapter interface.

Defines the capability every model backend plugs in with: ``invoke`` a
prompt and report ``health_check``. Provider-specific HTTP, browser-bridge
and local-runtime adapters live outside this package and subclass these.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..models.credential import Credential
from ..models.job import ModelResult


class AdapterType(Enum):
    """How the model is reached."""
    API = "api"
    BROWSER = "browser"
    LOCAL = "local"


@dataclass
class InvokeOptions:
    """Options passed to a single ``invoke`` call."""
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    timeout_seconds: Optional[float] = None
    on_partial_chunk: Optional[Callable[[str], None]] = None
    custom_parameters: Dict[str, Any] = field(default_factory=dict)
    credential: Optional[Credential] = None


@dataclass
class HealthStatus:
    """Result of an adapter health check."""
    ready: bool
    details: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"ready": self.ready, "details": self.details}


class ModelAdapter(ABC):
    """
    Abstract base class for all model adapters.

    Implementations raise ProviderError (or any exception) on failure; the
    orchestrator converts failures into ModelError slots.
    """

    model_id: str = ""
    provider_id: str = ""
    adapter_type: AdapterType = AdapterType.API
    supports_streaming: bool = False

    @abstractmethod
    async def invoke(self, prompt: str, options: InvokeOptions) -> ModelResult:
        """
        Send a prompt to this model.

        Args:
            prompt: Fully rendered prompt text
            options: Generation options, timeout budget and the caller's credential

        Returns:
            ModelResult with the model's output
        """
        pass

    @abstractmethod
    async def health_check(self) -> HealthStatus:
        """Check if the model endpoint is reachable."""
        pass

    @property
    def requires_credential(self) -> bool:
        """Local models run without a vault lookup."""
        return self.adapter_type != AdapterType.LOCAL

    @property
    def adapter_name(self) -> str:
        return self.__class__.__name__


class BaseModelAdapter(ModelAdapter):
    """
    Adapter base that normalizes raw provider responses.

    Subclasses implement ``_send`` plus the three extractors; ``invoke``
    turns the raw response into a ModelResult.
    """

    def __init__(self, model_id: str, provider_id: Optional[str] = None, adapter_type: AdapterType = AdapterType.API):
        self.model_id = model_id
        self.provider_id = provider_id or model_id
        self.adapter_type = adapter_type

    @abstractmethod
    async def _send(self, prompt: str, options: InvokeOptions) -> Any:
        """Perform the provider call and return its raw response."""
        pass

    @abstractmethod
    def _extract_text(self, response: Any) -> str:
        pass

    def _extract_tokens(self, response: Any) -> Optional[int]:
        return None

    def _calculate_cost(self, response: Any) -> Optional[float]:
        return None

    async def invoke(self, prompt: str, options: InvokeOptions) -> ModelResult:
        response = await self._send(prompt, options)
        return self.normalize_response(response)

    def normalize_response(self, response: Any) -> ModelResult:
        return ModelResult(
            content=self._extract_text(response),
            provider_id=self.provider_id,
            model_id=self.model_id,
            tokens_used=self._extract_tokens(response),
            cost=self._calculate_cost(response),
            raw_metadata={"timestamp": time.time(), "adapter": self.adapter_name},
        )

    async def health_check(self) -> HealthStatus:
        """Send a tiny prompt; any failure means not ready."""
        try:
            await self._send("Health check", InvokeOptions(max_tokens=10))
            return HealthStatus(ready=True)
        except Exception as e:
            return HealthStatus(ready=False, details=str(e))
