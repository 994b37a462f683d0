"""
Model adapters.

The capability contract every model backend implements, a normalizing base
class, and the registry the orchestrator dispatches through.
"""

from .base import ModelAdapter, BaseModelAdapter, AdapterType, InvokeOptions, HealthStatus
from .registry import AdapterRegistry

__all__ = [
    'ModelAdapter',
    'BaseModelAdapter',
    'AdapterType',
    'InvokeOptions',
    'HealthStatus',
    'AdapterRegistry'
]
