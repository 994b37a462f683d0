"""
Core package for Hybrid Orchestrator

Contains the orchestrator, its configuration and the exception hierarchy.
The orchestrator and config modules are imported from their own modules
(``core.orchestrator``, ``core.config``) or from the package root.
"""

from .exceptions import (
    HybridOrchestratorError,
    InvalidRequestError,
    NotFoundError,
    JobNotFoundError,
    CredentialNotFoundError,
    AdapterNotFoundError,
    CircuitOpenError,
    DecryptionFailedError,
    ReauthRequiredError,
    ProviderError,
    TimeoutExceededError,
    SynthesisError,
    JobCancelledError,
    CriticalModelError,
    GenerationFailedError,
    InvalidStateTransitionError,
    ConfigurationError,
    DatabaseError,
    ErrorRegistry
)

__all__ = [
    "HybridOrchestratorError",
    "InvalidRequestError",
    "NotFoundError",
    "JobNotFoundError",
    "CredentialNotFoundError",
    "AdapterNotFoundError",
    "CircuitOpenError",
    "DecryptionFailedError",
    "ReauthRequiredError",
    "ProviderError",
    "TimeoutExceededError",
    "SynthesisError",
    "JobCancelledError",
    "CriticalModelError",
    "GenerationFailedError",
    "InvalidStateTransitionError",
    "ConfigurationError",
    "DatabaseError",
    "ErrorRegistry"
]
