"""
Hybrid Orchestrator

A "Generate -> Synthesize" orchestration engine: a prompt (or a workflow of
templated prompts) is fanned out to several interchangeable AI-model
backends, in parallel or in sequence, and a separate synthesis call folds
the successful outputs into one answer.

Key Features:
- Parallel or sequential fan-out with per-model fallback
- Partial-success policy with critical models
- Per-job deadlines and best-effort cancellation
- Encrypted credential vault with de-duplicated token refresh
- Circuit breakers for credentials and providers
- Global and per-provider concurrency caps
- Lifecycle events for transport layers

Usage:
    from hybrid_orchestrator import (
        WorkflowOrchestrator, AdapterRegistry, CredentialVault,
        InMemoryCredentialStore, VaultConfig, OrchestratorConfig
    )

    registry = AdapterRegistry([MyOpenAIAdapter("gpt-4o"), MyClaudeAdapter("claude-sonnet")])
    vault = CredentialVault(InMemoryCredentialStore(), VaultConfig.from_env())

    async with WorkflowOrchestrator(
        registry,
        vault=vault,
        config=OrchestratorConfig(default_synthesis_model="claude-sonnet")
    ) as orchestrator:
        handle = await orchestrator.run_prompt("user-1", "Compare REST and gRPC", ["gpt-4o", "claude-sonnet"])
        job = await handle
        print(job.status, job.synthesis_result)
"""

__version__ = "1.0.0"
__author__ = "Hybrid Orchestrator Team"
__license__ = "MIT"

# Exceptions
from .core.exceptions import (
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
    DatabaseError
)

# Data models
from .models import (
    Job,
    JobStatus,
    ModelResult,
    ModelError,
    Credential,
    CredentialType,
    CredentialRecord,
    WorkflowDefinition,
    GenerateStage,
    GenerateStep,
    SynthesizeStage,
    JobOptions
)

# Utilities
from .utils.logger import setup_logger, get_logger

# Services (imported before core.config, which depends on services.fault_tolerance)
from .services import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    EventType,
    EventSink,
    InMemoryEventSink,
    LoggingEventSink,
    JobStore,
    CredentialStore,
    InMemoryJobStore,
    InMemoryCredentialStore,
    CredentialVault,
    CredentialRefresher,
    CallableRefresher
)

# Adapters
from .adapters import ModelAdapter, BaseModelAdapter, AdapterType, InvokeOptions, HealthStatus, AdapterRegistry

# Core orchestrator
from .core.config import OrchestratorConfig, VaultConfig
from .core.orchestrator import WorkflowOrchestrator, JobHandle

# Persistence
from .utils.database import DatabaseManager

__all__ = [
    # Core
    "WorkflowOrchestrator",
    "JobHandle",
    "OrchestratorConfig",
    "VaultConfig",

    # Models
    "Job",
    "JobStatus",
    "ModelResult",
    "ModelError",
    "Credential",
    "CredentialType",
    "CredentialRecord",
    "WorkflowDefinition",
    "GenerateStage",
    "GenerateStep",
    "SynthesizeStage",
    "JobOptions",

    # Services
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "EventType",
    "EventSink",
    "InMemoryEventSink",
    "LoggingEventSink",
    "JobStore",
    "CredentialStore",
    "InMemoryJobStore",
    "InMemoryCredentialStore",
    "CredentialVault",
    "CredentialRefresher",
    "CallableRefresher",

    # Adapters
    "ModelAdapter",
    "BaseModelAdapter",
    "AdapterType",
    "InvokeOptions",
    "HealthStatus",
    "AdapterRegistry",

    # Utilities
    "DatabaseManager",
    "setup_logger",
    "get_logger",

    # Exceptions
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

    # Package metadata
    "__version__",
    "__author__",
    "__license__"
]

# Package-level configuration
import logging
logging.getLogger(__name__).addHandler(logging.NullHandler())
