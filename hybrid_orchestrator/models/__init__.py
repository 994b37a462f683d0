"""
Data models for Hybrid Orchestrator

Jobs and their per-model outcomes, credentials and their encrypted records,
and workflow definitions.
"""

# Job models
from .job import (
    Job,
    JobStatus,
    ModelResult,
    ModelError,
    ModelOutcome,
    JOB_STATUS_TRANSITIONS,
    TERMINAL_STATUSES,
    can_transition_to,
    get_valid_transitions
)

# Credential models
from .credential import (
    Credential,
    CredentialType,
    CredentialRecord,
    credential_key
)

# Workflow models
from .workflow import (
    WorkflowDefinition,
    GenerateStage,
    GenerateStep,
    SynthesizeStage,
    JobOptions
)

__all__ = [
    # Job models
    "Job",
    "JobStatus",
    "ModelResult",
    "ModelError",
    "ModelOutcome",
    "JOB_STATUS_TRANSITIONS",
    "TERMINAL_STATUSES",
    "can_transition_to",
    "get_valid_transitions",

    # Credential models
    "Credential",
    "CredentialType",
    "CredentialRecord",
    "credential_key",

    # Workflow models
    "WorkflowDefinition",
    "GenerateStage",
    "GenerateStep",
    "SynthesizeStage",
    "JobOptions"
]
