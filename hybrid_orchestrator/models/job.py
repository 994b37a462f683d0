"""
Job-related data models for Hybrid Orchestrator

Defines the Job entity, its forward-only status machine, and the tagged
union of per-model outcomes (ModelResult or ModelError) stored in each
result slot.
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Union
from dataclasses import dataclass, field

from ..core.exceptions import InvalidRequestError, InvalidStateTransitionError


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(value))



class JobStatus(Enum):
    """Job lifecycle status enumeration."""
    PENDING = "pending"
    GENERATING = "generating"
    SYNTHESIZING = "synthesizing"
    COMPLETED = "completed"
    FAILED = "failed"


# Job status transition rules
JOB_STATUS_TRANSITIONS = {
    JobStatus.PENDING: [JobStatus.GENERATING, JobStatus.FAILED],
    JobStatus.GENERATING: [JobStatus.SYNTHESIZING, JobStatus.FAILED],
    JobStatus.SYNTHESIZING: [JobStatus.COMPLETED, JobStatus.FAILED],
    JobStatus.COMPLETED: [],  # Terminal state
    JobStatus.FAILED: [],  # Terminal state
}

TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


def can_transition_to(current_status: JobStatus, target_status: JobStatus) -> bool:
    """Check if a job can transition from current status to target status."""
    return target_status in JOB_STATUS_TRANSITIONS.get(current_status, [])


def get_valid_transitions(current_status: JobStatus) -> List[JobStatus]:
    """Get list of valid status transitions from current status."""
    return JOB_STATUS_TRANSITIONS.get(current_status, [])


@dataclass
class ModelResult:
    """Successful output of one model call."""

    content: str
    provider_id: str
    model_id: str
    tokens_used: Optional[int] = None
    cost: Optional[float] = None
    raw_metadata: Optional[Dict[str, Any]] = None

    @property
    def is_error(self) -> bool:
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "result",
            "content": self.content,
            "provider_id": self.provider_id,
            "model_id": self.model_id,
            "tokens_used": self.tokens_used,
            "cost": self.cost,
            "raw_metadata": self.raw_metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelResult":
        return cls(
            content=data["content"],
            provider_id=data["provider_id"],
            model_id=data["model_id"],
            tokens_used=data.get("tokens_used"),
            cost=data.get("cost"),
            raw_metadata=data.get("raw_metadata"),
        )


@dataclass
class ModelError:
    """Terminal failure of one model slot (after any fallback)."""

    message: str
    provider_id: str
    model_id: str
    error_code: str = "PROVIDER_ERROR"

    @property
    def is_error(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "error",
            "message": self.message,
            "provider_id": self.provider_id,
            "model_id": self.model_id,
            "error_code": self.error_code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelError":
        return cls(
            message=data["message"],
            provider_id=data["provider_id"],
            model_id=data["model_id"],
            error_code=data.get("error_code", "PROVIDER_ERROR"),
        )


ModelOutcome = Union[ModelResult, ModelError]


def outcome_from_dict(data: Optional[Dict[str, Any]]) -> Optional[ModelOutcome]:
    """Rebuild a result slot from its serialized form."""
    if data is None:
        return None
    if data.get("kind") == "error":
        return ModelError.from_dict(data)
    return ModelResult.from_dict(data)


@dataclass
class Job:
    """One generate-then-synthesize orchestration request."""

    # Primary identification
    job_id: str
    user_id: str
    requested_models: List[str]

    workflow_name: Optional[str] = None
    prompt_text: Optional[str] = None

    # Per-model slots; None means pending
    results: Dict[str, Optional[ModelOutcome]] = field(default_factory=dict)
    synthesis_input: Dict[str, str] = field(default_factory=dict)
    synthesis_result: Optional[ModelOutcome] = None

    status: JobStatus = JobStatus.PENDING
    critical_models: List[str] = field(default_factory=list)
    synthesis_model: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    error_code: Optional[str] = None
    error_info: Optional[str] = None

    def __post_init__(self):
        if len(set(self.requested_models)) != len(self.requested_models):
            raise InvalidRequestError("requested_models", "model ids must be unique", self.requested_models)
        # Every requested model owns exactly one slot from creation onward
        self.results = {model_id: self.results.get(model_id) for model_id in self.requested_models}

    def touch(self):
        """Advance updated_at without ever moving it backwards."""
        self.updated_at = max(self.updated_at, utcnow())

    def transition_to(self, target_status: JobStatus):
        """Move the job forward through the state machine."""
        if not can_transition_to(self.status, target_status):
            raise InvalidStateTransitionError(self.job_id, self.status.value, target_status.value)
        self.status = target_status
        self.touch()
        if target_status in TERMINAL_STATUSES:
            self.completed_at = self.updated_at

    def record_result(self, model_id: str, outcome: ModelOutcome):
        """Store the terminal outcome of one requested model."""
        if model_id not in self.results:
            raise InvalidRequestError("model_id", "not a requested model for this job", model_id)
        self.results[model_id] = outcome
        self.touch()

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def pending_models(self) -> List[str]:
        return [model_id for model_id, outcome in self.results.items() if outcome is None]

    def successful_results(self) -> Dict[str, ModelResult]:
        return {
            model_id: outcome for model_id, outcome in self.results.items()
            if isinstance(outcome, ModelResult)
        }

    def failed_results(self) -> Dict[str, ModelError]:
        return {
            model_id: outcome for model_id, outcome in self.results.items()
            if isinstance(outcome, ModelError)
        }

    def get_duration(self) -> Optional[float]:
        """Get job duration in seconds if finished."""
        if self.completed_at:
            return (self.completed_at - self.created_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for serialization."""
        return {
            "job_id": self.job_id,
            "user_id": self.user_id,
            "workflow_name": self.workflow_name,
            "prompt_text": self.prompt_text,
            "requested_models": list(self.requested_models),
            "results": {
                model_id: outcome.to_dict() if outcome is not None else None
                for model_id, outcome in self.results.items()
            },
            "synthesis_input": dict(self.synthesis_input),
            "synthesis_result": self.synthesis_result.to_dict() if self.synthesis_result else None,
            "status": self.status.value,
            "critical_models": list(self.critical_models),
            "synthesis_model": self.synthesis_model,
            "variables": dict(self.variables),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_code": self.error_code,
            "error_info": self.error_info,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        """Create job from dictionary."""
        return cls(
            job_id=data["job_id"],
            user_id=data["user_id"],
            requested_models=list(data["requested_models"]),
            workflow_name=data.get("workflow_name"),
            prompt_text=data.get("prompt_text"),
            results={
                model_id: outcome_from_dict(outcome)
                for model_id, outcome in (data.get("results") or {}).items()
            },
            synthesis_input=dict(data.get("synthesis_input") or {}),
            synthesis_result=outcome_from_dict(data.get("synthesis_result")),
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            critical_models=list(data.get("critical_models") or []),
            synthesis_model=data.get("synthesis_model"),
            variables=dict(data.get("variables") or {}),
            created_at=_parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=_parse_datetime(data.get("updated_at")) or utcnow(),
            completed_at=_parse_datetime(data.get("completed_at")),
            error_code=data.get("error_code"),
            error_info=data.get("error_info"),
        )
