"""
Exception classes for Hybrid Orchestrator

Provides the hierarchy of exceptions raised by the workflow orchestrator,
the credential vault and the circuit breaker. Every error carries a coarse
``error_code`` so transport layers never need to inspect the class itself.
"""

from typing import Optional, Dict, Any


class HybridOrchestratorError(Exception):
    """Base exception for all hybrid orchestrator errors."""

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


class InvalidRequestError(HybridOrchestratorError):
    """Raised when a request is rejected before any job is created."""

    def __init__(self, field: str, message: str, value: Any = None):
        super().__init__(
            f"Invalid request for {field}: {message}",
            error_code="INVALID_REQUEST",
            details={"field": field, "value": str(value) if value is not None else None}
        )


class NotFoundError(HybridOrchestratorError):
    """Base class for lookups that found nothing."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="NOT_FOUND", details=details)


class JobNotFoundError(NotFoundError):
    """Raised when a requested job cannot be found."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found", details={"job_id": job_id})


class CredentialNotFoundError(NotFoundError):
    """Raised when no credential is stored for a user and provider."""

    def __init__(self, user_id: str, provider_id: str):
        super().__init__(
            f"No credential stored for provider {provider_id}",
            details={"user_id": user_id, "provider_id": provider_id}
        )


class AdapterNotFoundError(NotFoundError):
    """Raised when no model adapter is registered for a model id."""

    def __init__(self, model_id: str):
        super().__init__(f"No adapter registered for model {model_id}", details={"model_id": model_id})


class CircuitOpenError(HybridOrchestratorError):
    """Raised when a circuit breaker rejects a call."""

    def __init__(self, key: str, retry_after_seconds: Optional[float] = None):
        message = f"Circuit for {key} is open"
        if retry_after_seconds is not None:
            message += f" (retry in {retry_after_seconds:.1f}s)"
        super().__init__(
            message,
            error_code="CIRCUIT_OPEN",
            details={"key": key, "retry_after_seconds": retry_after_seconds}
        )


class DecryptionFailedError(HybridOrchestratorError):
    """Raised when a stored credential fails authentication on decrypt."""

    def __init__(self, message: str = "Credential payload failed authentication"):
        super().__init__(message, error_code="DECRYPTION_FAILED")


class ReauthRequiredError(HybridOrchestratorError):
    """Raised when an expired credential cannot be refreshed."""

    def __init__(self, user_id: str, provider_id: str, reason: str):
        super().__init__(
            f"Re-authentication required for provider {provider_id}: {reason}",
            error_code="REAUTH_REQUIRED",
            details={"user_id": user_id, "provider_id": provider_id, "reason": reason}
        )


class ProviderError(HybridOrchestratorError):
    """Raised when a remote model call fails."""

    def __init__(self, message: str, provider_id: Optional[str] = None, model_id: Optional[str] = None):
        super().__init__(
            message,
            error_code="PROVIDER_ERROR",
            details={"provider_id": provider_id, "model_id": model_id}
        )


class TimeoutExceededError(HybridOrchestratorError):
    """Raised when an operation or a whole job runs past its deadline."""

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(
            f"Operation '{operation}' timed out after {timeout_seconds:.3f} seconds",
            error_code="TIMEOUT",
            details={"operation": operation, "timeout_seconds": timeout_seconds}
        )


class SynthesisError(HybridOrchestratorError):
    """Raised when the synthesis call fails."""

    def __init__(self, job_id: str, message: str, model_id: Optional[str] = None):
        super().__init__(
            f"Synthesis failed for job {job_id}: {message}",
            error_code="SYNTHESIS_ERROR",
            details={"job_id": job_id, "model_id": model_id}
        )


class JobCancelledError(HybridOrchestratorError):
    """Raised (or recorded) when a job is cancelled."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} was cancelled", error_code="CANCELLED", details={"job_id": job_id})


class CriticalModelError(HybridOrchestratorError):
    """Recorded when a model marked critical fails terminally."""

    def __init__(self, job_id: str, model_id: str, reason: str):
        super().__init__(
            f"Critical model {model_id} failed: {reason}",
            error_code="CRITICAL_MODEL_FAILED",
            details={"job_id": job_id, "model_id": model_id}
        )


class GenerationFailedError(HybridOrchestratorError):
    """Recorded when no model in the generate stage succeeded."""

    def __init__(self, job_id: str, failures: Dict[str, str]):
        summary = "; ".join(f"{model_id}: {message}" for model_id, message in failures.items())
        super().__init__(
            f"All models failed: {summary}" if summary else "All models failed",
            error_code="GENERATION_FAILED",
            details={"job_id": job_id, "failures": failures}
        )


class InvalidStateTransitionError(HybridOrchestratorError):
    """Raised when a job status would move backwards or out of a terminal state."""

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(
            f"Job {job_id} cannot move from {current} to {target}",
            error_code="INVALID_TRANSITION",
            details={"job_id": job_id, "current": current, "target": target}
        )


class ConfigurationError(HybridOrchestratorError):
    """Raised when there's an error in configuration."""

    def __init__(self, config_key: str, message: str):
        super().__init__(
            f"Configuration error for {config_key}: {message}",
            error_code="CONFIGURATION_ERROR",
            details={"config_key": config_key}
        )


class DatabaseError(HybridOrchestratorError):
    """Raised when database operations fail."""

    def __init__(self, operation: str, message: str, table: Optional[str] = None):
        super().__init__(
            f"Database operation '{operation}' failed: {message}",
            error_code="DATABASE_ERROR",
            details={"operation": operation, "table": table}
        )


class ErrorRegistry:
    """Registry for tracking and analyzing errors."""

    def __init__(self):
        self.error_counts: Dict[str, int] = {}

    def record_error(self, error: Exception):
        """Record an error for analysis."""
        error_type = error.__class__.__name__
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

    def get_error_statistics(self) -> Dict[str, Any]:
        """Get error statistics for monitoring."""
        return {
            "total_errors": sum(self.error_counts.values()),
            "error_counts": dict(self.error_counts),
            "most_common_error": max(self.error_counts.items(), key=lambda x: x[1])[0] if self.error_counts else None
        }
