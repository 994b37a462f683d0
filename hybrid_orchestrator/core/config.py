"""
Configuration for the orchestrator and the credential vault.

Both configs are plain dataclasses built from dictionaries with defaults
filled in the usual ``config.get(key, default)`` way; the vault can also be
configured from environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .exceptions import ConfigurationError
from ..services.fault_tolerance import CircuitBreakerConfig
from ..utils.encryption import DEFAULT_KDF_ITERATIONS, MIN_KDF_ITERATIONS

DEFAULT_SYNTHESIS_TEMPLATE = """You are combining answers that several AI models gave to the same request.

Request:
${{prompt}}

Responses:
${{responses}}

Write one coherent answer that keeps the strongest, best-supported points of every response and resolves any disagreements between them."""


@dataclass
class OrchestratorConfig:
    """Orchestrator-wide settings."""

    max_concurrent_jobs: int = 10
    max_concurrent_calls_per_provider: int = 4
    provider_concurrency: Dict[str, int] = field(default_factory=dict)
    job_timeout_seconds: float = 300.0
    # None keeps finished jobs in memory until cleanup_finished_jobs
    finished_job_retention_seconds: Optional[float] = 3600.0
    default_synthesis_model: Optional[str] = None
    synthesis_prompt_template: str = DEFAULT_SYNTHESIS_TEMPLATE
    fallback_models: Dict[str, str] = field(default_factory=dict)
    provider_circuit_breaker: bool = True
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)

    def __post_init__(self):
        self.validate()

    def validate(self):
        if self.max_concurrent_jobs < 1:
            raise ConfigurationError("max_concurrent_jobs", "must be at least 1")
        if self.max_concurrent_calls_per_provider < 1:
            raise ConfigurationError("max_concurrent_calls_per_provider", "must be at least 1")
        for provider_id, limit in self.provider_concurrency.items():
            if limit < 1:
                raise ConfigurationError(f"provider_concurrency.{provider_id}", "must be at least 1")
        if self.job_timeout_seconds <= 0:
            raise ConfigurationError("job_timeout_seconds", "must be positive")
        if self.finished_job_retention_seconds is not None and self.finished_job_retention_seconds < 0:
            raise ConfigurationError("finished_job_retention_seconds", "must not be negative")
        for model_id, fallback_id in self.fallback_models.items():
            if model_id == fallback_id:
                raise ConfigurationError(f"fallback_models.{model_id}", "a model cannot fall back to itself")

    @classmethod
    def from_dict(cls, config: Optional[Dict[str, Any]]) -> "OrchestratorConfig":
        config = config or {}
        return cls(
            max_concurrent_jobs=int(config.get("max_concurrent_jobs", 10)),
            max_concurrent_calls_per_provider=int(config.get("max_concurrent_calls_per_provider", 4)),
            provider_concurrency=dict(config.get("provider_concurrency", {})),
            job_timeout_seconds=float(config.get("job_timeout_seconds", 300.0)),
            finished_job_retention_seconds=config.get("finished_job_retention_seconds", 3600.0),
            default_synthesis_model=config.get("default_synthesis_model"),
            synthesis_prompt_template=config.get("synthesis_prompt_template", DEFAULT_SYNTHESIS_TEMPLATE),
            fallback_models=dict(config.get("fallback_models", {})),
            provider_circuit_breaker=bool(config.get("provider_circuit_breaker", True)),
            circuit_breaker=CircuitBreakerConfig.from_dict(config.get("circuit_breaker")),
        )


@dataclass
class VaultConfig:
    """Credential vault settings."""

    secret: str
    kdf_iterations: int = DEFAULT_KDF_ITERATIONS
    refresh_timeout_seconds: float = 30.0
    expiry_skew_seconds: float = 0.0
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)

    def __post_init__(self):
        if not self.secret:
            raise ConfigurationError("secret", "vault secret must not be empty")
        if self.kdf_iterations < MIN_KDF_ITERATIONS:
            raise ConfigurationError("kdf_iterations", f"must be at least {MIN_KDF_ITERATIONS}")
        if self.refresh_timeout_seconds <= 0:
            raise ConfigurationError("refresh_timeout_seconds", "must be positive")

    def __repr__(self) -> str:
        return (
            f"VaultConfig(kdf_iterations={self.kdf_iterations}, "
            f"refresh_timeout_seconds={self.refresh_timeout_seconds}, "
            f"expiry_skew_seconds={self.expiry_skew_seconds})"
        )

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "VaultConfig":
        return cls(
            secret=config.get("secret", ""),
            kdf_iterations=int(config.get("kdf_iterations", DEFAULT_KDF_ITERATIONS)),
            refresh_timeout_seconds=float(config.get("refresh_timeout_seconds", 30.0)),
            expiry_skew_seconds=float(config.get("expiry_skew_seconds", 0.0)),
            circuit_breaker=CircuitBreakerConfig.from_dict(config.get("circuit_breaker")),
        )

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "VaultConfig":
        """Read HYBRID_VAULT_* environment variables."""
        environ = os.environ if environ is None else environ
        secret = environ.get("HYBRID_VAULT_SECRET")
        if not secret:
            raise ConfigurationError("HYBRID_VAULT_SECRET", "environment variable is not set")
        try:
            return cls(
                secret=secret,
                kdf_iterations=int(environ.get("HYBRID_VAULT_KDF_ITERATIONS", DEFAULT_KDF_ITERATIONS)),
                refresh_timeout_seconds=float(environ.get("HYBRID_VAULT_REFRESH_TIMEOUT", 30.0)),
                expiry_skew_seconds=float(environ.get("HYBRID_VAULT_EXPIRY_SKEW", 0.0)),
            )
        except ValueError as e:
            raise ConfigurationError("HYBRID_VAULT_*", str(e))
