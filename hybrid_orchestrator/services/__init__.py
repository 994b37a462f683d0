"""
Services package for Hybrid Orchestrator

Circuit breaking, event delivery, persistence contracts, concurrency caps
and the credential vault.
"""

from .fault_tolerance import CircuitBreaker, CircuitBreakerConfig, CircuitState
from .event_service import (
    EventType,
    Event,
    EventSink,
    NullEventSink,
    InMemoryEventSink,
    LoggingEventSink,
    CompositeEventSink
)
from .stores import JobStore, CredentialStore, InMemoryJobStore, InMemoryCredentialStore
from .concurrency import ConcurrencyLimiter
from .credential_vault import CredentialVault, CredentialRefresher, CallableRefresher

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "EventType",
    "Event",
    "EventSink",
    "NullEventSink",
    "InMemoryEventSink",
    "LoggingEventSink",
    "CompositeEventSink",
    "JobStore",
    "CredentialStore",
    "InMemoryJobStore",
    "InMemoryCredentialStore",
    "ConcurrencyLimiter",
    "CredentialVault",
    "CredentialRefresher",
    "CallableRefresher"
]
