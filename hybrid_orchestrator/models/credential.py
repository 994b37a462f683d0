"""
Credential models for Hybrid Orchestrator

A Credential is the decrypted provider token handed to one model call; a
CredentialRecord is its encrypted-at-rest form as persisted by a
CredentialStore.
"""

import json
from enum import Enum
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field

from .job import utcnow, as_utc, _parse_datetime


class CredentialType(Enum):
    """How the provider authenticates."""
    API = "api"
    OAUTH = "oauth"
    BROWSER = "browser"
    LOCAL = "local"


@dataclass
class Credential:
    """Decrypted provider credential."""

    access_token: str
    type: CredentialType = CredentialType.API
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    issued_at: Optional[datetime] = None
    scopes: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.expires_at = as_utc(self.expires_at)
        self.issued_at = as_utc(self.issued_at)

    def is_expired(self, now: Optional[datetime] = None, skew_seconds: float = 0.0) -> bool:
        """True once expires_at (minus skew) has passed; credentials without expiry never expire."""
        if self.expires_at is None:
            return False
        now = as_utc(now) or utcnow()
        return now >= self.expires_at - timedelta(seconds=skew_seconds)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "type": self.type.value,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "scopes": list(self.scopes),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credential":
        return cls(
            access_token=data["access_token"],
            type=CredentialType(data.get("type", CredentialType.API.value)),
            refresh_token=data.get("refresh_token"),
            expires_at=_parse_datetime(data.get("expires_at")),
            issued_at=_parse_datetime(data.get("issued_at")),
            scopes=list(data.get("scopes") or []),
            metadata=dict(data.get("metadata") or {}),
        )

    def serialize(self) -> bytes:
        """Serialize to the plaintext bytes that get encrypted."""
        return json.dumps(self.to_dict(), sort_keys=True).encode("utf-8")

    @classmethod
    def deserialize(cls, payload: bytes) -> "Credential":
        return cls.from_dict(json.loads(payload.decode("utf-8")))

    def __repr__(self) -> str:
        # Never leak token material into logs or tracebacks
        return (
            f"Credential(type={self.type.value!r}, expires_at={self.expires_at!r}, "
            f"scopes={self.scopes!r}, has_refresh_token={self.refresh_token is not None})"
        )


@dataclass
class CredentialRecord:
    """Encrypted credential row, unique per (user_id, provider_id)."""

    id: str
    user_id: str
    provider_id: str
    encrypted_payload: bytes
    iv: bytes
    salt: bytes
    auth_tag: bytes
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> str:
        return credential_key(self.user_id, self.provider_id)


def credential_key(user_id: str, provider_id: str) -> str:
    """Opaque key shared by the vault's breaker and refresh maps."""
    return f"{user_id}|{provider_id}"
