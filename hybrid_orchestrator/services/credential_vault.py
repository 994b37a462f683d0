"""
CredentialVault service for Hybrid Orchestrator

Encrypts, stores, retrieves and refreshes per-(user, provider) credentials.

Access is gated by a keyed CircuitBreaker (key ``user_id|provider_id``).
Refreshes are single-flight per key: concurrent callers that find the same
expired credential await one shared refresh task instead of each contacting
the provider. All bookkeeping maps are touched only between awaits on the
event loop, so each check-and-set is atomic with respect to other tasks.
"""

import asyncio
import functools
import uuid
from abc import ABC, abstractmethod
from typing import Dict, Optional, Callable, Awaitable

from ..core.config import VaultConfig
from ..core.exceptions import (
    HybridOrchestratorError,
    CredentialNotFoundError,
    ProviderError,
    ReauthRequiredError,
    TimeoutExceededError,
)
from ..models.credential import Credential, CredentialRecord, credential_key
from ..models.job import utcnow
from ..services.event_service import EventSink, EventType, NullEventSink
from ..services.fault_tolerance import CircuitBreaker
from ..services.stores import CredentialStore
from ..utils import encryption
from ..utils.logger import get_logger


class CredentialRefresher(ABC):
    """Provider-specific exchange of a refresh token for a new credential."""

    @abstractmethod
    async def refresh(self, user_id: str, provider_id: str, credential: Credential) -> Credential:
        pass


class CallableRefresher(CredentialRefresher):
    """Adapts a plain coroutine function to the refresher contract."""

    def __init__(self, func: Callable[[str, str, Credential], Awaitable[Credential]]):
        self.func = func

    async def refresh(self, user_id: str, provider_id: str, credential: Credential) -> Credential:
        return await self.func(user_id, provider_id, credential)


class CredentialVault:
    """
    Encrypted credential storage with breaker-gated, de-duplicated refresh.

    Provides:
    - AES-256-GCM encryption at rest with PBKDF2-derived keys
    - Automatic refresh of expired credentials
    - One in-flight refresh per (user, provider)
    - Circuit breaking on repeated refresh failures
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        config: VaultConfig,
        circuit_breaker: Optional[CircuitBreaker] = None,
        event_sink: Optional[EventSink] = None,
        refreshers: Optional[Dict[str, CredentialRefresher]] = None
    ):
        """
        Initialize CredentialVault.

        Args:
            credential_store: Persistence for encrypted records
            config: Vault configuration (secret, KDF iterations, timeouts)
            circuit_breaker: Breaker shared with other components, if any
            event_sink: Receiver for token_refreshed / reauth_required events
            refreshers: Refresher per provider id
        """
        self.store = credential_store
        self.config = config
        self.circuit_breaker = circuit_breaker or CircuitBreaker(config.circuit_breaker, name="vault")
        self.event_sink = event_sink or NullEventSink()
        self.refreshers: Dict[str, CredentialRefresher] = dict(refreshers or {})

        self._refreshes: Dict[str, asyncio.Future] = {}
        # Bumped on every store/delete so a caller holding a stale read can tell
        self._generations: Dict[str, int] = {}

        self.refresh_count = 0
        self.logger = get_logger(__name__)

    def register_refresher(self, provider_id: str, refresher: CredentialRefresher):
        """Register the refresher used for ``provider_id`` credentials."""
        self.refreshers[provider_id] = refresher

    def _bump_generation(self, key: str) -> int:
        generation = self._generations.get(key, 0) + 1
        self._generations[key] = generation
        return generation

    # Encryption runs PBKDF2, so it is pushed off the event loop
    async def _encrypt(self, credential: Credential, key: str) -> encryption.EncryptedPayload:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(
            encryption.encrypt,
            credential.serialize(),
            self.config.secret,
            key.encode("utf-8"),
            self.config.kdf_iterations
        ))

    async def _decrypt(self, record: CredentialRecord) -> Credential:
        payload = encryption.EncryptedPayload(
            ciphertext=record.encrypted_payload,
            iv=record.iv,
            salt=record.salt,
            tag=record.auth_tag
        )
        loop = asyncio.get_running_loop()
        plaintext = await loop.run_in_executor(None, functools.partial(
            encryption.decrypt,
            payload,
            self.config.secret,
            record.key.encode("utf-8"),
            self.config.kdf_iterations
        ))
        return Credential.deserialize(plaintext)

    async def store_credential(self, user_id: str, provider_id: str, credential: Credential):
        """
        Encrypt and upsert a credential, resetting the key's circuit.

        Args:
            user_id: Owner of the credential
            provider_id: Provider the credential authenticates against
            credential: Decrypted credential to store
        """
        key = credential_key(user_id, provider_id)
        sealed = await self._encrypt(credential, key)

        now = utcnow()
        record = CredentialRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            provider_id=provider_id,
            encrypted_payload=sealed.ciphertext,
            iv=sealed.iv,
            salt=sealed.salt,
            auth_tag=sealed.tag,
            created_at=now,
            updated_at=now
        )
        await self.store.upsert_credential(record)

        self._bump_generation(key)
        self.circuit_breaker.reset(key)

        self.logger.info("Credential stored", extra={
            "user_id": user_id,
            "provider_id": provider_id,
            "credential_type": credential.type.value
        })

    async def get_valid_credential(self, user_id: str, provider_id: str) -> Credential:
        """
        Return a decrypted, unexpired credential, refreshing it if needed.

        Raises:
            CircuitOpenError: the key's breaker is open
            CredentialNotFoundError: nothing stored for this key
            DecryptionFailedError: the stored record failed authentication
            ReauthRequiredError / ProviderError / TimeoutExceededError: refresh failed
        """
        key = credential_key(user_id, provider_id)
        self.circuit_breaker.before_call(key)

        try:
            while True:
                pending = self._refreshes.get(key)
                if pending is not None:
                    return await asyncio.shield(pending)

                generation = self._generations.get(key, 0)
                record = await self.store.get_credential(user_id, provider_id)
                if record is None:
                    raise CredentialNotFoundError(user_id, provider_id)
                credential = await self._decrypt(record)

                if not credential.is_expired(skew_seconds=self.config.expiry_skew_seconds):
                    self.circuit_breaker.record_success(key)
                    return credential

                pending = self._refreshes.get(key)
                if pending is None:
                    if self._generations.get(key, 0) != generation:
                        # Stored or refreshed while we were reading; read again
                        continue
                    pending = self._start_refresh(key, user_id, provider_id, credential, generation)
                return await asyncio.shield(pending)
        except BaseException:
            # Refresh failures have already re-opened the circuit; anything
            # else hands a half-open trial slot back untouched
            self.circuit_breaker.release(key)
            raise

    def _start_refresh(self, key: str, user_id: str, provider_id: str, credential: Credential, generation: int) -> asyncio.Future:
        task = asyncio.ensure_future(self._refresh(key, user_id, provider_id, credential, generation))
        self._refreshes[key] = task

        def _forget(done: asyncio.Future):
            if self._refreshes.get(key) is done:
                del self._refreshes[key]
            if not done.cancelled():
                # Retrieve so an unobserved failure is not reported as never retrieved
                done.exception()

        task.add_done_callback(_forget)
        return task

    async def _refresh(self, key: str, user_id: str, provider_id: str, credential: Credential, generation: int) -> Credential:
        refresher = self.refreshers.get(provider_id)
        reason = None
        if not credential.refresh_token:
            reason = "credential expired and has no refresh token"
        elif refresher is None:
            reason = "no refresher registered for provider"

        try:
            if reason is not None:
                raise ReauthRequiredError(user_id, provider_id, reason)

            self.refresh_count += 1
            self.logger.info("Refreshing credential", extra={
                "user_id": user_id,
                "provider_id": provider_id
            })
            try:
                refreshed = await asyncio.wait_for(
                    refresher.refresh(user_id, provider_id, credential),
                    timeout=self.config.refresh_timeout_seconds
                )
            except asyncio.TimeoutError:
                raise TimeoutExceededError(f"refresh {provider_id}", self.config.refresh_timeout_seconds)
            except HybridOrchestratorError:
                raise
            except Exception as e:
                raise ProviderError(f"Credential refresh failed: {str(e)}", provider_id=provider_id)

        except HybridOrchestratorError as e:
            # A delete or store during the refresh already reset this key
            if self._generations.get(key, 0) == generation:
                self.circuit_breaker.record_failure(key)
            self.logger.warning("Credential refresh failed", extra={
                "user_id": user_id,
                "provider_id": provider_id,
                "error_code": e.error_code,
                "error": e.message
            })
            if isinstance(e, ReauthRequiredError):
                self._emit(EventType.REAUTH_REQUIRED, {
                    "user_id": user_id,
                    "provider_id": provider_id,
                    "reason": e.details.get("reason")
                })
            raise

        if self._generations.get(key, 0) != generation:
            # Deleted or replaced while the refresh was running; never resurrect a deleted record
            if await self.store.get_credential(user_id, provider_id) is None:
                raise CredentialNotFoundError(user_id, provider_id)
            return refreshed

        if refreshed.refresh_token is None:
            refreshed.refresh_token = credential.refresh_token
        await self.store_credential(user_id, provider_id, refreshed)
        self._emit(EventType.TOKEN_REFRESHED, {"user_id": user_id, "provider_id": provider_id})
        return refreshed

    async def delete_credential(self, user_id: str, provider_id: str):
        """Remove the record and clear all breaker/refresh state for the key."""
        key = credential_key(user_id, provider_id)
        await self.store.delete_credential(user_id, provider_id)

        self._bump_generation(key)
        self._refreshes.pop(key, None)
        self.circuit_breaker.reset(key)

        self.logger.info("Credential deleted", extra={
            "user_id": user_id,
            "provider_id": provider_id
        })

    def refresh_in_progress(self, user_id: str, provider_id: str) -> bool:
        return credential_key(user_id, provider_id) in self._refreshes

    def _emit(self, event_type: EventType, payload: Dict[str, str]):
        try:
            self.event_sink.emit(None, event_type, payload)
        except Exception as e:
            self.logger.warning(f"Failed to emit {event_type.value} event: {str(e)}")
