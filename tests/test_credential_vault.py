"""
Tests for the credential vault: encryption at rest, refresh de-duplication,
circuit breaking and lifecycle events.
"""

import asyncio
from datetime import timedelta, timezone

import pytest

from hybrid_orchestrator.core.config import VaultConfig
from hybrid_orchestrator.core.exceptions import (
    CircuitOpenError,
    CredentialNotFoundError,
    DecryptionFailedError,
    ProviderError,
    ReauthRequiredError,
    TimeoutExceededError,
)
from hybrid_orchestrator.models import Credential, CredentialType
from hybrid_orchestrator.models.job import utcnow
from hybrid_orchestrator.services import CallableRefresher, EventType, InMemoryCredentialStore


def _fresh_credential() -> Credential:
    return Credential(
        access_token="sk-live-123",
        type=CredentialType.OAUTH,
        refresh_token="rt-456",
        expires_at=utcnow() + timedelta(hours=1),
        issued_at=utcnow(),
        scopes=["chat", "models"],
        metadata={"account": "team"}
    )


class TestStoreAndRetrieve:

    @pytest.mark.asyncio
    async def test_round_trip_returns_equal_credential(self, make_vault):
        vault = make_vault()
        credential = _fresh_credential()

        await vault.store_credential("alice", "openai", credential)
        loaded = await vault.get_valid_credential("alice", "openai")

        assert loaded == credential

    @pytest.mark.asyncio
    async def test_record_is_encrypted_at_rest(self, make_vault):
        store = InMemoryCredentialStore()
        vault = make_vault(store=store)
        await vault.store_credential("alice", "openai", _fresh_credential())

        record = await store.get_credential("alice", "openai")
        assert b"sk-live-123" not in record.encrypted_payload
        assert len(record.iv) == 12
        assert len(record.auth_tag) == 16

    @pytest.mark.asyncio
    async def test_missing_credential_is_not_found(self, make_vault):
        vault = make_vault()
        with pytest.raises(CredentialNotFoundError) as exc_info:
            await vault.get_valid_credential("alice", "anthropic")
        assert exc_info.value.error_code == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_upsert_replaces_previous_credential(self, make_vault):
        vault = make_vault()
        await vault.store_credential("alice", "openai", _fresh_credential())
        replacement = Credential(access_token="sk-new", type=CredentialType.API)
        await vault.store_credential("alice", "openai", replacement)

        assert await vault.get_valid_credential("alice", "openai") == replacement

    @pytest.mark.asyncio
    async def test_naive_expiry_is_treated_as_utc(self, make_vault):
        vault = make_vault()
        naive_expiry = utcnow().replace(tzinfo=None) + timedelta(hours=1)
        await vault.store_credential("alice", "openai", Credential(access_token="sk-naive", expires_at=naive_expiry))

        loaded = await vault.get_valid_credential("alice", "openai")

        assert loaded.access_token == "sk-naive"
        assert loaded.expires_at == naive_expiry.replace(tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_naive_past_expiry_still_counts_as_expired(self, make_vault):
        vault = make_vault()
        naive_expiry = utcnow().replace(tzinfo=None) - timedelta(minutes=5)
        await vault.store_credential("alice", "openai", Credential(access_token="sk-old", expires_at=naive_expiry))

        with pytest.raises(ReauthRequiredError):
            await vault.get_valid_credential("alice", "openai")

    @pytest.mark.asyncio
    async def test_flipped_payload_byte_fails_decryption(self, make_vault):
        store = InMemoryCredentialStore()
        vault = make_vault(store=store)
        await vault.store_credential("alice", "openai", _fresh_credential())

        stored = store._records[("alice", "openai")]
        tampered = bytearray(stored.encrypted_payload)
        tampered[0] ^= 0xFF
        stored.encrypted_payload = bytes(tampered)

        with pytest.raises(DecryptionFailedError):
            await vault.get_valid_credential("alice", "openai")

    @pytest.mark.asyncio
    async def test_record_moved_to_another_user_fails_decryption(self, make_vault):
        store = InMemoryCredentialStore()
        vault = make_vault(store=store)
        await vault.store_credential("alice", "openai", _fresh_credential())

        stolen = await store.get_credential("alice", "openai")
        stolen.user_id = "mallory"
        await store.upsert_credential(stolen)

        with pytest.raises(DecryptionFailedError):
            await vault.get_valid_credential("mallory", "openai")

    @pytest.mark.asyncio
    async def test_wrong_installation_secret_fails(self, make_vault):
        store = InMemoryCredentialStore()
        await make_vault(store=store).store_credential("alice", "openai", _fresh_credential())

        other = make_vault(store=store, config=VaultConfig(secret="different", kdf_iterations=100_000))
        with pytest.raises(DecryptionFailedError):
            await other.get_valid_credential("alice", "openai")


class TestRefresh:

    @pytest.mark.asyncio
    async def test_unexpired_credential_is_not_refreshed(self, make_vault, fake_refresher):
        refresher = fake_refresher()
        vault = make_vault(refreshers={"openai": refresher})
        await vault.store_credential("alice", "openai", _fresh_credential())

        await vault.get_valid_credential("alice", "openai")
        assert refresher.calls == 0

    @pytest.mark.asyncio
    async def test_expired_credential_is_refreshed_and_stored(self, make_vault, fake_refresher, expired, event_sink):
        refresher = fake_refresher()
        vault = make_vault(event_sink=event_sink, refreshers={"openai": refresher})
        await vault.store_credential("alice", "openai", expired())

        credential = await vault.get_valid_credential("alice", "openai")
        assert credential.access_token == "refreshed-1"
        assert refresher.calls == 1

        # Stored value is the refreshed one, with the old refresh token carried forward
        again = await vault.get_valid_credential("alice", "openai")
        assert again.access_token == "refreshed-1"
        assert again.refresh_token == "refresh-me"
        assert refresher.calls == 1

        refreshed_events = [e for e in event_sink.events if e.event_type == EventType.TOKEN_REFRESHED]
        assert len(refreshed_events) == 1
        assert refreshed_events[0].payload == {"user_id": "alice", "provider_id": "openai"}

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, make_vault, fake_refresher, expired):
        refresher = fake_refresher(delay=0.05)
        vault = make_vault(refreshers={"openai": refresher})
        await vault.store_credential("alice", "openai", expired())

        first, second = await asyncio.gather(
            vault.get_valid_credential("alice", "openai"),
            vault.get_valid_credential("alice", "openai"),
        )

        assert refresher.calls == 1
        assert first.access_token == second.access_token == "refreshed-1"
        assert not vault.refresh_in_progress("alice", "openai")

    @pytest.mark.asyncio
    async def test_refresh_failure_reaches_all_waiters(self, make_vault, fake_refresher, expired):
        refresher = fake_refresher(delay=0.05, error=RuntimeError("token endpoint down"))
        vault = make_vault(refreshers={"openai": refresher})
        await vault.store_credential("alice", "openai", expired())

        results = await asyncio.gather(
            vault.get_valid_credential("alice", "openai"),
            vault.get_valid_credential("alice", "openai"),
            return_exceptions=True
        )

        assert refresher.calls == 1
        assert all(isinstance(result, ProviderError) for result in results)
        assert results[0] is results[1]
        assert vault.circuit_breaker.get_failure_count("alice|openai") == 1

    @pytest.mark.asyncio
    async def test_repeated_refresh_failures_open_circuit(self, make_vault, fake_refresher, expired):
        refresher = fake_refresher(error=RuntimeError("invalid_grant"))
        vault = make_vault(refreshers={"openai": refresher})
        await vault.store_credential("alice", "openai", expired())

        for _ in range(3):
            with pytest.raises(ProviderError):
                await vault.get_valid_credential("alice", "openai")

        with pytest.raises(CircuitOpenError):
            await vault.get_valid_credential("alice", "openai")
        assert refresher.calls == 3

        # Storing a new credential always closes the circuit
        await vault.store_credential("alice", "openai", _fresh_credential())
        assert (await vault.get_valid_credential("alice", "openai")).access_token == "sk-live-123"

    @pytest.mark.asyncio
    async def test_missing_refresh_token_requires_reauth(self, make_vault, fake_refresher, expired, event_sink):
        refresher = fake_refresher()
        vault = make_vault(event_sink=event_sink, refreshers={"openai": refresher})
        await vault.store_credential("alice", "openai", expired(refresh_token=None))

        with pytest.raises(ReauthRequiredError) as exc_info:
            await vault.get_valid_credential("alice", "openai")

        assert exc_info.value.error_code == "REAUTH_REQUIRED"
        assert refresher.calls == 0
        reauth = [e for e in event_sink.events if e.event_type == EventType.REAUTH_REQUIRED]
        assert len(reauth) == 1
        assert reauth[0].payload["provider_id"] == "openai"

    @pytest.mark.asyncio
    async def test_no_registered_refresher_requires_reauth(self, make_vault, expired):
        vault = make_vault()
        await vault.store_credential("alice", "openai", expired())

        with pytest.raises(ReauthRequiredError):
            await vault.get_valid_credential("alice", "openai")

    @pytest.mark.asyncio
    async def test_slow_refresh_times_out(self, make_vault, fake_refresher, expired):
        refresher = fake_refresher(delay=1.0)
        config = VaultConfig(secret="unit-test", kdf_iterations=100_000, refresh_timeout_seconds=0.05)
        vault = make_vault(config=config, refreshers={"openai": refresher})
        await vault.store_credential("alice", "openai", expired())

        with pytest.raises(TimeoutExceededError):
            await vault.get_valid_credential("alice", "openai")

    @pytest.mark.asyncio
    async def test_callable_refresher(self, make_vault, expired):
        async def exchange(user_id, provider_id, credential):
            return Credential(access_token=f"{user_id}-{provider_id}-new", expires_at=utcnow() + timedelta(hours=1))

        vault = make_vault()
        vault.register_refresher("openai", CallableRefresher(exchange))
        await vault.store_credential("alice", "openai", expired())

        credential = await vault.get_valid_credential("alice", "openai")
        assert credential.access_token == "alice-openai-new"


class TestDelete:

    @pytest.mark.asyncio
    async def test_delete_removes_record(self, make_vault):
        vault = make_vault()
        await vault.store_credential("alice", "openai", _fresh_credential())
        await vault.delete_credential("alice", "openai")

        with pytest.raises(CredentialNotFoundError):
            await vault.get_valid_credential("alice", "openai")

    @pytest.mark.asyncio
    async def test_delete_clears_breaker_state(self, make_vault, fake_refresher, expired):
        refresher = fake_refresher(error=RuntimeError("invalid_grant"))
        vault = make_vault(refreshers={"openai": refresher})
        await vault.store_credential("alice", "openai", expired())
        for _ in range(3):
            with pytest.raises(ProviderError):
                await vault.get_valid_credential("alice", "openai")

        await vault.delete_credential("alice", "openai")

        assert vault.circuit_breaker.get_failure_count("alice|openai") == 0
        with pytest.raises(CredentialNotFoundError):
            await vault.get_valid_credential("alice", "openai")

    @pytest.mark.asyncio
    async def test_delete_during_refresh_does_not_resurrect(self, make_vault, fake_refresher, expired):
        refresher = fake_refresher(delay=0.1)
        vault = make_vault(refreshers={"openai": refresher})
        await vault.store_credential("alice", "openai", expired())

        pending = asyncio.ensure_future(vault.get_valid_credential("alice", "openai"))
        while not vault.refresh_in_progress("alice", "openai"):
            await asyncio.sleep(0.005)
        await vault.delete_credential("alice", "openai")

        with pytest.raises(CredentialNotFoundError):
            await pending
        with pytest.raises(CredentialNotFoundError):
            await vault.get_valid_credential("alice", "openai")

    @pytest.mark.asyncio
    async def test_refresh_failing_after_delete_leaves_no_breaker_state(self, make_vault, fake_refresher, expired):
        refresher = fake_refresher(delay=0.1, error=RuntimeError("invalid_grant"))
        vault = make_vault(refreshers={"openai": refresher})
        await vault.store_credential("alice", "openai", expired())

        pending = asyncio.ensure_future(vault.get_valid_credential("alice", "openai"))
        while not vault.refresh_in_progress("alice", "openai"):
            await asyncio.sleep(0.005)
        await vault.delete_credential("alice", "openai")

        with pytest.raises(ProviderError):
            await pending
        assert vault.circuit_breaker.get_failure_count("alice|openai") == 0
        assert "alice|openai" not in vault.circuit_breaker.get_status()
