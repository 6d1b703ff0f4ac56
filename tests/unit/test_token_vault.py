"""
Unit tests for the encrypting token vault.
"""

from datetime import timedelta

import pytest
from cryptography.fernet import Fernet
from fhirlink.core.encryption import TokenCipher
from fhirlink.repositories.base import utcnow
from fhirlink.services.token_vault import TokenVault


@pytest.fixture
def vault(repositories, cipher):
    return TokenVault(repositories.connections, cipher)


async def store(vault, refresh_token="rt-1", expires_in=3600):
    return await vault.put(
        subject_id="dev-1",
        provider="epic",
        patient_id="patient-1",
        access_token="at-1",
        refresh_token=refresh_token,
        expires_at=utcnow() + timedelta(seconds=expires_in),
    )


class TestTokenVault:
    """Encryption at rest and keyed lookups."""

    @pytest.mark.asyncio
    async def test_tokens_are_stored_encrypted(self, vault, repositories):
        record = await store(vault)
        raw = await repositories.connections.get_by_id(record.id)

        assert raw.access_token_encrypted != "at-1"
        assert raw.refresh_token_encrypted != "rt-1"
        assert raw.access_token_encrypted.startswith("k1$")

    @pytest.mark.asyncio
    async def test_get_decrypts(self, vault):
        await store(vault)
        connection = await vault.get("dev-1", "epic", "patient-1")

        assert connection.access_token == "at-1"
        assert connection.refresh_token == "rt-1"
        assert "at-1" not in repr(connection)

    @pytest.mark.asyncio
    async def test_put_upserts_on_identity(self, vault):
        first = await store(vault)
        second = await vault.put(
            subject_id="dev-1",
            provider="epic",
            patient_id="patient-1",
            access_token="at-2",
            refresh_token=None,
            expires_at=None,
        )

        assert second.id == first.id
        connection = await vault.get_by_id(first.id)
        assert connection.access_token == "at-2"
        # A reconnect without a refresh token keeps the stored one
        assert connection.refresh_token == "rt-1"

    @pytest.mark.asyncio
    async def test_update_tokens_keeps_refresh_token_when_not_rotated(self, vault):
        record = await store(vault)
        await vault.update_tokens(record.id, "at-new", None, utcnow() + timedelta(hours=1))

        connection = await vault.get_by_id(record.id)
        assert connection.access_token == "at-new"
        assert connection.refresh_token == "rt-1"

    @pytest.mark.asyncio
    async def test_due_for_refresh_needs_refresh_token(self, vault):
        await store(vault, expires_in=60)
        await vault.put(
            subject_id="dev-1",
            provider="cerner",
            patient_id="patient-2",
            access_token="at",
            refresh_token=None,
            expires_at=utcnow() + timedelta(seconds=60),
        )
        await vault.put(
            subject_id="dev-1",
            provider="smart",
            patient_id="patient-3",
            access_token="at",
            refresh_token="rt",
            expires_at=utcnow() + timedelta(hours=2),
        )

        due = await vault.due_for_refresh(horizon_seconds=300)
        assert [r.provider for r in due] == ["epic"]

    @pytest.mark.asyncio
    async def test_rotate_keys_rewrites_old_ciphertext(self, repositories):
        old_key, new_key = Fernet.generate_key(), Fernet.generate_key()
        old_vault = TokenVault(repositories.connections, TokenCipher([("k1", old_key)]))
        record = await store(old_vault)

        rotated_vault = TokenVault(repositories.connections, TokenCipher([("k2", new_key), ("k1", old_key)]))
        assert await rotated_vault.rotate_keys() == 1
        assert await rotated_vault.rotate_keys() == 0

        raw = await repositories.connections.get_by_id(record.id)
        assert raw.access_token_encrypted.startswith("k2$")
        assert raw.refresh_token_encrypted.startswith("k2$")
        connection = await rotated_vault.get_by_id(record.id)
        assert connection.access_token == "at-1"
        assert connection.refresh_token == "rt-1"
