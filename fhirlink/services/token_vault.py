"""
Token Vault

Stores OAuth token pairs encrypted at rest, keyed by (subject, provider,
patient). Plaintext tokens only exist in a ``DecryptedConnection`` held in
memory for the duration of one outbound call.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from fhirlink.core.encryption import TokenCipher, get_token_cipher
from fhirlink.core.logging import get_logger
from fhirlink.integrations.fhir.fhir_client import FetchTarget
from fhirlink.repositories import get_repositories
from fhirlink.repositories.base import ConnectionRecord, ConnectionRepository, utcnow

logger = get_logger(__name__)


@dataclass
class DecryptedConnection:
    """In-memory view of a connection with usable tokens."""

    id: str
    subject_id: str
    provider: str
    patient_id: str
    access_token: str
    refresh_token: Optional[str]
    token_expires_at: Optional[datetime]
    client_user_id: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"DecryptedConnection(id={self.id!r}, provider={self.provider!r}, "
            f"token_expires_at={self.token_expires_at!r})"
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.token_expires_at is None:
            return False
        return (now or utcnow()) >= self.token_expires_at

    def expires_within(self, seconds: int, now: Optional[datetime] = None) -> bool:
        if self.token_expires_at is None:
            return False
        return self.token_expires_at <= (now or utcnow()) + timedelta(seconds=seconds)

    def to_fetch_target(self) -> FetchTarget:
        return FetchTarget(
            provider=self.provider,
            patient_id=self.patient_id,
            access_token=self.access_token,
            connection_id=self.id,
        )


class TokenVault:
    """Encrypting facade over the connection repository."""

    def __init__(self, repository: Optional[ConnectionRepository] = None, cipher: Optional[TokenCipher] = None):
        self._repository = repository
        self._cipher = cipher

    @property
    def repository(self) -> ConnectionRepository:
        return self._repository or get_repositories().connections

    @property
    def cipher(self) -> TokenCipher:
        return self._cipher or get_token_cipher()

    def decrypt(self, record: ConnectionRecord) -> DecryptedConnection:
        """
        Raises:
            TokenDecryptionError: ciphertext is corrupt or its key is gone
        """
        return DecryptedConnection(
            id=record.id,
            subject_id=record.subject_id,
            provider=record.provider,
            patient_id=record.patient_id,
            access_token=self.cipher.decrypt(record.access_token_encrypted),
            refresh_token=(
                self.cipher.decrypt(record.refresh_token_encrypted) if record.refresh_token_encrypted else None
            ),
            token_expires_at=record.token_expires_at,
            client_user_id=record.client_user_id,
        )

    async def put(
        self,
        subject_id: str,
        provider: str,
        patient_id: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
        client_user_id: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> ConnectionRecord:
        """Encrypt and upsert a connection; returns the stored (ciphertext) record."""
        record = await self.repository.upsert(
            subject_id=subject_id,
            provider=provider,
            patient_id=patient_id,
            access_token_encrypted=self.cipher.encrypt(access_token),
            refresh_token_encrypted=self.cipher.encrypt(refresh_token) if refresh_token else None,
            token_expires_at=expires_at,
            client_user_id=client_user_id,
            scope=scope,
        )
        logger.info(
            "connection_stored",
            connection_id=record.id,
            subject_id=subject_id,
            provider=provider,
            has_refresh_token=record.has_refresh_token,
        )
        return record

    async def get(self, subject_id: str, provider: str, patient_id: str) -> Optional[DecryptedConnection]:
        record = await self.repository.get(subject_id, provider, patient_id)
        return self.decrypt(record) if record else None

    async def get_by_id(self, connection_id: str) -> Optional[DecryptedConnection]:
        record = await self.repository.get_by_id(connection_id)
        return self.decrypt(record) if record else None

    async def get_record(self, connection_id: str) -> Optional[ConnectionRecord]:
        return await self.repository.get_by_id(connection_id)

    async def list_for_subject(self, subject_id: str) -> List[ConnectionRecord]:
        return await self.repository.list_by_subject(subject_id)

    async def due_for_refresh(self, horizon_seconds: int, now: Optional[datetime] = None) -> List[ConnectionRecord]:
        """Connections with a refresh token expiring within the horizon."""
        cutoff = (now or utcnow()) + timedelta(seconds=horizon_seconds)
        return await self.repository.list_due_for_refresh(cutoff)

    async def update_tokens(
        self,
        connection_id: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
    ) -> Optional[ConnectionRecord]:
        """
        Replace tokens after a refresh (last writer wins).

        A missing refresh token means the provider did not rotate it; the
        stored one is kept.
        """
        if refresh_token:
            refresh_ciphertext = self.cipher.encrypt(refresh_token)
        else:
            existing = await self.repository.get_by_id(connection_id)
            if existing is None:
                return None
            refresh_ciphertext = existing.refresh_token_encrypted

        return await self.repository.update_tokens(
            connection_id,
            access_token_encrypted=self.cipher.encrypt(access_token),
            refresh_token_encrypted=refresh_ciphertext,
            token_expires_at=expires_at,
        )

    async def delete(self, connection_id: str) -> bool:
        deleted = await self.repository.delete(connection_id)
        if deleted:
            logger.info("connection_deleted", connection_id=connection_id)
        return deleted

    async def rotate_keys(self) -> int:
        """
        Re-encrypt every stored connection under the primary key.

        Returns:
            Number of connections rewritten
        """
        cipher = self.cipher
        rotated = 0
        for record in await self.repository.list_all():
            needs_access = cipher.needs_rotation(record.access_token_encrypted)
            needs_refresh = bool(record.refresh_token_encrypted) and cipher.needs_rotation(
                record.refresh_token_encrypted
            )
            if not (needs_access or needs_refresh):
                continue
            await self.repository.update_tokens(
                record.id,
                access_token_encrypted=cipher.rotate(record.access_token_encrypted),
                refresh_token_encrypted=(
                    cipher.rotate(record.refresh_token_encrypted) if record.refresh_token_encrypted else None
                ),
                token_expires_at=record.token_expires_at,
            )
            rotated += 1

        logger.info("token_keys_rotated", primary_key_id=cipher.primary_key_id, rotated=rotated)
        return rotated


# Global vault instance
token_vault = TokenVault()


def get_token_vault() -> TokenVault:
    return token_vault
