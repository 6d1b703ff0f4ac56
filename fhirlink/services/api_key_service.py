"""
Developer API keys.

Keys look like ``fl_k_<48 hex>``. Only a hash is stored; lookups go by the
non-secret prefix and then verify the hash, so the full key is shown once,
at creation.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from fhirlink.core.exceptions import InvalidAPIKey, NotFoundError
from fhirlink.core.logging import get_logger
from fhirlink.core.security import hash_api_key, verify_api_key
from fhirlink.repositories import get_repositories
from fhirlink.repositories.base import APIKeyRecord, ApiKeyRepository, new_id, utcnow
from fhirlink.services.audit_service import AuditAction, AuditService, get_audit_service

logger = get_logger(__name__)

API_KEY_PREFIX = "fl_k_"
# Stored prefix: "fl_k_" plus the first 8 hex chars
KEY_PREFIX_LENGTH = len(API_KEY_PREFIX) + 8


@dataclass
class CreatedAPIKey:
    record: APIKeyRecord
    key: str


def generate_api_key() -> str:
    return f"{API_KEY_PREFIX}{secrets.token_hex(24)}"


def key_prefix(key: str) -> str:
    return key[:KEY_PREFIX_LENGTH]


class APIKeyService:
    def __init__(self, repository: Optional[ApiKeyRepository] = None, audit: Optional[AuditService] = None):
        self._repository = repository
        self.audit = audit or get_audit_service()

    @property
    def repository(self) -> ApiKeyRepository:
        return self._repository or get_repositories().api_keys

    async def create(
        self,
        api_user_id: str,
        name: str,
        expires_at: Optional[datetime] = None,
        ip_address: Optional[str] = None,
    ) -> CreatedAPIKey:
        key = generate_api_key()
        record = APIKeyRecord(
            id=new_id(),
            api_user_id=api_user_id,
            key_prefix=key_prefix(key),
            key_hash=hash_api_key(key),
            name=name.strip(),
            expires_at=expires_at,
        )
        created = await self.repository.create(record)
        await self.audit.log(
            AuditAction.API_KEY_CREATED,
            subject_id=api_user_id,
            resource_type="api_key",
            resource_id=created.id,
            ip_address=ip_address,
        )
        logger.info("api_key_created", api_user_id=api_user_id, key_id=created.id, key_prefix=created.key_prefix)
        return CreatedAPIKey(record=created, key=key)

    async def list(self, api_user_id: str) -> List[APIKeyRecord]:
        return await self.repository.list_by_user(api_user_id)

    async def revoke(self, key_id: str, ip_address: Optional[str] = None) -> None:
        if not await self.repository.revoke(key_id, utcnow()):
            raise NotFoundError("API key not found")
        await self.audit.log(
            AuditAction.API_KEY_REVOKED,
            resource_type="api_key",
            resource_id=key_id,
            ip_address=ip_address,
        )
        logger.info("api_key_revoked", key_id=key_id)

    async def authenticate(self, key: Optional[str]) -> APIKeyRecord:
        """
        Resolve a presented key to its record.

        Raises:
            InvalidAPIKey: malformed, unknown, revoked or expired
        """
        if not key or not key.startswith(API_KEY_PREFIX):
            raise InvalidAPIKey()

        for candidate in await self.repository.find_by_prefix(key_prefix(key)):
            if not verify_api_key(key, candidate.key_hash):
                continue
            if not candidate.is_valid:
                logger.warning("api_key_rejected", key_id=candidate.id, reason="revoked_or_expired")
                raise InvalidAPIKey("API key has been revoked or has expired")
            await self.repository.touch(candidate.id, utcnow())
            return candidate

        logger.warning("api_key_rejected", key_prefix=key_prefix(key), reason="unknown")
        raise InvalidAPIKey()


# Global API key service instance
api_key_service = APIKeyService()


def get_api_key_service() -> APIKeyService:
    return api_key_service
