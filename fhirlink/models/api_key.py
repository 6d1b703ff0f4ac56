"""
API key model for developer access to the fhirlink API.
"""

import uuid
from datetime import datetime, timezone

from fhirlink.core.database import Base
from sqlalchemy import Boolean, Column, DateTime, String
from sqlalchemy.dialects.postgresql import UUID


class APIKey(Base):
    """Hashed developer API keys; the full key is only shown at creation."""

    __tablename__ = "api_keys"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    api_user_id = Column(String(64), nullable=False, index=True)
    key_prefix = Column(String(16), nullable=False, index=True)  # "fl_k_xxxxxxx" for display
    key_hash = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    is_revoked = Column(Boolean, default=False, nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def __repr__(self):
        return f"<APIKey(id={self.id}, name={self.name}, prefix={self.key_prefix})>"
