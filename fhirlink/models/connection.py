"""
Connection model: one authorized link between a subject and a provider.
"""

import uuid
from datetime import datetime, timezone

from fhirlink.core.database import Base
from sqlalchemy import Column, DateTime, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID


class Connection(Base):
    """Encrypted token pair for (subject, provider, patient)."""

    __tablename__ = "connections"
    __table_args__ = (UniqueConstraint("subject_id", "provider", "patient_id", name="uq_connections_subject_provider_patient"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subject_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(32), nullable=False, index=True)
    patient_id = Column(String(255), nullable=False)
    client_user_id = Column(String(255), nullable=True)
    access_token_encrypted = Column(Text, nullable=False)
    refresh_token_encrypted = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    scope = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def __repr__(self):
        return f"<Connection(id={self.id}, provider={self.provider}, subject={self.subject_id})>"
