"""
Connect widget handshake tokens.

A widget token starts a connection flow; a public token is minted when the
flow completes and is exchanged once for the durable connection id.
"""

import uuid
from datetime import datetime, timezone

from fhirlink.core.database import Base
from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID


class WidgetToken(Base):
    __tablename__ = "widget_tokens"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    token = Column(String(64), nullable=False, unique=True, index=True)  # "wt_..."
    api_user_id = Column(String(64), nullable=False, index=True)
    client_user_id = Column(String(255), nullable=False)
    redirect_uri = Column(String(2048), nullable=True)
    products = Column(ARRAY(String), nullable=False, default=lambda: ["health_records"])
    metadata_ = Column("metadata", JSONB, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    connection_id = Column(UUID(as_uuid=True), ForeignKey("connections.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


class PublicToken(Base):
    __tablename__ = "public_tokens"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    token = Column(String(64), nullable=False, unique=True, index=True)  # "pt_..."
    connection_id = Column(UUID(as_uuid=True), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False)
    widget_token_id = Column(UUID(as_uuid=True), ForeignKey("widget_tokens.id", ondelete="SET NULL"), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    exchanged_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
