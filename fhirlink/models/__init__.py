"""SQLAlchemy table declarations for the postgres storage backend."""

from fhirlink.models.api_key import APIKey
from fhirlink.models.audit_log import AuditLog
from fhirlink.models.connection import Connection
from fhirlink.models.webhook import Webhook, WebhookDelivery
from fhirlink.models.widget_token import PublicToken, WidgetToken

__all__ = [
    "APIKey",
    "AuditLog",
    "Connection",
    "PublicToken",
    "Webhook",
    "WebhookDelivery",
    "WidgetToken",
]
