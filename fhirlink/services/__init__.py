"""
Service layer for the provider integration core

- Token vault, refresh scheduler and live-connection reads
- Rate limiting
- Webhook dispatch and retry worker
- Connect widget handshake, API keys and audit logging

Import services from their modules; this package does not re-export them.
"""
