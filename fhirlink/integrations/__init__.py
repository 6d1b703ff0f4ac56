"""
Integrations - External System Connectors

- Provider registry for EMR, payer and lab authorization servers
- OAuth flow engine (authorization code + PKCE / Basic)
- FHIR R4 fetch layer with partial-failure aggregation
"""
