"""fhirlink test suite.

- tests/unit/: services and integrations against the in-memory repositories
- tests/api/: HTTP endpoints through the FastAPI TestClient
- tests/conftest.py: shared environment and fixtures
"""
