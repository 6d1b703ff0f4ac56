import os

# Settings are read at import time; these defaults let the package import in
# unit tests without a deployment environment. Callers/CI may override them.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("BACKGROUND_TASKS_ENABLED", "false")
os.environ.setdefault("TOKEN_ENCRYPTION_KEYS", "k1:MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY=")

import pytest  # noqa: E402
from cryptography.fernet import Fernet  # noqa: E402
from fhirlink.core.encryption import TokenCipher  # noqa: E402
from fhirlink.repositories import set_repositories  # noqa: E402
from fhirlink.repositories.memory import create_memory_repositories  # noqa: E402
from fhirlink.services.audit_service import AuditService  # noqa: E402


@pytest.fixture(autouse=True)
def repositories():
    """Fresh in-memory storage for every test."""
    repos = create_memory_repositories()
    set_repositories(repos)
    yield repos
    set_repositories(None)


@pytest.fixture
def cipher():
    return TokenCipher([("k1", Fernet.generate_key())])


@pytest.fixture
def audit(repositories):
    return AuditService(repositories.audit_logs)
