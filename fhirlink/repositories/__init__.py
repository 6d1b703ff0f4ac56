"""
Storage backend selection.

``get_repositories()`` returns the process-wide repository bundle for the
configured STORAGE_BACKEND. Tests swap it with ``set_repositories()``.
"""

from typing import Optional

from fhirlink.core.config import settings
from fhirlink.core.exceptions import ConfigurationError
from fhirlink.core.logging import get_logger
from fhirlink.repositories.base import Repositories
from fhirlink.repositories.memory import create_memory_repositories

logger = get_logger(__name__)

_repositories: Optional[Repositories] = None


def get_repositories() -> Repositories:
    global _repositories
    if _repositories is None:
        backend = settings.STORAGE_BACKEND.lower()
        if backend == "memory":
            _repositories = create_memory_repositories()
        elif backend == "postgres":
            from fhirlink.repositories.sql import create_sql_repositories

            _repositories = create_sql_repositories()
        else:
            raise ConfigurationError(f"Unknown STORAGE_BACKEND: {settings.STORAGE_BACKEND}")
        logger.info("repositories_initialized", backend=backend)
    return _repositories


def set_repositories(repositories: Optional[Repositories]) -> None:
    """Replace the active bundle (None resets to lazy initialization)."""
    global _repositories
    _repositories = repositories


__all__ = ["Repositories", "get_repositories", "set_repositories"]
