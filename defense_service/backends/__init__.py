import logging
import os
from typing import Optional

from .mock_backend import MockBackend
from .openrouter_backend import OpenRouterBackend

logger = logging.getLogger(__name__)


def create_backend(backend_name: Optional[str] = None):
    """Builds the evaluator backend selected by EVALUATOR_BACKEND ("openrouter" or "mock")."""
    name = (backend_name or os.getenv("EVALUATOR_BACKEND", "openrouter") or "openrouter").lower().strip()

    if name == "mock":
        backend = MockBackend()
    else:
        backend = OpenRouterBackend()
        name = "openrouter"

    logger.info("Evaluator backend initialized: backend=%s, configured=%s", name, backend.is_configured)
    return backend
