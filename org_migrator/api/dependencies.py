"""Orchestrator instance shared by the API routes."""

import threading
from typing import Optional

from ..orchestrator import MigrationOrchestrator

_orchestrator: Optional[MigrationOrchestrator] = None
_lock = threading.Lock()


def set_orchestrator(orchestrator: Optional[MigrationOrchestrator]) -> None:
    global _orchestrator
    with _lock:
        _orchestrator = orchestrator


def get_orchestrator() -> MigrationOrchestrator:
    """Return the configured orchestrator, building one from the environment on first use."""
    global _orchestrator
    with _lock:
        if _orchestrator is None:
            _orchestrator = MigrationOrchestrator.from_env()
        return _orchestrator
