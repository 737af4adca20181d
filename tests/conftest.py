"""
Pytest Configuration
--------------------
Shared fixtures for the gatekeeper test suite.

Every test gets:
- A clean environment (no GATEKEEPER_* variables leaking in from the shell)
- Fresh in-memory storage when it asks for db / store / engine / enforcer
"""

import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest

# Ensure project root is in path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from infra.database import MEMORY_DB, DatabaseManager
from security.engine import PermissionEngine
from security.relations import RelationStore
from security.scope import ScopeEnforcer


class FakeEmitter:
    """Collects emitted audit events instead of publishing them."""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    def emit(self, event: Dict[str, Any]) -> bool:
        self.events.append(dict(event))
        return True

    def flush(self, timeout: float = 0) -> bool:
        return True

    def close(self, timeout: float = 0) -> bool:
        return True


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch):
    """
    Strip GATEKEEPER_* variables for every test.

    A developer running the suite from an agent shell must not turn the
    operator into an agent.
    """
    import os

    for name in list(os.environ):
        if name.startswith("GATEKEEPER_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root path."""
    return PROJECT_ROOT


@pytest.fixture
def db():
    """Initialized in-memory database."""
    manager = DatabaseManager(MEMORY_DB)
    manager.initialize()
    yield manager
    manager.close()


@pytest.fixture
def store(db):
    return RelationStore(db)


@pytest.fixture
def engine(store):
    return PermissionEngine(store)


@pytest.fixture
def emitter():
    return FakeEmitter()


@pytest.fixture
def enforcer(engine, emitter):
    return ScopeEnforcer(engine, emitter)
