"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
import sys
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")

import pytest

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app

from fakes import InMemoryDocumentStore

ADMIN_HEADERS = {"X-Admin-Key": os.environ["ADMIN_API_KEY"]}


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Lifespan is not run."""
    return TestClient(app)


@pytest.fixture
def admin_headers():
    return dict(ADMIN_HEADERS)


@pytest.fixture
def store():
    """Empty in-memory document store."""
    return InMemoryDocumentStore()
