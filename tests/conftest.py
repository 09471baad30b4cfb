"""Pytest fixtures for reviewer finder tests."""
import pytest
from fastapi.testclient import TestClient

from reviewer_finder.main import app


@pytest.fixture
def client() -> TestClient:
    """FastAPI test client."""
    return TestClient(app)
