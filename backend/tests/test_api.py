"""API endpoint tests using FastAPI TestClient."""
import sys
import os
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fastapi.testclient import TestClient
from main import app
from socket_manager import socket_manager
import config


@pytest.fixture(autouse=True)
def clear_state():
    """Clear in-memory state before each test."""
    socket_manager.registry.matches.clear()
    socket_manager.registry.connection_index.clear()
    yield
    socket_manager.registry.matches.clear()
    socket_manager.registry.connection_index.clear()


client = TestClient(app)


# ---------------------------------------------------------------------------
# Health & Root
# ---------------------------------------------------------------------------

class TestHealthEndpoints:
    def test_root(self):
        res = client.get("/")
        assert res.status_code == 200
        assert "running" in res.json()["message"].lower()

    def test_health(self):
        res = client.get("/health")
        assert res.status_code == 200
        assert res.json() == {"status": "healthy", "matches": 0}

    def test_health_counts_matches(self):
        socket_manager.registry.create_match("c-alice", "Alice")
        assert client.get("/health").json()["matches"] == 1


class TestCategories:
    def test_categories(self):
        data = client.get("/categories").json()
        assert "science" in data["categories"]
        assert data["difficulties"] == list(config.VALID_DIFFICULTIES)


class TestDebugMatches:
    def test_empty(self):
        assert client.get("/debug/matches").json() == {"matches": []}

    def test_summary_hides_secrets(self):
        questions = [{"id": "q-1", "question": "Secret question text?",
                      "options": ["A", "B", "C", "D"], "correctIndex": 3}]
        match = socket_manager.registry.create_match("c-alice", "Alice", {}, questions)
        res = client.get("/debug/matches")
        assert res.status_code == 200
        [summary] = res.json()["matches"]
        assert summary["id"] == match.id
        assert summary["players"][0]["name"] == "Alice"
        body = res.text
        assert "Secret question text" not in body
        assert "c-alice" not in body
        assert "correctIndex" not in body
