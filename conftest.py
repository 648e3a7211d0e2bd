"""
Conftest for ChatRelay tests.

Store and relay tests open their own in-memory database. The `client`
fixture runs the FastAPI app in-process (lifespan included) against a
throwaway database file, so no server needs to be started.
"""
import pytest
from fastapi.testclient import TestClient

import chatrelay.db.database as dbmod


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(dbmod, "DB_PATH", str(tmp_path / "relay_test.db"))
    monkeypatch.setattr(dbmod, "_db", None)
    from chatrelay.main import app
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_user(client):
    """Create a user over HTTP and return its JSON (id, display_name, organization_id, token)."""
    def _make(display_name: str, organization_id: str = "acme") -> dict:
        r = client.post("/api/users", json={"display_name": display_name, "organization_id": organization_id})
        assert r.status_code == 201, r.text
        return r.json()
    return _make
