import os
import pytest
from fastapi.testclient import TestClient

# Sätt AUTH_MODE=off innan app importeras så testerna inte kräver token
os.environ.setdefault("AUTH_MODE", "off")

from app.main import app
from fakes import FakeDB, FakeStorage


async def _no_indexes():
    return None


@pytest.fixture
def fake_db():
    return FakeDB()


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def client(monkeypatch, fake_db, fake_storage):
    monkeypatch.setattr("app.auth.AUTH_MODE", "off")
    monkeypatch.setattr("app.main.ensure_indexes", _no_indexes)
    monkeypatch.setattr("app.main.get_db", lambda: fake_db)
    monkeypatch.setattr("app.main.get_storage", lambda: fake_storage)
    monkeypatch.setattr("app.routers.files.get_db", lambda: fake_db)
    monkeypatch.setattr("app.routers.files.get_storage", lambda: fake_storage)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def authed_client(client, monkeypatch):
    """Klient med API-nyckelautentisering aktiverad."""
    monkeypatch.setattr("app.auth.AUTH_MODE", "apikey")
    monkeypatch.setattr("app.auth._API_KEY_MAP", {"test-secret-key": "testuser"})
    return client
