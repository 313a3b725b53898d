import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient

import main
from database import Database
from main import app


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(main, "DATABASE_PATH", str(tmp_path / "test.db"))
    monkeypatch.setattr(main, "UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setattr(main, "SEED_DEMO_USERS", True)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "direct.db"))
    database.init_schema()
    return database


@pytest.fixture
def signup(client):
    def _signup(email, role="customer", name="Test User", **extra):
        payload = {
            "name": name,
            "email": email,
            "password": "secret123",
            "role": role,
            "phone": "+250788111111",
            "location": "Musanze, Rwanda",
            **extra,
        }
        response = client.post("/api/auth/signup", json=payload)
        assert response.status_code == 200, response.text
        body = response.json()
        return body["user"], {"Authorization": f"Bearer {body['token']}"}
    return _signup


@pytest.fixture
def admin_headers(client):
    response = client.post("/api/auth/signin", json={"email": "admin@demo.com", "password": "password"})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def superadmin_headers(client):
    response = client.post("/api/auth/signin", json={"email": "superadmin@demo.com", "password": "password"})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def farmer(signup):
    return signup("jean@farm.rw", role="farmer", name="Jean Farmer")


@pytest.fixture
def customer(signup):
    return signup("alice@shop.rw", role="customer", name="Alice Buyer")


@pytest.fixture
def create_product(client):
    def _create(headers, **overrides):
        payload = {
            "name": "Free-range eggs",
            "category": "eggs",
            "price": 3200,
            "unit": "tray",
            "description": "Tray of 30 eggs",
            "stock": 50,
            **overrides,
        }
        response = client.post("/api/products", json=payload, headers=headers)
        assert response.status_code == 200, response.text
        return response.json()
    return _create
