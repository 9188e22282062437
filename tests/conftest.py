import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from auth import MemorySessionStore, get_session_store
from storage import Storage, get_storage

PASSWORD = "harvest123"


@pytest.fixture
def db():
    return mongomock.MongoClient()["marketplace_test"]


@pytest.fixture
def storage(db):
    storage = Storage(db)
    storage.ensure_indexes()
    return storage


@pytest.fixture
def session_store():
    return MemorySessionStore()


@pytest.fixture
def app(storage, session_store):
    main.app.dependency_overrides[get_storage] = lambda: storage
    main.app.dependency_overrides[get_session_store] = lambda: session_store
    yield main.app
    main.app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    return TestClient(app)


def user_payload(username, user_type, **extra):
    payload = {
        "username": username,
        "password": PASSWORD,
        "email": f"{username}@greenfields.in",
        "name": username.title(),
        "user_type": user_type,
    }
    payload.update(extra)
    return payload


@pytest.fixture
def login_as(app):
    """Register a user and return (client, user) with the session cookie set.

    Each call gets its own TestClient so cookie jars never mix.
    """
    def _login(username, user_type):
        c = TestClient(app)
        r = c.post("/api/auth/register", json=user_payload(username, user_type))
        assert r.status_code == 201, r.text
        r = c.post("/api/auth/login", json={"username": username, "password": PASSWORD})
        assert r.status_code == 200, r.text
        return c, r.json()["user"]
    return _login


@pytest.fixture
def category(storage):
    return storage.create_category({"name": "Vegetables", "description": "Fresh"})


@pytest.fixture
def add_product(category):
    def _add(farmer_client, **fields):
        payload = {
            "name": "Tomatoes",
            "price": 85,
            "unit": "kg",
            "available_quantity": 50,
            "min_order_quantity": 1,
            "category_id": category["id"],
        }
        payload.update(fields)
        r = farmer_client.post("/api/products", json=payload)
        assert r.status_code == 201, r.text
        return r.json()
    return _add
