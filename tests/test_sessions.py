from fastapi.testclient import TestClient
from jose import jwt

from auth import MemorySessionStore, Session, read_session_token, sign_session_token
from schemas import UserType


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_session_expires():
    clock = FakeClock()
    store = MemorySessionStore(check_period=3600, clock=clock)
    store.set("abc", Session("u1", UserType.buyer), max_age=60)
    assert store.get("abc") == Session("u1", UserType.buyer)

    clock.now += 61
    assert store.get("abc") is None
    assert len(store) == 0


def test_expired_sessions_are_pruned_periodically():
    clock = FakeClock()
    store = MemorySessionStore(check_period=100, clock=clock)
    store.set("old", Session("u1", UserType.buyer), max_age=10)
    store.set("fresh", Session("u2", UserType.farmer), max_age=1000)

    clock.now += 50
    store.get("fresh")
    assert len(store) == 2

    clock.now += 60
    store.get("fresh")
    assert len(store) == 1


def test_destroy():
    store = MemorySessionStore()
    store.set("abc", Session("u1", UserType.farmer), max_age=60)
    store.destroy("abc")
    store.destroy("abc")
    assert store.get("abc") is None


def test_cookie_signing():
    assert read_session_token(sign_session_token("abc")) == "abc"
    assert read_session_token(None) is None
    forged = jwt.encode({"sid": "abc"}, "not-the-key", algorithm="HS256")
    assert read_session_token(forged) is None


def test_unexpected_errors_become_500(app, storage, monkeypatch):
    def broken():
        raise RuntimeError("connection reset")

    monkeypatch.setattr(storage, "get_categories", broken)
    client = TestClient(app, raise_server_exceptions=False)
    r = client.get("/api/categories")
    assert r.status_code == 500
    assert r.json() == {"message": "Server error"}
