import os
from datetime import datetime, timedelta, timezone

# keep the app off any real database and make bcrypt cheap
os.environ["DATABASE_URL"] = ""
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["APP_ENV"] = "production"

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from database import DocumentStore
from events import ErrorEmitter, PermissionErrorListener


class Clock:
    """Server timestamps one second apart, so ordering is deterministic."""

    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


class FakeAdvisor:
    def __init__(self, answer="Cut back on dining out.", fail=False):
        self.answer = answer
        self.fail = fail
        self.prompts = []

    def generate(self, prompt):
        self.prompts.append(prompt)
        if self.fail:
            raise RuntimeError("quota exceeded for key AIza-secret")
        return self.answer


@pytest.fixture
def mongo():
    return mongomock.MongoClient()["spendsense_test"]


@pytest.fixture
def store(mongo):
    return DocumentStore(mongo, clock=Clock())


@pytest.fixture
def errors():
    return ErrorEmitter()


@pytest.fixture
def advisor():
    return FakeAdvisor()


@pytest.fixture
def permission_listener():
    return PermissionErrorListener(debug=False)


@pytest.fixture
def client(store, advisor, permission_listener):
    emitter = ErrorEmitter()
    permission_listener.install(emitter)
    main.app.state.store = store
    main.app.state.errors = emitter
    main.app.state.permission_errors = permission_listener
    main.app.dependency_overrides[main.get_advisor] = lambda: advisor
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
    main.app.state.store = None


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def signup(client, store, email="ana@spendsense.io", password="secret123", verified=True, income=0, name="Ana Lima"):
    response = client.post("/auth/register", json={
        "email": email, "password": password, "display_name": name, "income": income,
    })
    assert response.status_code == 200, response.text
    if verified:
        user = store.find_user_by_email(email)
        token = main.create_action_token(user, main.VERIFY_PURPOSE)
        assert client.post("/auth/verify-email", json={"token": token}).status_code == 200
    user = store.find_user_by_email(email)
    return response.json()["access_token"], str(user["_id"])
