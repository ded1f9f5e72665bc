"""
Pytest fixtures: an in-memory Mongo database, a frozen clock, a recording
notifier, a workflow engine wired to all three, and an API client.
"""
from datetime import datetime, timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import create_access_token
from database import get_db
from main import app, get_engine
from notifier import Notifier
from schemas import ADMIN, DONOR, RECIPIENT
from workflow import WorkflowEngine

NOW = datetime(2026, 3, 1, 10, 0, 0)


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)

    def kinds(self):
        return [e.kind for e in self.events]


@pytest.fixture
def mongo():
    return mongomock.MongoClient()["medshare_test"]


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(mongo, notifier, clock):
    return WorkflowEngine(mongo, notifier=notifier, clock=clock)


def add_user(mongo, role, name, email, password_hash="not-a-real-hash", is_active=True):
    result = mongo["user"].insert_one({
        "name": name,
        "email": email,
        "password_hash": password_hash,
        "role": role,
        "is_active": is_active,
        "created_at": NOW,
    })
    return str(result.inserted_id)


@pytest.fixture
def users(mongo):
    return {
        "donor": add_user(mongo, DONOR, "Dana Donor", "dana@medshare.org"),
        "donor2": add_user(mongo, DONOR, "Dev Donor", "dev@medshare.org"),
        "recipient": add_user(mongo, RECIPIENT, "Rae Recipient", "rae@medshare.org"),
        "recipient2": add_user(mongo, RECIPIENT, "Rio Recipient", "rio@medshare.org"),
        "admin": add_user(mongo, ADMIN, "Ada Admin", "ada@medshare.org"),
    }


def expiry(days: int) -> datetime:
    return datetime(NOW.year, NOW.month, NOW.day) + timedelta(days=days)


def auth_header(user_id: str, role: str) -> dict:
    token = create_access_token({"sub": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(mongo, engine):
    app.dependency_overrides[get_db] = lambda: mongo
    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def headers(users):
    return {
        "donor": auth_header(users["donor"], DONOR),
        "donor2": auth_header(users["donor2"], DONOR),
        "recipient": auth_header(users["recipient"], RECIPIENT),
        "recipient2": auth_header(users["recipient2"], RECIPIENT),
        "admin": auth_header(users["admin"], ADMIN),
    }
