"""Shared fixtures: an in-memory MongoDB, a fake token verifier and an app."""

from __future__ import annotations

import datetime

import mongomock
import pytest
from fastapi.testclient import TestClient

from config import Settings
from errors import Unauthenticated
from identity import Identity
from loans import LoanStore
from main import create_app
from users import UserDirectory

TOKENS = {
    "bob-token": "bob@example.com",
    "olive-token": "olive@example.com",
    "mia-token": "mia@example.com",
    "ada-token": "ada@example.com",
    "ghost-token": "ghost@example.com",
}

SEED_USERS = [
    {"email": "bob@example.com", "role": "borrower", "status": "approved", "name": "Bob"},
    {"email": "olive@example.com", "role": "borrower", "status": "pending", "name": "Olive"},
    {"email": "mia@example.com", "role": "manager", "status": "approved", "name": "Mia"},
    {"email": "ada@example.com", "role": "admin", "status": "approved", "name": "Ada"},
]


class FakeVerifier:
    """Maps known tokens to identities; anything else is rejected."""

    def __init__(self, tokens):
        self.tokens = dict(tokens)

    def verify(self, token: str) -> Identity:
        if token not in self.tokens:
            raise Unauthenticated()
        return Identity(email=self.tokens[token])


class TickingClock:
    """Returns a strictly increasing timestamp on every call."""

    def __init__(self) -> None:
        self.now = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)

    def __call__(self) -> datetime.datetime:
        self.now += datetime.timedelta(seconds=1)
        return self.now


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def db():
    return mongomock.MongoClient()["lending_test"]


@pytest.fixture()
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture()
def users(db, clock) -> UserDirectory:
    return UserDirectory(db["users"], clock=clock)


@pytest.fixture()
def loans(db, clock) -> LoanStore:
    return LoanStore(db["loans"], clock=clock)


@pytest.fixture()
def seeded_db(db):
    db["users"].insert_many([dict(u) for u in SEED_USERS])
    return db


@pytest.fixture()
def app(seeded_db, clock):
    application = create_app(settings=Settings(), db=seeded_db, verifier=FakeVerifier(TOKENS))
    services = application.state.services
    services.loans._clock = clock
    services.users._clock = clock
    return application


@pytest.fixture()
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def store(app) -> LoanStore:
    return app.state.services.loans
