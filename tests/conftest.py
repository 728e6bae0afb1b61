import asyncio
from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

import ledger
from advisor import OfflineAdvisor
from database import Base, build_engine, get_db
from hub import NotificationHub
from main import app
from ratelimit import limiter

PASSWORD = "correct-horse-battery"


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'budget_test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(
        autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
    )


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def owner(db):
    return ledger.create_user(db, "owner@example.com", "not-a-real-hash")


@pytest.fixture
def stranger(db):
    return ledger.create_user(db, "stranger@example.com", "not-a-real-hash")


@pytest.fixture
def plan(db, owner):
    return ledger.create_plan(
        db, owner.id, "November", 500000, date(2024, 11, 1), date(2024, 11, 30)
    )


@pytest.fixture
def hub():
    return NotificationHub(buffer_size=10)


@pytest.fixture
def client(session_factory, hub):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.hub = hub
    app.state.advisor = OfflineAdvisor()
    limiter.reset()
    yield TestClient(app)
    app.dependency_overrides.clear()


def register(client, email="owner@example.com", password=PASSWORD, name="Owner"):
    response = client.post(
        "/api/v1/auth/register",
        json={"email": email, "password": password, "name": name},
    )
    assert response.status_code == 201, response.text
    return response.json()


@pytest.fixture
def auth(client):
    """Registered user: returns (user id, headers)."""
    body = register(client)
    return body["user"]["id"], {"Authorization": f"Bearer {body['access_token']}"}


@pytest.fixture
def headers(auth):
    return auth[1]


def receive(channel, timeout=1):
    """Await one event from a hub channel outside of an event loop."""
    return asyncio.run(channel.receive(timeout))
