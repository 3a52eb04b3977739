"""Shared fixtures: an in-memory database per test."""

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from wealthsync.core.brokers.encryption import CredentialEncryptor
from wealthsync.db.database import build_engine
from wealthsync.db.models import Account, Base, BrokerConnection, User

TEST_SECRET = "test-secret-that-is-at-least-32-chars"


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def user(db):
    user = User(email="user@localhost")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def encryptor():
    return CredentialEncryptor(TEST_SECRET)


@pytest.fixture
def make_account(db, user):
    def _make(name="Nordnet Depot", currency="DKK"):
        account = Account(user_id=user.id, name=name, currency=currency)
        db.add(account)
        db.commit()
        return account

    return _make


@pytest.fixture
def nordnet_connection(db, user):
    connection = BrokerConnection(
        user_id=user.id,
        broker_type="nordnet",
        country="dk",
        username="mitid-user",
    )
    db.add(connection)
    db.commit()
    return connection


@pytest.fixture
def saxo_connection(db, user):
    connection = BrokerConnection(
        user_id=user.id,
        broker_type="saxo",
        app_key="app-key",
        app_secret="app-secret",
        redirect_uri="http://localhost:8000/api/brokers/saxo/callback",
    )
    db.add(connection)
    db.commit()
    return connection
