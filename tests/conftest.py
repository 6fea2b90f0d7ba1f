import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.database import Base, enable_sqlite_savepoints
from backend.app.models import User
from backend.app.bank_integration.encryption import TokenEncryption
from backend.app.bank_integration.reconciler import LedgerReconciler

from tests.factories import FakeProvider


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def _make_user(db, email):
    user = User(email=email, hashed_password="not-a-real-hash", full_name="Test User")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def user(db):
    return _make_user(db, "alice@example.com")


@pytest.fixture
def other_user(db):
    return _make_user(db, "bob@example.com")


@pytest.fixture
def encryption():
    return TokenEncryption("test-encryption-key")


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def reconciler(db, provider, encryption):
    return LedgerReconciler(db, provider, encryption)
