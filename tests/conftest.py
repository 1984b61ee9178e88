"""
Pytest fixtures for the personnel hub test suite.

Provides:
- An isolated in-memory SQLite database per test
- Factories for units, users, people and categories
- A FastAPI TestClient bound to the test session
- Fake document renderer and credential mail sender
"""
import os
import tempfile

# Settings are read at import time; pin them before the app is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("ENABLE_METRICS", "false")
os.environ.setdefault("ENABLE_EMAIL", "false")
os.environ.setdefault("RATE_LIMIT", "100000/minute")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("STORAGE_DIR", tempfile.mkdtemp(prefix="personnel-storage-"))

import itertools
from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from personnel.auth.security import create_access_token, get_password_hash
from personnel.db import Base, get_db
from personnel.models.models import Category, Person, Unit, User
from personnel.storage.local_provider import LocalStorageProvider


_seq = itertools.count(1)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def db(engine):
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def storage(tmp_path):
    return LocalStorageProvider(str(tmp_path / "storage"))


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def make_unit(db):
    def _make(code=None, name=None, parent=None):
        n = next(_seq)
        unit = Unit(code=code or f"U{n}", name=name or f"Unit {n}", parent_id=parent.id if parent else None)
        db.add(unit)
        db.commit()
        db.refresh(unit)
        return unit

    return _make


@pytest.fixture
def make_user(db):
    def _make(role="OPERATOR", unit=None, username=None, **kw):
        n = next(_seq)
        user = User(
            username=username or f"{role.lower()}{n}",
            email=f"{role.lower()}{n}@example.org",
            password_hash=get_password_hash("secret"),
            role=role,
            unit_id=unit.id if unit else None,
            **kw,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_person(db):
    def _make(unit, created_by=None, **kw):
        n = next(_seq)
        values = dict(
            service_no=f"SN{n:05d}",
            first_name="Arben",
            last_name=f"Hoxha{n}",
            grade_id="OR-4",
            unit_id=unit.id,
            status="ACTIVE",
            created_by=created_by.id if created_by else None,
            birth_date=date(1990, 5, 1),
            city="Tirana",
        )
        values.update(kw)
        person = Person(**values)
        db.add(person)
        db.commit()
        db.refresh(person)
        return person

    return _make


@pytest.fixture
def make_category(db):
    def _make(code="01-01", label=None, active=True):
        category = Category(code=code, label=label or f"Category {code}", active=active)
        db.add(category)
        db.commit()
        db.refresh(category)
        return category

    return _make


# =============================================================================
# Collaborators
# =============================================================================


class FakeRenderer:
    def __init__(self, fail=False):
        self.fail = fail
        self.snapshots = []

    def __call__(self, snapshot):
        if self.fail:
            raise RuntimeError("renderer exploded")
        self.snapshots.append(snapshot)
        return b"%PDF-1.4 fake " + snapshot["doc_no"].encode()


class FakeSender:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def __call__(self, **kwargs):
        if self.fail:
            raise ConnectionRefusedError("smtp down")
        self.sent.append(kwargs)


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def sender():
    return FakeSender()


# =============================================================================
# HTTP
# =============================================================================


@pytest.fixture
def client(db):
    from fastapi.testclient import TestClient
    from personnel.main import app

    def _override_db():
        yield db

    app.dependency_overrides[get_db] = _override_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_db, None)


def auth(user):
    return {"Authorization": f"Bearer {create_access_token(user)}"}


@pytest.fixture
def headers():
    return auth


@pytest.fixture
def failing_renderer():
    return FakeRenderer(fail=True)


@pytest.fixture
def failing_sender():
    return FakeSender(fail=True)
