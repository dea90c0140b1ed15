"""Pytest configuration and shared fixtures."""
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base, get_db
from app.main import app
from app.models.domain import User, Item, Reservation
from app.models.audit import AuditLog
from app.models.enums import ItemStatus, ReservationStatus, UserRole

NOW = datetime(2026, 10, 19, 12, 0, 0)


@pytest.fixture
def engine():
    """Fresh in-memory database shared by every connection of one test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False)
    session = TestingSessionLocal()

    yield session

    session.close()


@pytest.fixture
def other_session(engine):
    """A second, independent session on the same database, for concurrent writers."""
    session = sessionmaker(bind=engine, autoflush=False)()

    yield session

    session.close()


def commit_rival_status(session, item_id, status):
    """Change an item's status from another session, bumping its version."""
    rival = session.get(Item, item_id)
    rival.status = status
    session.commit()


@pytest.fixture
def client(engine):
    """API client bound to the test database."""
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def staff_user(db_session):
    user = User(email="staff@example.org", name="Sam Staff", role=UserRole.STAFF)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def borrower(db_session):
    user = User(email="bo@example.org", name="Bo Borrower", role=UserRole.BORROWER, trust_score=100.0)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def make_item(db_session):
    def _make(name="Camera", status=ItemStatus.AVAILABLE, category="AV"):
        item = Item(name=name, category=category, status=status)
        db_session.add(item)
        db_session.commit()
        return item
    return _make


@pytest.fixture
def item(make_item):
    return make_item()


@pytest.fixture
def make_reservation(db_session, borrower):
    def _make(item, status=ReservationStatus.PENDING, end_date=None, user=None, start_date=None):
        end = end_date or NOW + timedelta(days=3)
        reservation = Reservation(
            item_id=item.id,
            user_id=(user or borrower).id,
            start_date=start_date or end - timedelta(days=7),
            end_date=end,
            status=status
        )
        db_session.add(reservation)
        db_session.commit()
        db_session.refresh(item)
        return reservation
    return _make


def audit_count(db_session, action=None, entity_id=None):
    query = db_session.query(AuditLog)
    if action is not None:
        query = query.filter(AuditLog.action == action)
    if entity_id is not None:
        query = query.filter(AuditLog.entity_id == str(entity_id))
    return query.count()
