from __future__ import annotations

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from passlib.hash import bcrypt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from taskhub import auth, config, email_utils, models, ratelimit
from taskhub.database import Base, get_db
from taskhub.main import app

PASSWORD = "secret-password"


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def db_session(engine):
    """
    One session shared by the test body and every request the app serves,
    so assertions see exactly what the endpoints committed.
    """
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


@pytest.fixture()
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    ratelimit.reset()
    yield
    ratelimit.reset()


@pytest.fixture()
def outbox(monkeypatch):
    """Capture outgoing mail instead of logging it."""
    sent = []
    monkeypatch.setattr(config, "MAIL_TRANSPORT", "console")
    monkeypatch.setattr(
        email_utils, "fake_send_email",
        lambda to, subject, body: sent.append({"to": to, "subject": subject, "body": body}),
    )
    return sent


@pytest.fixture()
def make_user(db_session):
    counter = {"n": 0}

    def _make(name=None, email=None, role=models.ROLE_USER, verified=True, password=PASSWORD):
        counter["n"] += 1
        n = counter["n"]
        user = models.User(
            name=name or f"User {n}",
            email=email or f"user{n}@example.com",
            hashed_password=bcrypt.hash(password),
            role=role,
            email_verified_at=datetime.now(timezone.utc) if verified else None,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture()
def user(make_user):
    return make_user(name="Regular User", email="user@example.com")


@pytest.fixture()
def other_user(make_user):
    return make_user(name="Other User", email="other@example.com")


@pytest.fixture()
def admin(make_user):
    return make_user(name="Admin User", email="admin@example.com", role=models.ROLE_ADMIN)


@pytest.fixture()
def headers_for(db_session):
    def _headers(user):
        token = auth.issue_token(db_session, user)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def make_task(db_session):
    """Insert a task directly, bypassing request validation (e.g. past due dates)."""

    def _make(owner, title="Task", description=None, status=models.STATUS_PENDING, due_date=None, tags=()):
        task = models.Task(
            user_id=owner.id, title=title, description=description, status=status, due_date=due_date,
        )
        task.tags = [models.Tag(name=name) for name in tags]
        db_session.add(task)
        db_session.commit()
        db_session.refresh(task)
        return task

    return _make
