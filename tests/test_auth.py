import pytest
from sqlalchemy import event
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import SQLAlchemyError

from taskhub import accounts, auth, config, models, schemas, verification
from taskhub.errors import Unauthenticated

from .conftest import PASSWORD


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def login(client, email, password=PASSWORD):
    return client.post("/auth/login", json={"email": email, "password": password})


# signup

def test_signup_creates_unverified_user_and_sends_verification(client, db_session, outbox):
    response = client.post("/auth/signup", json={
        "name": "Jane Doe",
        "email": "jane@example.com",
        "password": "password123",
        "password_confirmation": "password123",
    })

    assert response.status_code == 201
    data = response.json()
    assert data["requires_verification"] is True
    assert data["token"] is None
    assert data["user"]["role"] == "user"
    assert data["user"]["email_verified"] is False

    user = db_session.query(models.User).filter_by(email="jane@example.com").one()
    assert user.email_verification_token
    assert user.hashed_password != "password123"

    assert len(outbox) == 1
    assert outbox[0]["to"] == "jane@example.com"
    assert f"id={user.id}" in outbox[0]["body"]
    assert user.email_verification_token in outbox[0]["body"]


def test_signup_rejects_duplicate_email(client, user, outbox):
    response = client.post("/auth/signup", json={
        "name": "Someone", "email": user.email, "password": "password123",
    })

    assert response.status_code == 422
    assert "email" in response.json()["errors"]
    assert outbox == []


def test_signup_validates_fields(client, outbox):
    response = client.post("/auth/signup", json={"name": "", "email": "not-an-email", "password": "short"})

    assert response.status_code == 422
    body = response.json()
    assert body["message"] == "Validation failed"
    assert {"name", "email", "password"} <= set(body["errors"])


def test_signup_rejects_mismatched_confirmation(client, outbox):
    response = client.post("/auth/signup", json={
        "name": "Jane", "email": "jane@example.com",
        "password": "password123", "password_confirmation": "password124",
    })

    assert response.status_code == 422
    assert "password_confirmation" in response.json()["errors"]


def test_signup_leaves_no_user_when_token_write_fails(client, db_session, outbox, monkeypatch):
    def broken_assign_token(user):
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(verification, "assign_token", broken_assign_token)

    response = client.post("/auth/signup", json={
        "name": "Jane", "email": "jane@example.com", "password": "password123",
    })

    assert response.status_code == 500
    assert response.json()["message"] == "Failed to create account"
    assert db_session.query(models.User).count() == 0
    assert outbox == []


def test_register_admin_is_verified_and_gets_token(db_session, outbox):
    data = schemas.UserCreate(name="Root", email="root@example.com", password="password123")

    user, token = accounts.register(db_session, None, data, role=models.ROLE_ADMIN)

    assert user.is_admin
    assert user.email_verified_at is not None
    assert token
    assert auth.current_user(db_session, token).id == user.id
    assert outbox == []


def test_ensure_admin_account_uses_configuration(db_session, monkeypatch, outbox):
    monkeypatch.setattr(config, "ADMIN_EMAIL", "boss@example.com")
    monkeypatch.setattr(config, "ADMIN_PASSWORD", "password123")

    admin = accounts.ensure_admin_account(db_session)
    again = accounts.ensure_admin_account(db_session)

    assert admin.role == models.ROLE_ADMIN
    assert again.id == admin.id
    assert db_session.query(models.User).count() == 1


def test_ensure_admin_account_skipped_without_configuration(db_session, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_EMAIL", None)
    monkeypatch.setattr(config, "ADMIN_PASSWORD", None)

    assert accounts.ensure_admin_account(db_session) is None


def test_ensure_admin_account_rejects_short_password(db_session, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_EMAIL", "boss@example.com")
    monkeypatch.setattr(config, "ADMIN_PASSWORD", "short")

    assert accounts.ensure_admin_account(db_session) is None
    assert db_session.query(models.User).count() == 0


# login

def test_login_success_returns_token_and_updates_last_login(client, user):
    response = login(client, user.email)

    assert response.status_code == 200
    data = response.json()
    assert data["token"]
    assert data["token_type"] == "bearer"
    assert data["user"]["id"] == user.id
    assert data["user"]["last_login_at"] is not None


def test_login_with_wrong_password(client, user):
    response = login(client, user.email, "wrong-password")

    assert response.status_code == 401
    assert response.json()["message"] == "Invalid credentials"


def test_login_with_unknown_email(client):
    response = login(client, "nobody@example.com")

    assert response.status_code == 401
    assert response.json()["message"] == "Invalid credentials"


def test_unknown_email_still_checks_a_password_hash(client, monkeypatch):
    checked = []
    real_verify = auth.verify_password

    def recording_verify(plain, hashed):
        checked.append(hashed)
        return real_verify(plain, hashed)

    monkeypatch.setattr(auth, "verify_password", recording_verify)

    assert login(client, "nobody@example.com").status_code == 401
    assert checked == [auth.DUMMY_HASH]


def test_login_requires_verified_email(client, make_user):
    unverified = make_user(email="new@example.com", verified=False)

    response = login(client, unverified.email)

    assert response.status_code == 403
    body = response.json()
    assert body["requires_verification"] is True
    assert body["user_id"] == unverified.id


def test_unverified_with_wrong_password_gets_invalid_credentials(client, make_user):
    unverified = make_user(email="new@example.com", verified=False)

    response = login(client, unverified.email, "wrong-password")

    assert response.status_code == 401


def test_admin_logs_in_without_verification_timestamp(client, make_user):
    admin = make_user(email="root@example.com", role=models.ROLE_ADMIN, verified=False)

    response = login(client, admin.email)

    assert response.status_code == 200


def test_login_revokes_previous_tokens(client, db_session, user):
    first = login(client, user.email).json()["token"]
    assert client.get("/auth/profile", headers=bearer(first)).status_code == 200

    second = login(client, user.email).json()["token"]

    assert client.get("/auth/profile", headers=bearer(first)).status_code == 401
    assert client.get("/auth/profile", headers=bearer(second)).status_code == 200
    assert db_session.query(models.AccessToken).filter_by(user_id=user.id).count() == 1


def test_login_locks_user_row_before_revoking_tokens(db_session, user):
    email = user.email
    seen = []

    def record(state):
        if state.is_delete:
            seen.append(f"delete {state.statement.table.name}")
        elif state.is_select and "FOR UPDATE" in str(state.statement.compile(dialect=postgresql.dialect())):
            seen.append("lock users")

    event.listen(db_session, "do_orm_execute", record)
    try:
        auth.login(db_session, email, PASSWORD)
    finally:
        event.remove(db_session, "do_orm_execute", record)

    assert seen == ["lock users", "delete access_tokens"]


def test_login_does_not_touch_other_users_sessions(client, user, other_user, headers_for):
    other_headers = headers_for(other_user)

    login(client, user.email)

    assert client.get("/auth/profile", headers=other_headers).status_code == 200


# sessions

def test_profile_requires_token(client):
    response = client.get("/auth/profile")

    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Bearer"


def test_profile_rejects_garbage_token(client):
    assert client.get("/auth/profile", headers=bearer("not-a-jwt")).status_code == 401


def test_profile_returns_current_user(client, user, headers_for):
    response = client.get("/auth/profile", headers=headers_for(user))

    assert response.status_code == 200
    assert response.json()["user"]["email"] == user.email


def test_logout_revokes_only_the_presented_token(client, user, headers_for):
    first = headers_for(user)
    second = headers_for(user)

    response = client.post("/auth/logout", headers=first)

    assert response.status_code == 200
    assert client.get("/auth/profile", headers=first).status_code == 401
    assert client.get("/auth/profile", headers=second).status_code == 200


def test_logout_twice_is_harmless(db_session, user):
    token = auth.issue_token(db_session, user)
    spare = auth.issue_token(db_session, user)

    assert auth.logout(db_session, token) is True
    assert auth.logout(db_session, token) is False
    assert auth.current_user(db_session, spare).id == user.id


def test_token_whose_row_belongs_to_someone_else_is_rejected(db_session, user, other_user):
    token = auth.issue_token(db_session, user)
    row = db_session.query(models.AccessToken).filter_by(user_id=user.id).one()
    row.user_id = other_user.id
    db_session.commit()

    with pytest.raises(Unauthenticated):
        auth.current_user(db_session, token)
