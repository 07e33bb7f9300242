# tests/api/test_auth_api.py
"""
HTTP tests for sign-in and admin account management

Run with: pytest tests/api/test_auth_api.py -v
"""

from datetime import datetime
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from app.auth import hash_password, verify_password, decode_access_token, get_current_user, get_current_admin_user
from app.database import get_db
from app.main import app
from app.models import User

PASSWORD = "correct-horse-battery"


def make_user(email="admin@example.com", role="admin", is_active=True, password=PASSWORD):
    return User(
        id=uuid4(),
        email=email,
        password_hash=hash_password(password),
        full_name=email.split("@")[0].title(),
        role=role,
        is_active=is_active,
        created_at=datetime(2025, 1, 1),
    )


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def admin():
    return make_user()


@pytest.fixture
def client(mock_db, admin):
    async def override_db():
        yield mock_db

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_current_user] = lambda: admin
    app.dependency_overrides[get_current_admin_user] = lambda: admin

    yield TestClient(app)

    app.dependency_overrides.clear()


# ============================================================================
# TEST: Login
# ============================================================================

class TestLogin:
    """Test password sign-in"""

    def test_login_returns_token_for_user(self, client, mock_db, make_scalars_result):
        editor = make_user("editor@example.com", role="editor")
        mock_db.execute.return_value = make_scalars_result([editor])

        response = client.post("/api/auth/login", json={"email": "Editor@Example.com", "password": PASSWORD})

        assert response.status_code == 200
        body = response.json()
        assert body["token_type"] == "bearer"
        assert decode_access_token(body["access_token"])["sub"] == "editor@example.com"
        assert editor.last_login is not None
        mock_db.commit.assert_awaited_once()

    def test_wrong_password_is_rejected(self, client, mock_db, make_scalars_result):
        mock_db.execute.return_value = make_scalars_result([make_user()])

        response = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "not-the-password"})

        assert response.status_code == 401
        mock_db.commit.assert_not_awaited()

    def test_unknown_email_is_rejected(self, client, mock_db, make_scalars_result):
        mock_db.execute.return_value = make_scalars_result([])

        response = client.post("/api/auth/login", json={"email": "nobody@example.com", "password": PASSWORD})

        assert response.status_code == 401

    def test_inactive_account_is_forbidden(self, client, mock_db, make_scalars_result):
        mock_db.execute.return_value = make_scalars_result([make_user(is_active=False)])

        response = client.post("/api/auth/login", json={"email": "admin@example.com", "password": PASSWORD})

        assert response.status_code == 403


# ============================================================================
# TEST: Current user
# ============================================================================

class TestCurrentUser:
    """Test the signed-in user's own endpoints"""

    def test_me(self, client, admin):
        response = client.get("/api/auth/me")

        assert response.status_code == 200
        assert response.json()["email"] == admin.email
        assert "password_hash" not in response.json()

    def test_change_password(self, client, mock_db, admin):
        response = client.post("/api/auth/me/password", json={
            "current_password": PASSWORD,
            "new_password": "a-much-longer-secret",
        })

        assert response.status_code == 204
        assert verify_password("a-much-longer-secret", admin.password_hash)
        mock_db.commit.assert_awaited_once()

    def test_change_password_requires_current_password(self, client, mock_db):
        response = client.post("/api/auth/me/password", json={
            "current_password": "wrong-password",
            "new_password": "a-much-longer-secret",
        })

        assert response.status_code == 400
        mock_db.commit.assert_not_awaited()

    def test_missing_token_is_unauthorized(self, mock_db):
        async def override_db():
            yield mock_db

        app.dependency_overrides[get_db] = override_db
        try:
            response = TestClient(app).get("/api/auth/me")
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 401


# ============================================================================
# TEST: Account management
# ============================================================================

class TestUserManagement:
    """Test admin-only account endpoints"""

    def test_list_users(self, client, mock_db, make_scalars_result, admin):
        mock_db.execute.return_value = make_scalars_result([admin, make_user("viewer@example.com", role="viewer")])

        response = client.get("/api/auth/users")

        assert [u["role"] for u in response.json()] == ["admin", "viewer"]

    def test_create_user(self, client, mock_db, make_scalars_result):
        mock_db.execute.return_value = make_scalars_result([])

        async def refresh(user):
            user.id = uuid4()
            user.created_at = datetime(2025, 2, 1)
        mock_db.refresh.side_effect = refresh

        response = client.post("/api/auth/users", json={
            "email": "New.Editor@example.com",
            "password": "twelve-chars-min",
            "full_name": "New Editor",
            "role": "editor",
        })

        assert response.status_code == 201
        created = mock_db.add.call_args[0][0]
        assert created.email == "new.editor@example.com"
        assert verify_password("twelve-chars-min", created.password_hash)

    def test_duplicate_email_is_rejected(self, client, mock_db, make_scalars_result):
        mock_db.execute.return_value = make_scalars_result([make_user("taken@example.com")])

        response = client.post("/api/auth/users", json={
            "email": "taken@example.com",
            "password": "twelve-chars-min",
            "full_name": "Someone",
        })

        assert response.status_code == 400
        mock_db.add.assert_not_called()

    def test_invalid_role_is_rejected(self, client):
        response = client.post("/api/auth/users", json={
            "email": "x@example.com",
            "password": "twelve-chars-min",
            "full_name": "X",
            "role": "owner",
        })

        assert response.status_code == 422

    def test_update_role_and_reset_password(self, client, mock_db):
        viewer = make_user("viewer@example.com", role="viewer")
        mock_db.get.return_value = viewer

        response = client.patch(f"/api/auth/users/{viewer.id}", json={
            "role": "editor",
            "password": "reset-by-the-admin",
        })

        assert response.status_code == 200
        assert viewer.role == "editor"
        assert verify_password("reset-by-the-admin", viewer.password_hash)

    def test_deactivate_user(self, client, mock_db):
        editor = make_user("editor@example.com", role="editor")
        mock_db.get.return_value = editor

        response = client.patch(f"/api/auth/users/{editor.id}", json={"is_active": False})

        assert response.json()["is_active"] is False

    def test_admin_cannot_deactivate_self(self, client, mock_db, admin):
        mock_db.get.return_value = admin

        response = client.patch(f"/api/auth/users/{admin.id}", json={"is_active": False})

        assert response.status_code == 400
        assert admin.is_active is True
        mock_db.commit.assert_not_awaited()

    def test_update_unknown_user(self, client):
        response = client.patch(f"/api/auth/users/{uuid4()}", json={"role": "viewer"})

        assert response.status_code == 404

    def test_commit_failure_rolls_back(self, client, mock_db):
        editor = make_user("editor@example.com", role="editor")
        mock_db.get.return_value = editor
        mock_db.commit.side_effect = RuntimeError("deadlock")

        response = client.patch(f"/api/auth/users/{editor.id}", json={"full_name": "Renamed"})

        assert response.status_code == 500
        mock_db.rollback.assert_awaited_once()
