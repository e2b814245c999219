"""
tests/test_api_admin.py -- Integration tests for /api/v1/admin/* (admin role only).

Stores are module-scoped (api_services), so tests that change levels or users
put things back or work on throwaway records created through the store.

Coverage:
  - 401 anonymous, 403 for a customer, 403 csrf_failed on writes without a token
  - security levels: list, set, invalid level (422), idempotent set, reset
  - users: list/search, patch, delete, self-demotion and last-admin guards (409)
  - audit log records admin actions
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from auth.models import User
from auth.passwords import hash_password
from conftest import ADMIN_PASSWORD, ADMIN_USERNAME, USER_PASSWORD, USER_USERNAME, api_login
from core.models import KNOWN_VULNERABILITIES, Level


@pytest.fixture
def admin(api_client: TestClient) -> tuple[TestClient, dict]:
    token = api_login(api_client, ADMIN_USERNAME, ADMIN_PASSWORD)
    return api_client, {"X-CSRF-Token": token}


@pytest.fixture(autouse=True)
def _reset_levels(api_services):
    yield
    api_services.levels.reset_all(None)


class TestAccessControl:
    def test_anonymous_gets_401(self, api_client: TestClient) -> None:
        assert api_client.get("/api/v1/admin/security-levels").status_code == 401

    def test_customer_gets_403(self, api_client: TestClient) -> None:
        api_login(api_client, USER_USERNAME, USER_PASSWORD)
        resp = api_client.get("/api/v1/admin/users")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_write_without_csrf_gets_403(self, admin) -> None:
        client, _headers = admin
        resp = client.put("/api/v1/admin/security-levels/sql_injection", json={"level": "high"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "csrf_failed"

    def test_write_with_wrong_csrf_gets_403(self, admin) -> None:
        client, _headers = admin
        resp = client.post("/api/v1/admin/security-levels/reset", headers={"X-CSRF-Token": "0" * 64})
        assert resp.status_code == 403


class TestSecurityLevels:
    def test_list(self, admin) -> None:
        client, _ = admin
        resp = client.get("/api/v1/admin/security-levels")
        assert resp.status_code == 200
        assert [r["vulnerability_id"] for r in resp.json()] == list(KNOWN_VULNERABILITIES)
        assert {r["level"] for r in resp.json()} == {"low"}

    def test_set_level(self, admin, api_services) -> None:
        client, headers = admin
        resp = client.put("/api/v1/admin/security-levels/sql_injection", json={"level": "impossible"}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["level"] == "impossible"
        assert resp.json()["updated_by"] == api_services.admin_id
        assert api_services.levels.get_level("sql_injection") is Level.IMPOSSIBLE

    def test_invalid_level(self, admin, api_services) -> None:
        client, headers = admin
        resp = client.put("/api/v1/admin/security-levels/csrf", json={"level": "extreme"}, headers=headers)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "invalid_level"
        assert api_services.levels.get_level("csrf") is Level.LOW

    def test_set_same_level_twice(self, admin) -> None:
        client, headers = admin
        first = client.put("/api/v1/admin/security-levels/brute_force", json={"level": "high"}, headers=headers)
        second = client.put("/api/v1/admin/security-levels/brute_force", json={"level": "high"}, headers=headers)
        assert first.status_code == second.status_code == 200
        assert first.json()["updated_at"] == second.json()["updated_at"]

    def test_reset(self, admin, api_services) -> None:
        client, headers = admin
        api_services.levels.set_level("xss_reflected", "high", None)
        resp = client.post("/api/v1/admin/security-levels/reset", headers=headers)
        assert resp.status_code == 200
        assert resp.json() == {"reset": len(KNOWN_VULNERABILITIES)}
        assert api_services.levels.get_level("xss_reflected") is Level.LOW


class TestUsers:
    def test_list_and_search(self, admin) -> None:
        client, _ = admin
        resp = client.get("/api/v1/admin/users")
        assert resp.status_code == 200
        names = {u["username"] for u in resp.json()["users"]}
        assert {ADMIN_USERNAME, USER_USERNAME} <= names
        assert all("password_hash" not in u for u in resp.json()["users"])

        resp = client.get("/api/v1/admin/users", params={"search": "Liddell"})
        assert [u["username"] for u in resp.json()["users"]] == [USER_USERNAME]
        assert resp.json()["total"] == 1

    def test_patch_user(self, admin, api_services) -> None:
        client, headers = admin
        target = api_services.user_store.create_user(User(username="patchme", role="user"))
        resp = client.patch(
            f"/api/v1/admin/users/{target}", json={"status": "locked", "first_name": "Pat"}, headers=headers
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "locked"
        assert resp.json()["first_name"] == "Pat"

    def test_patch_rejects_unknown_role(self, admin) -> None:
        client, headers = admin
        resp = client.patch("/api/v1/admin/users/1", json={"role": "superuser"}, headers=headers)
        assert resp.status_code == 422

    def test_patch_duplicate_email(self, admin, api_services) -> None:
        client, headers = admin
        target = api_services.user_store.create_user(User(username="emailclash", role="user"))
        resp = client.patch(f"/api/v1/admin/users/{target}", json={"email": "alice@example.com"}, headers=headers)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "email_taken"

    def test_cannot_demote_self(self, admin, api_services) -> None:
        client, headers = admin
        resp = client.patch(f"/api/v1/admin/users/{api_services.admin_id}", json={"role": "user"}, headers=headers)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "self_modification"

    def test_cannot_delete_last_admin(self, api_client, api_services) -> None:
        """An admin whose own account was locked after login cannot remove the only active admin."""
        helper_id = api_services.user_store.create_user(
            User(username="helper", role="admin", password_hash=hash_password("helperpass1"))
        )
        try:
            token = api_login(api_client, "helper", "helperpass1")
            api_services.user_store.update_user(helper_id, status="locked")
            resp = api_client.delete(f"/api/v1/admin/users/{api_services.admin_id}", headers={"X-CSRF-Token": token})
            assert resp.status_code == 409
            assert resp.json()["error"]["code"] == "last_admin"
            assert api_services.user_store.get_by_id(api_services.admin_id) is not None
        finally:
            api_services.user_store.delete_user(helper_id)

    def test_delete_user(self, admin, api_services) -> None:
        client, headers = admin
        target = api_services.user_store.create_user(User(username="deleteme", role="user"))
        resp = client.delete(f"/api/v1/admin/users/{target}", headers=headers)
        assert resp.status_code == 200
        assert api_services.user_store.get_by_id(target) is None
        assert client.delete(f"/api/v1/admin/users/{target}", headers=headers).status_code == 404


class TestAudit:
    def test_admin_actions_are_recorded(self, admin) -> None:
        client, headers = admin
        client.put("/api/v1/admin/security-levels/csrf", json={"level": "medium"}, headers=headers)
        resp = client.get("/api/v1/admin/audit", params={"limit": 5})
        assert resp.status_code == 200
        events = [e["event"] for e in resp.json()]
        assert "security_level_changed" in events
        assert "login_success" in events
