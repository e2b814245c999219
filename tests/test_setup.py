"""
tests/test_setup.py -- First-run setup wizard (GET/POST /setup) on an empty database.

Uses its own stores with no users, so the setup_redirect middleware is active
when the client starts.

Coverage:
  - every page redirects to /setup while no user exists (health stays reachable)
  - setup form validation
  - POST /setup creates the admin, seeds levels and sample data, then 404s
"""

from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from bank.sample_data import SAMPLE_PASSWORD
from conftest import close_services, make_services, page_csrf, patch_lifespan, web_login


@pytest.fixture
def fresh_client() -> Generator[tuple[TestClient, object], None, None]:
    services = make_services("test_setup", with_users=False)
    limiter.reset()
    app.router.lifespan_context = patch_lifespan(services)
    with TestClient(app, follow_redirects=False) as client:
        yield client, services
    close_services(services)


class TestSetupWizard:
    def test_everything_redirects_to_setup(self, fresh_client) -> None:
        client, _ = fresh_client
        for path in ("/", "/login", "/admin", "/api/v1/auth/me"):
            resp = client.get(path)
            assert resp.status_code == 302
            assert resp.headers["location"] == "/setup"
        assert client.get("/api/v1/health").status_code == 200

    def test_validation_error_rerenders_form(self, fresh_client) -> None:
        client, services = fresh_client
        token = page_csrf(client, "/setup")
        resp = client.post(
            "/setup",
            data={"username": "root", "password": "short", "confirm_password": "short", "csrf_token": token},
        )
        assert resp.status_code == 400
        assert "at least 8" in resp.text
        assert not services.user_store.has_users()

    def test_setup_requires_csrf(self, fresh_client) -> None:
        client, services = fresh_client
        page_csrf(client, "/setup")
        resp = client.post("/setup", data={"username": "root", "password": "rootpass123", "confirm_password": "rootpass123"})
        assert resp.status_code == 403
        assert not services.user_store.has_users()

    def test_complete_setup_with_sample_data(self, fresh_client) -> None:
        client, services = fresh_client
        token = page_csrf(client, "/setup")
        resp = client.post(
            "/setup",
            data={
                "username": "root",
                "email": "root@example.com",
                "password": "rootpass123",
                "confirm_password": "rootpass123",
                "include_sample_data": "yes",
                "csrf_token": token,
            },
        )
        assert resp.status_code == 303
        assert resp.headers["location"] == "/login"

        root = services.user_store.find_by_username("root")
        assert root.role == "admin"
        assert services.user_store.find_by_username("gordonb") is not None
        assert services.bank.count_accounts() == 8
        done = client.get("/setup")
        assert done.status_code == 404
        assert "Error 404" in done.text

        web_login(client, "root", "rootpass123")
        assert client.get("/admin").status_code == 200

    def test_sample_customer_can_log_in(self, fresh_client) -> None:
        client, _ = fresh_client
        token = page_csrf(client, "/setup")
        client.post(
            "/setup",
            data={
                "username": "root",
                "password": "rootpass123",
                "confirm_password": "rootpass123",
                "include_sample_data": "yes",
                "csrf_token": token,
            },
        )
        web_login(client, "pablo", SAMPLE_PASSWORD)
        assert client.get("/").status_code == 200

    def test_setup_without_sample_data(self, fresh_client) -> None:
        client, services = fresh_client
        token = page_csrf(client, "/setup")
        client.post(
            "/setup",
            data={"username": "root", "password": "rootpass123", "confirm_password": "rootpass123", "csrf_token": token},
        )
        assert services.user_store.count() == 1
        assert services.bank.count_accounts() == 0
