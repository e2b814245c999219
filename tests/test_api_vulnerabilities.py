"""
tests/test_api_vulnerabilities.py -- Integration tests for /api/v1/vulnerabilities.

Coverage:
  - listing requires login and shows each demo's configured level
  - running a demo requires login and a CSRF token
  - the configured level picks the variant (same input, different outcome)
  - a level change by an admin is visible on the very next run
  - unknown demo -> 404 not_found
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import USER_PASSWORD, USER_USERNAME, api_login
from core.models import KNOWN_VULNERABILITIES

TAUTOLOGY = "1' OR '1'='1"


@pytest.fixture
def customer(api_client: TestClient) -> tuple[TestClient, dict]:
    token = api_login(api_client, USER_USERNAME, USER_PASSWORD)
    return api_client, {"X-CSRF-Token": token}


@pytest.fixture(autouse=True)
def _reset_levels(api_services):
    yield
    api_services.levels.reset_all(None)


class TestListing:
    def test_requires_login(self, api_client: TestClient) -> None:
        assert api_client.get("/api/v1/vulnerabilities").status_code == 401

    def test_lists_demos_with_levels(self, customer, api_services) -> None:
        client, _ = customer
        api_services.levels.set_level("csrf", "high", None)
        resp = client.get("/api/v1/vulnerabilities")
        assert resp.status_code == 200
        rows = {r["id"]: r for r in resp.json()}
        assert set(rows) == set(KNOWN_VULNERABILITIES)
        assert rows["csrf"]["level"] == "high"
        assert rows["sql_injection"]["title"] == "SQL Injection"


class TestRunDemo:
    def test_requires_login(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/vulnerabilities/sql_injection", json={"params": {"id": "1"}})
        assert resp.status_code == 401

    def test_requires_csrf(self, customer) -> None:
        client, _ = customer
        resp = client.post("/api/v1/vulnerabilities/sql_injection", json={"params": {"id": "1"}})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "csrf_failed"

    def test_low_level_is_injectable(self, customer) -> None:
        client, headers = customer
        resp = client.post("/api/v1/vulnerabilities/sql_injection", json={"params": {"id": TAUTOLOGY}}, headers=headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["level"] == "low"
        assert body["executed"] is True
        assert len(body["rows"]) == 4

    def test_level_change_applies_to_next_run(self, customer, api_services) -> None:
        client, headers = customer
        api_services.levels.set_level("sql_injection", "impossible", None)
        resp = client.post("/api/v1/vulnerabilities/sql_injection", json={"params": {"id": TAUTOLOGY}}, headers=headers)
        body = resp.json()
        assert body["level"] == "impossible"
        assert body["blocked"] is True
        assert body["rows"] == []

    def test_xss_output_at_each_end(self, customer, api_services) -> None:
        client, headers = customer
        payload = {"params": {"name": "<script>alert(1)</script>"}}
        low = client.post("/api/v1/vulnerabilities/xss_reflected", json=payload, headers=headers).json()
        api_services.levels.set_level("xss_reflected", "impossible", None)
        safe = client.post("/api/v1/vulnerabilities/xss_reflected", json=payload, headers=headers).json()
        assert "<script>" in low["html"]
        assert "&lt;script&gt;" in safe["html"]

    def test_csrf_demo_state_stays_in_session(self, customer) -> None:
        client, headers = customer
        resp = client.post(
            "/api/v1/vulnerabilities/csrf",
            json={"params": {"password_new": "pwned123", "password_conf": "pwned123"}},
            headers=headers,
        )
        assert resp.json()["executed"] is True
        assert resp.json()["html"] == "<p>Password changed.</p>"

    def test_brute_force_high_limits_session(self, customer, api_services) -> None:
        client, headers = customer
        api_services.levels.set_level("brute_force", "high", None)
        guess = {"params": {"username": "admin", "password": "guess"}}
        for _ in range(3):
            assert client.post("/api/v1/vulnerabilities/brute_force", json=guess, headers=headers).json()["blocked"] is False
        limited = client.post("/api/v1/vulnerabilities/brute_force", json=guess, headers=headers).json()
        assert limited["blocked"] is True
        assert limited["detail"] == "limited"

    def test_unknown_demo(self, customer) -> None:
        client, headers = customer
        resp = client.post("/api/v1/vulnerabilities/file_upload", json={"params": {}}, headers=headers)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_unknown_demo_still_requires_login(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/vulnerabilities/file_upload", json={"params": {}})
        assert resp.status_code == 401
