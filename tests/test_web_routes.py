"""
tests/test_web_routes.py -- Integration tests for the server-rendered web UI (web/routes.py).

Uses web_client (follow_redirects=False) so redirect targets can be asserted
directly -- following the redirect would hide them.

Coverage:
  - protected pages redirect anonymous visitors to /login?next=...
  - an expired login redirects with expired=1
  - login form: CSRF required, success redirect, generic failure flash,
    open-redirect protection on next=
  - logout keeps the session but drops the login
  - registration validation and success
  - customer dashboard and deposit / transfer forms
  - admin pages: role enforcement, counts, level changes, reset
  - demo pages: level badge, reflected output, CSRF demo token handling
"""

from __future__ import annotations

from decimal import Decimal
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from api.main import app
from bank.models import Account
from conftest import (
    ADMIN_PASSWORD,
    ADMIN_USERNAME,
    USER_PASSWORD,
    USER_USERNAME,
    page_csrf,
    web_login,
)
from core.models import Level
from web.routes import _safe_next, format_currency


@pytest.fixture(autouse=True)
def _reset_levels(web_services):
    yield
    web_services.levels.reset_all(None)


class TestAuthRedirects:
    @pytest.mark.parametrize("path", ["/", "/transactions", "/admin", "/vulnerabilities/sql_injection"])
    def test_anonymous_redirects_to_login(self, web_client: TestClient, path: str) -> None:
        resp = web_client.get(path)
        assert resp.status_code == 303
        location = urlparse(resp.headers["location"])
        assert location.path == "/login"
        assert parse_qs(location.query)["next"] == [path]

    def test_expired_login_sets_expired_flag(self, web_client: TestClient, web_services) -> None:
        web_login(web_client, USER_USERNAME, USER_PASSWORD)
        auth = app.state.auth
        real_clock = auth._clock
        auth._clock = lambda: real_clock() + web_services.settings.session_idle_timeout + 1
        try:
            resp = web_client.get("/transactions")
        finally:
            auth._clock = real_clock
        assert resp.status_code == 303
        assert "expired=1" in resp.headers["location"]
        # The expired login is gone even with the real clock back.
        assert web_client.get("/").status_code == 303

    def test_customer_on_admin_page_gets_403(self, web_client: TestClient) -> None:
        web_login(web_client, USER_USERNAME, USER_PASSWORD)
        resp = web_client.get("/admin")
        assert resp.status_code == 403
        assert "permission" in resp.text


class TestLogin:
    def test_login_page_has_csrf_field(self, web_client: TestClient) -> None:
        assert len(page_csrf(web_client, "/login")) == 64

    def test_success_redirects_to_next(self, web_client: TestClient) -> None:
        token = page_csrf(web_client, "/login")
        resp = web_client.post(
            "/login",
            data={"username": USER_USERNAME, "password": USER_PASSWORD, "csrf_token": token, "next": "/transactions"},
        )
        assert resp.status_code == 303
        assert resp.headers["location"] == "/transactions"

    def test_missing_csrf_is_rejected(self, web_client: TestClient) -> None:
        page_csrf(web_client, "/login")
        resp = web_client.post("/login", data={"username": USER_USERNAME, "password": USER_PASSWORD})
        assert resp.status_code == 403
        assert web_client.get("/").status_code == 303

    def test_bad_credentials_flash_generic_message(self, web_client: TestClient) -> None:
        token = page_csrf(web_client, "/login")
        resp = web_client.post("/login", data={"username": "nobody", "password": "x", "csrf_token": token})
        assert resp.status_code == 303
        assert resp.headers["location"].startswith("/login")
        page = web_client.get("/login")
        assert "Invalid username or password." in page.text

    @pytest.mark.parametrize(
        "target, expected",
        [
            ("/admin", "/admin"),
            ("https://evil.example/", "/"),
            ("//evil.example/", "/"),
            ("/\\evil.example", "/"),
            ("", "/"),
            (None, "/"),
        ],
    )
    def test_safe_next(self, target, expected) -> None:
        assert _safe_next(target) == expected

    def test_logged_in_user_skips_login_page(self, web_client: TestClient) -> None:
        web_login(web_client, USER_USERNAME, USER_PASSWORD)
        resp = web_client.get("/login")
        assert resp.status_code == 303
        assert resp.headers["location"] == "/"

    def test_logout(self, web_client: TestClient) -> None:
        web_login(web_client, USER_USERNAME, USER_PASSWORD)
        token = page_csrf(web_client, "/")
        resp = web_client.post("/logout", data={"csrf_token": token})
        assert resp.status_code == 303
        assert resp.headers["location"] == "/login"
        page = web_client.get("/login")
        assert page.status_code == 200
        assert "You have been logged out." in page.text


class TestRegistration:
    def _post(self, client: TestClient, **overrides):
        token = page_csrf(client, "/register")
        data = {
            "username": "newcustomer",
            "email": "new@example.com",
            "password": "longenough1",
            "confirm_password": "longenough1",
            "csrf_token": token,
        }
        data.update(overrides)
        return client.post("/register", data=data)

    @pytest.mark.parametrize(
        "overrides, message",
        [
            ({"username": "ab"}, "Username must be"),
            ({"email": "not-an-email"}, "valid email"),
            ({"password": "short", "confirm_password": "short"}, "at least 8"),
            ({"confirm_password": "different1"}, "do not match"),
            ({"username": USER_USERNAME}, "already taken"),
            ({"email": "alice@example.com"}, "already registered"),
        ],
    )
    def test_validation_errors(self, web_client: TestClient, overrides, message) -> None:
        resp = self._post(web_client, **overrides)
        assert resp.status_code == 400
        assert message in resp.text

    def test_success_creates_user_and_account(self, web_client: TestClient, web_services) -> None:
        resp = self._post(web_client, username="carol_1", email="carol@example.com")
        assert resp.status_code == 303
        user = web_services.user_store.find_by_username("carol_1")
        assert user.role == "user"
        assert len(web_services.bank.list_accounts(user.id)) == 1
        web_login(web_client, "carol_1", "longenough1")


class TestCustomerPages:
    def test_dashboard_lists_accounts(self, web_client: TestClient) -> None:
        web_login(web_client, USER_USERNAME, USER_PASSWORD)
        resp = web_client.get("/")
        assert resp.status_code == 200
        assert "1000000001" in resp.text

    def test_deposit_then_history(self, web_client: TestClient, web_services) -> None:
        web_login(web_client, USER_USERNAME, USER_PASSWORD)
        account = web_services.bank.get_account_by_number("1000000001")
        before = account.balance
        token = page_csrf(web_client, "/transactions/new")
        resp = web_client.post(
            "/transactions/new",
            data={"transaction_type": "deposit", "account_id": account.id, "amount": "42.50", "csrf_token": token},
        )
        assert resp.status_code == 303
        assert resp.headers["location"] == "/transactions"
        assert web_services.bank.get_account(account.id).balance == before + Decimal("42.50")
        assert "$42.50" in web_client.get("/transactions").text

    def test_overdraft_is_refused(self, web_client: TestClient, web_services) -> None:
        web_login(web_client, USER_USERNAME, USER_PASSWORD)
        account = web_services.bank.get_account_by_number("1000000001")
        token = page_csrf(web_client, "/transactions/new")
        resp = web_client.post(
            "/transactions/new",
            data={"transaction_type": "withdrawal", "account_id": account.id, "amount": "1000000", "csrf_token": token},
        )
        assert resp.headers["location"] == "/transactions/new"
        assert "Insufficient funds." in web_client.get("/transactions/new").text

    def test_out_of_range_amount_is_refused(self, web_client: TestClient, web_services) -> None:
        web_login(web_client, USER_USERNAME, USER_PASSWORD)
        account = web_services.bank.get_account_by_number("1000000001")
        before = account.balance
        token = page_csrf(web_client, "/transactions/new")
        resp = web_client.post(
            "/transactions/new",
            data={"transaction_type": "deposit", "account_id": account.id, "amount": "1e18", "csrf_token": token},
        )
        assert resp.status_code == 303
        assert resp.headers["location"] == "/transactions/new"
        assert "Amount is too large." in web_client.get("/transactions/new").text
        assert web_services.bank.get_account(account.id).balance == before

    def test_cannot_spend_from_someone_elses_account(self, web_client: TestClient, web_services) -> None:
        other = web_services.bank.create_account(
            Account(user_id=web_services.admin_id, username=ADMIN_USERNAME, account_number="")
        )
        web_services.bank.deposit(other, "100")
        web_login(web_client, USER_USERNAME, USER_PASSWORD)
        token = page_csrf(web_client, "/transactions/new")
        resp = web_client.post(
            "/transactions/new",
            data={"transaction_type": "withdrawal", "account_id": other, "amount": "10", "csrf_token": token},
        )
        assert resp.headers["location"] == "/transactions/new"
        assert web_services.bank.get_account(other).balance == Decimal("100.00")

    def test_form_post_without_csrf(self, web_client: TestClient) -> None:
        web_login(web_client, USER_USERNAME, USER_PASSWORD)
        resp = web_client.post("/transactions/new", data={"transaction_type": "deposit", "account_id": 1, "amount": "1"})
        assert resp.status_code == 403


class TestAdminPages:
    def test_dashboard_counts(self, web_client: TestClient, web_services) -> None:
        web_login(web_client, ADMIN_USERNAME, ADMIN_PASSWORD)
        resp = web_client.get("/admin")
        assert resp.status_code == 200
        assert f'id="user-count">{web_services.user_store.count()}<' in resp.text

    def test_users_and_transactions_pages(self, web_client: TestClient) -> None:
        web_login(web_client, ADMIN_USERNAME, ADMIN_PASSWORD)
        assert USER_USERNAME in web_client.get("/admin/users", params={"search": "alice"}).text
        assert web_client.get("/admin/transactions", params={"filter": "deposits"}).status_code == 200

    def test_change_levels(self, web_client: TestClient, web_services) -> None:
        web_login(web_client, ADMIN_USERNAME, ADMIN_PASSWORD)
        token = page_csrf(web_client, "/admin/settings")
        resp = web_client.post(
            "/admin/settings",
            data={"csrf_token": token, "level_sql_injection": "high", "level_csrf": "impossible", "level_bogus": "low"},
        )
        assert resp.status_code == 303
        assert web_services.levels.get_level("sql_injection") is Level.HIGH
        assert web_services.levels.get_level("csrf") is Level.IMPOSSIBLE
        assert web_services.levels.get_setting("bogus") is None

    def test_invalid_level_changes_nothing(self, web_client: TestClient, web_services) -> None:
        web_login(web_client, ADMIN_USERNAME, ADMIN_PASSWORD)
        token = page_csrf(web_client, "/admin/settings")
        resp = web_client.post(
            "/admin/settings",
            data={"csrf_token": token, "level_sql_injection": "high", "level_csrf": "extreme"},
        )
        assert resp.status_code == 422
        assert web_services.levels.get_level("sql_injection") is Level.LOW

    def test_reset_levels(self, web_client: TestClient, web_services) -> None:
        web_services.levels.set_level("brute_force", "impossible", None)
        web_login(web_client, ADMIN_USERNAME, ADMIN_PASSWORD)
        token = page_csrf(web_client, "/admin/settings")
        resp = web_client.post("/admin/settings/reset", data={"csrf_token": token})
        assert resp.status_code == 303
        assert web_services.levels.get_level("brute_force") is Level.LOW

    def test_admin_cannot_delete_self(self, web_client: TestClient, web_services) -> None:
        web_login(web_client, ADMIN_USERNAME, ADMIN_PASSWORD)
        token = page_csrf(web_client, "/admin/users")
        resp = web_client.post(f"/admin/users/{web_services.admin_id}/delete", data={"csrf_token": token})
        assert resp.status_code == 303
        assert web_services.user_store.get_by_id(web_services.admin_id) is not None


class TestDemoPages:
    def test_level_badge_follows_setting(self, web_client: TestClient, web_services) -> None:
        web_login(web_client, USER_USERNAME, USER_PASSWORD)
        web_services.levels.set_level("xss_reflected", "medium", None)
        resp = web_client.get("/vulnerabilities/xss_reflected")
        assert resp.status_code == 200
        assert 'id="security-level">medium<' in resp.text
        assert 'id="demo-result"' not in resp.text

    def test_reflected_xss_low_is_raw(self, web_client: TestClient) -> None:
        web_login(web_client, USER_USERNAME, USER_PASSWORD)
        resp = web_client.get("/vulnerabilities/xss_reflected", params={"name": "<b>bold</b>", "Submit": "1"})
        assert "<p>Hello <b>bold</b></p>" in resp.text

    def test_reflected_xss_impossible_is_escaped(self, web_client: TestClient, web_services) -> None:
        web_services.levels.set_level("xss_reflected", "impossible", None)
        web_login(web_client, USER_USERNAME, USER_PASSWORD)
        resp = web_client.get("/vulnerabilities/xss_reflected", params={"name": "<b>bold</b>", "Submit": "1"})
        assert "&lt;b&gt;bold&lt;/b&gt;" in resp.text

    def test_csrf_demo_low_accepts_forged_post(self, web_client: TestClient) -> None:
        web_login(web_client, USER_USERNAME, USER_PASSWORD)
        resp = web_client.post("/vulnerabilities/csrf", data={"password_new": "pwned123", "password_conf": "pwned123"})
        assert resp.status_code == 200
        assert "Password changed." in resp.text

    def test_csrf_demo_high_needs_token(self, web_client: TestClient, web_services) -> None:
        web_services.levels.set_level("csrf", "high", None)
        web_login(web_client, USER_USERNAME, USER_PASSWORD)
        forged = web_client.post("/vulnerabilities/csrf", data={"password_new": "pwned123", "password_conf": "pwned123"})
        assert "Password changed." not in forged.text
        token = page_csrf(web_client, "/vulnerabilities/csrf")
        genuine = web_client.post(
            "/vulnerabilities/csrf",
            data={"password_new": "pwned123", "password_conf": "pwned123", "csrf_token": token},
        )
        assert "Password changed." in genuine.text

    def test_unknown_demo_is_404(self, web_client: TestClient) -> None:
        web_login(web_client, USER_USERNAME, USER_PASSWORD)
        resp = web_client.get("/vulnerabilities/file_upload")
        assert resp.status_code == 404
        assert resp.headers["content-type"].startswith("text/html")
        assert "Error 404" in resp.text
        assert "Not Found" in resp.text


class TestFilters:
    def test_currency(self) -> None:
        assert format_currency(Decimal("1234.5"), "USD") == "$1,234.50"
        assert format_currency(Decimal("-20"), "USD") == "-$20.00"
        assert format_currency(3, "CHF") == "CHF 3.00"
