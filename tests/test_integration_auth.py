"""End-to-end HTTP tests for registration, sessions and administration.

Covers:
- register -> verify-otp -> /me for each actor kind
- login ordering and error codes
- refresh rotation and logout revocation
- password reset and authenticated password change
- vendor approval with CSRF-guarded admin writes
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from accountgate import app as app_module
from accountgate.config import reset_settings_cache
from accountgate.service.runtime import get_runtime
from accountgate.storage.models import Role

PASSWORD = "CorrectHorse9"

USER_BODY = {"name": "Ada Lovelace", "phone": "+1 555 0100", "email": "ada@example.com", "password": PASSWORD}
VENDOR_BODY = {
    "business_name": "Lovelace Catering",
    "vendor_type": "catering",
    "contact_name": "Ada",
    "phone": "+15550101",
    "email": "shop@example.com",
    "password": PASSWORD,
}


@pytest.fixture
def client(mailer):
    with TestClient(app_module.app) as test_client:
        runtime = get_runtime()
        runtime.auth.email = mailer
        runtime.auth.registration.email = mailer
        yield test_client


def _register_and_verify(client, mailer, prefix="/v1/users", body=USER_BODY):
    response = client.post(f"{prefix}/register", json=body)
    assert response.status_code == 201, response.text
    code = mailer.last_code(body["email"])
    response = client.post(f"{prefix}/verify-otp", json={"email": body["email"], "otp": code})
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _provision_admin(email="root@example.com"):
    runtime = get_runtime()
    return asyncio.run(
        runtime.auth.provision_account(Role.ADMIN, email, PASSWORD, {"name": "Root"})
    )


def _admin_session(client):
    _provision_admin()
    response = client.post(
        "/v1/admins/login", json={"email": "root@example.com", "password": PASSWORD}
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]


class TestRegistration:
    def test_register_verify_and_me(self, client, mailer):
        response = client.post("/v1/users/register", json=USER_BODY)
        assert response.status_code == 201
        assert response.json()["data"]["email"] == "ada@example.com"

        code = mailer.last_code("ada@example.com")
        response = client.post(
            "/v1/users/verify-otp", json={"email": "ada@example.com", "otp": int(code)}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert {"token", "refresh_token", "csrf_token", "user"} <= set(data)
        assert data["user"]["is_verified"] is True
        assert data["user"]["name"] == "Ada Lovelace"
        assert "password" not in data["user"]

        me = client.get("/v1/me", headers=_auth(data["token"]))
        assert me.status_code == 200
        assert me.json()["data"]["user"]["email"] == "ada@example.com"

    def test_duplicate_registration(self, client, mailer):
        _register_and_verify(client, mailer)
        response = client.post("/v1/users/register", json=USER_BODY)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "duplicate_identity"

    def test_wrong_and_unknown_otp(self, client, mailer):
        client.post("/v1/users/register", json=USER_BODY)
        code = mailer.last_code("ada@example.com")
        wrong = "111111" if code != "111111" else "222222"
        response = client.post("/v1/users/verify-otp", json={"email": "ada@example.com", "otp": wrong})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_or_expired_challenge"

        response = client.post("/v1/users/verify-otp", json={"email": "nobody@example.com", "otp": code})
        assert response.status_code == 404

    def test_resend_replaces_code(self, client, mailer):
        client.post("/v1/users/register", json=USER_BODY)
        response = client.post("/v1/users/resend-otp", json={"email": "ada@example.com"})
        assert response.status_code == 200
        assert len([m for m in mailer.sent if m[0] == "registration_otp"]) == 2
        code = mailer.last_code("ada@example.com")
        response = client.post("/v1/users/verify-otp", json={"email": "ada@example.com", "otp": code})
        assert response.status_code == 200

        response = client.post("/v1/users/resend-otp", json={"email": "ada@example.com"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "already_verified"

    def test_invalid_body_is_validation_error(self, client):
        response = client.post("/v1/users/register", json={**USER_BODY, "email": "not-an-email"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

        response = client.post("/v1/users/register", json={**USER_BODY, "password": "short"})
        assert response.status_code == 400

    def test_email_failure_is_500(self, client, mailer):
        mailer.fail = True
        response = client.post("/v1/users/register", json=USER_BODY)
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "email_delivery_failed"

    def test_admin_self_signup_disabled_by_default(self, client):
        body = {"name": "Root", "email": "root@example.com", "password": PASSWORD}
        response = client.post("/v1/admins/register", json=body)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_signup_can_be_disabled(self, client, monkeypatch):
        monkeypatch.setenv("ALLOW_SIGNUP", "false")
        reset_settings_cache()
        response = client.post("/v1/users/register", json=USER_BODY)
        assert response.status_code == 403


class TestLogin:
    def test_login_before_verification_is_not_found(self, client):
        client.post("/v1/users/register", json=USER_BODY)
        response = client.post(
            "/v1/users/login", json={"email": "ada@example.com", "password": PASSWORD}
        )
        assert response.status_code == 404

    def test_login_wrong_password(self, client, mailer):
        _register_and_verify(client, mailer)
        response = client.post(
            "/v1/users/login", json={"email": "ada@example.com", "password": "wrong-password"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_login_returns_session(self, client, mailer):
        _register_and_verify(client, mailer)
        response = client.post(
            "/v1/users/login", json={"email": "ADA@example.com", "password": PASSWORD}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token_type"] == "bearer"
        assert data["user"]["email"] == "ada@example.com"
        assert "X-RateLimit-Remaining" in response.headers

    def test_roles_are_separate_namespaces(self, client, mailer):
        _register_and_verify(client, mailer)
        response = client.post(
            "/v1/vendors/login", json={"email": "ada@example.com", "password": PASSWORD}
        )
        assert response.status_code == 404

    def test_login_is_rate_limited(self, client):
        body = {"email": "ghost@example.com", "password": PASSWORD}
        statuses = [client.post("/v1/users/login", json=body).status_code for _ in range(11)]
        assert statuses[:10] == [404] * 10
        assert statuses[10] == 429


class TestSessions:
    def test_refresh_rotates_once(self, client, mailer):
        data = _register_and_verify(client, mailer)
        response = client.post("/v1/auth/refresh-token", json={"refresh_token": data["refresh_token"]})
        assert response.status_code == 200
        rotated = response.json()["data"]
        assert rotated["refresh_token"] != data["refresh_token"]
        assert rotated["user"]["email"] == "ada@example.com"

        replay = client.post("/v1/auth/refresh-token", json={"refreshToken": data["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "invalid_or_revoked_token"

    def test_logout_revokes_tokens(self, client, mailer):
        data = _register_and_verify(client, mailer)
        response = client.post(
            "/v1/auth/logout",
            json={"refresh_token": data["refresh_token"]},
            headers=_auth(data["token"]),
        )
        assert response.status_code == 200
        assert client.get("/v1/me", headers=_auth(data["token"])).status_code == 401
        replay = client.post("/v1/auth/refresh-token", json={"refresh_token": data["refresh_token"]})
        assert replay.status_code == 401

    def test_logout_always_succeeds(self, client):
        assert client.post("/v1/auth/logout").status_code == 200
        assert client.post("/v1/auth/logout", headers=_auth("garbage")).status_code == 200

    def test_me_requires_bearer(self, client):
        response = client.get("/v1/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_or_revoked_token"


class TestPasswordReset:
    def test_reset_flow(self, client, mailer):
        _register_and_verify(client, mailer)
        response = client.post("/v1/users/forgot-password", json={"email": "ada@example.com"})
        assert response.status_code == 200
        code = mailer.last_code("ada@example.com")

        response = client.post("/v1/users/verify-reset-otp", json={"email": "ada@example.com", "otp": code})
        assert response.status_code == 200
        response = client.post(
            "/v1/users/reset-password",
            json={"email": "ada@example.com", "otp": code, "new_password": "BrandNewPass1"},
        )
        assert response.status_code == 200

        response = client.post(
            "/v1/users/login", json={"email": "ada@example.com", "password": "BrandNewPass1"}
        )
        assert response.status_code == 200

    def test_change_password(self, client, mailer):
        session = _register_and_verify(client, mailer)
        headers = _auth(session["token"])

        response = client.put(
            "/v1/users/update-password",
            json={"currentPassword": "wrong-password", "newPassword": "BrandNewPass1"},
            headers=headers,
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_credentials"

        response = client.put(
            "/v1/users/update-password",
            json={"current_password": PASSWORD, "new_password": "BrandNewPass1"},
            headers=headers,
        )
        assert response.status_code == 200, response.text

        old = client.post("/v1/users/login", json={"email": "ada@example.com", "password": PASSWORD})
        assert old.status_code == 400
        new = client.post(
            "/v1/users/login", json={"email": "ada@example.com", "password": "BrandNewPass1"}
        )
        assert new.status_code == 200

    def test_change_password_needs_matching_role(self, client, mailer):
        body = {"current_password": PASSWORD, "new_password": "BrandNewPass1"}
        assert client.put("/v1/users/update-password", json=body).status_code == 401
        session = _register_and_verify(client, mailer)
        response = client.put("/v1/vendors/update-password", json=body, headers=_auth(session["token"]))
        assert response.status_code == 403

    def test_forgot_password_unknown_email(self, client):
        response = client.post("/v1/users/forgot-password", json={"email": "ghost@example.com"})
        assert response.status_code == 404


class TestVendorApproval:
    def test_unapproved_vendor_blocked_until_admin_approves(self, client, mailer):
        vendor = _register_and_verify(client, mailer, "/v1/vendors", VENDOR_BODY)
        assert vendor["vendor"]["is_approved"] is False
        storefront = client.get("/v1/vendors/me/storefront", headers=_auth(vendor["token"]))
        assert storefront.status_code == 403
        assert storefront.json()["error"]["code"] == "not_approved"

        admin = _admin_session(client)
        pending = client.get("/v1/admin/vendors/pending", headers=_auth(admin["token"]))
        assert pending.status_code == 200
        vendor_id = pending.json()["data"]["vendors"][0]["id"]
        assert vendor_id == vendor["vendor"]["id"]

        response = client.patch(
            f"/v1/admin/vendors/{vendor_id}/approval",
            json={"approved": True},
            headers={**_auth(admin["token"]), "X-CSRF-Token": admin["csrf_token"]},
        )
        assert response.status_code == 200
        assert response.json()["data"]["vendor"]["is_approved"] is True
        fresh_csrf = response.headers["X-CSRF-Token"]
        assert fresh_csrf != admin["csrf_token"]

        storefront = client.get("/v1/vendors/me/storefront", headers=_auth(vendor["token"]))
        assert storefront.status_code == 200
        assert storefront.json()["data"]["storefront"]["business_name"] == "Lovelace Catering"

    def test_vendor_login_sets_active_status(self, client, mailer):
        _register_and_verify(client, mailer, "/v1/vendors", VENDOR_BODY)
        response = client.post(
            "/v1/vendors/login", json={"email": "shop@example.com", "password": PASSWORD}
        )
        assert response.status_code == 200
        assert response.json()["data"]["vendor"]["status"] == "Active"

    def test_admin_writes_require_csrf(self, client):
        admin = _admin_session(client)
        headers = _auth(admin["token"])
        response = client.patch(
            "/v1/admin/vendors/anything/approval", json={"approved": True}, headers=headers
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "csrf_invalid"

    def test_csrf_token_is_single_use(self, client):
        admin = _admin_session(client)
        headers = {**_auth(admin["token"]), "X-CSRF-Token": admin["csrf_token"]}
        first = client.patch("/v1/admin/vendors/missing/approval", json={"approved": True}, headers=headers)
        assert first.status_code == 404
        second = client.patch("/v1/admin/vendors/missing/approval", json={"approved": True}, headers=headers)
        assert second.status_code == 403

    def test_non_admin_cannot_reach_admin_routes(self, client, mailer):
        user = _register_and_verify(client, mailer)
        response = client.get("/v1/admin/vendors/pending", headers=_auth(user["token"]))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"


class TestAdminAccounts:
    def test_provision_and_delete_account(self, client):
        admin = _admin_session(client)
        response = client.post(
            "/v1/admin/accounts",
            json={
                "role": "user",
                "email": "bob@example.com",
                "password": PASSWORD,
                "profile": {"name": "Bob"},
            },
            headers={**_auth(admin["token"]), "X-CSRF-Token": admin["csrf_token"]},
        )
        assert response.status_code == 201, response.text
        user_id = response.json()["data"]["user"]["id"]
        csrf = response.headers["X-CSRF-Token"]

        login = client.post("/v1/users/login", json={"email": "bob@example.com", "password": PASSWORD})
        assert login.status_code == 200
        user_token = login.json()["data"]["token"]

        response = client.delete(
            f"/v1/admin/accounts/user/{user_id}",
            headers={**_auth(admin["token"]), "X-CSRF-Token": csrf},
        )
        assert response.status_code == 200
        assert client.get("/v1/me", headers=_auth(user_token)).status_code == 401

    def test_provision_rejects_reserved_profile_fields(self, client):
        admin = _admin_session(client)
        response = client.post(
            "/v1/admin/accounts",
            json={
                "role": "user",
                "email": "bob@example.com",
                "password": PASSWORD,
                "profile": {"is_verified": False},
            },
            headers={**_auth(admin["token"]), "X-CSRF-Token": admin["csrf_token"]},
        )
        assert response.status_code == 400


class TestPlumbing:
    def test_healthz(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.status_code == 200
        assert response.json()["checks"]["redis"]["status"] == "not_configured"
        assert response.headers["X-Request-ID"] == "req-123"

    def test_security_headers(self, client):
        response = client.get("/v1/me")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]
