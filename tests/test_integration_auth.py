"""HTTP-level tests for the auth and user routes.

Runs against the TEST_MODE runtime: memory store, in-process denylist cache
and inline mail delivery.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from storefront import app as app_module
from storefront.service.runtime import get_runtime
from storefront.storage.models import Registration, Role

PASSWORD = "CorrectHorse42"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _sign_up(client, email="shopper@example.com", phone="+1 (555) 123-4567", **extra):
    body = {
        "email": email,
        "password": PASSWORD,
        "first_name": "Sam",
        "last_name": "Shopper",
        "phone_number": phone,
        "gender": "OTHER",
        "date_of_birth": "1990-05-17",
        **extra,
    }
    return client.post("/v1/auth/sign-up", json=body)


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _make_staff(email, role):
    registration = Registration(
        email=email, password=PASSWORD, first_name="Staff", last_name="Member"
    )
    return asyncio.run(get_runtime().users.create(registration, role=role))


class TestSignUp:
    def test_sign_up_returns_user_and_tokens(self, client):
        response = _sign_up(client)

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["user"]["email"] == "shopper@example.com"
        assert data["user"]["role"] == "CUSTOMER"
        assert data["user"]["phone_number"] == "+15551234567"
        assert data["token_type"] == "bearer"
        assert data["access_token"] != data["refresh_token"]
        assert "password" not in data["user"]

    def test_sign_up_creates_cart(self, client):
        user_id = _sign_up(client).json()["data"]["user"]["id"]
        assert get_runtime().carts.get_cart(user_id).items == []

    def test_duplicate_email_conflict(self, client):
        _sign_up(client)
        response = _sign_up(client, phone="+15550000000")

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "conflict"
        assert error["details"] == {"field": "email"}

    def test_email_is_normalized_before_uniqueness(self, client):
        _sign_up(client)
        response = _sign_up(client, email="  Shopper@Example.COM ", phone="+15550000000")
        assert response.status_code == 409

    def test_staff_role_cannot_be_self_assigned(self, client):
        response = _sign_up(client, role="ADMIN")
        assert response.status_code == 422

    @pytest.mark.parametrize(
        "overrides",
        [
            {"password": "short"},
            {"email": "not-an-email"},
            {"first_name": "Al"},
            {"date_of_birth": "2999-01-01"},
            {"phone_number": "call me"},
        ],
    )
    def test_invalid_registration_rejected(self, client, overrides):
        assert _sign_up(client, **overrides).status_code == 422


class TestSignIn:
    def test_sign_in(self, client):
        _sign_up(client)
        response = client.post(
            "/v1/auth/sign-in", json={"email": "shopper@example.com", "password": PASSWORD}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["access_expires_at"] < data["refresh_expires_at"]

    def test_bad_credentials(self, client):
        _sign_up(client)
        response = client.post(
            "/v1/auth/sign-in", json={"email": "shopper@example.com", "password": "WrongPass1"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"
        assert response.headers["WWW-Authenticate"] == "Bearer"


class TestBearerAuth:
    def test_me(self, client):
        token = _sign_up(client).json()["data"]["access_token"]
        response = client.get("/v1/users/me", headers=_bearer(token))
        assert response.status_code == 200
        assert response.json()["data"]["email"] == "shopper@example.com"

    @pytest.mark.parametrize("headers", [{}, {"Authorization": "Token abc"}, {"Authorization": "Bearer"}])
    def test_missing_or_malformed_header(self, client, headers):
        response = client.get("/v1/users/me", headers=headers)
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_refresh_token_rejected_as_bearer(self, client):
        token = _sign_up(client).json()["data"]["refresh_token"]
        response = client.get("/v1/users/me", headers=_bearer(token))
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "expected access token"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_route_dependency_goes_through_auth_service(self, client, monkeypatch):
        token = _sign_up(client).json()["data"]["access_token"]
        seen = []
        original = get_runtime().auth.authenticate

        async def _recording(authorization):
            seen.append(authorization)
            return await original(authorization)

        monkeypatch.setattr(get_runtime().auth, "authenticate", _recording)
        assert client.get("/v1/users/me", headers=_bearer(token)).status_code == 200
        assert seen == [f"Bearer {token}"]


class TestSignOut:
    def test_sign_out_then_reuse(self, client):
        token = _sign_up(client).json()["data"]["access_token"]

        response = client.get("/v1/auth/sign-out", headers=_bearer(token))
        assert response.status_code == 200
        assert response.json()["data"] == {"message": "User signed out"}

        assert client.get("/v1/users/me", headers=_bearer(token)).status_code == 401
        second = client.get("/v1/auth/sign-out", headers=_bearer(token))
        assert second.status_code == 401

    def test_refresh_token_cannot_sign_out(self, client):
        data = _sign_up(client).json()["data"]

        response = client.get("/v1/auth/sign-out", headers=_bearer(data["refresh_token"]))

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"
        revoke = client.post(
            "/v1/auth/revoke-tokens",
            json={"refresh_token": data["refresh_token"]},
            headers=_bearer(data["access_token"]),
        )
        assert revoke.status_code == 200


class TestRevokeTokens:
    def test_revoke_issues_new_pair(self, client):
        data = _sign_up(client).json()["data"]

        response = client.post(
            "/v1/auth/revoke-tokens",
            json={"refresh_token": data["refresh_token"]},
            headers=_bearer(data["access_token"]),
        )

        assert response.status_code == 200
        fresh = response.json()["data"]
        assert fresh["access_token"] != data["access_token"]
        assert client.get("/v1/users/me", headers=_bearer(data["access_token"])).status_code == 401
        assert client.get("/v1/users/me", headers=_bearer(fresh["access_token"])).status_code == 200

    def test_revoke_requires_refresh_token(self, client):
        data = _sign_up(client).json()["data"]
        response = client.post(
            "/v1/auth/revoke-tokens",
            json={"refresh_token": data["access_token"]},
            headers=_bearer(data["access_token"]),
        )
        assert response.status_code == 401


class TestUpdatePassword:
    def test_update_password_records_change_and_swaps_password(self, client):
        token = _sign_up(client).json()["data"]["access_token"]

        response = client.patch(
            "/v1/auth/update-password",
            json={
                "email": "shopper@example.com",
                "current_password": PASSWORD,
                "new_password": "BrandNewPass7",
            },
            headers=_bearer(token),
        )
        assert response.status_code == 200

        runtime = get_runtime()
        boundary = asyncio.run(
            runtime.denylist.last_password_change(runtime.tokens.decode_unexpired(token).subject_id)
        )
        assert boundary is not None

        sign_in = client.post(
            "/v1/auth/sign-in", json={"email": "shopper@example.com", "password": "BrandNewPass7"}
        )
        assert sign_in.status_code == 200

    def test_wrong_current_password(self, client):
        token = _sign_up(client).json()["data"]["access_token"]
        response = client.patch(
            "/v1/auth/update-password",
            json={
                "email": "shopper@example.com",
                "current_password": "NotMyPassword1",
                "new_password": "BrandNewPass7",
            },
            headers=_bearer(token),
        )
        assert response.status_code == 401


class TestForgotPassword:
    def test_known_and_unknown_addresses_look_the_same(self, client):
        _sign_up(client)
        known = client.post("/v1/auth/forgot-password", json={"email": "shopper@example.com"})
        unknown = client.post("/v1/auth/forgot-password", json={"email": "ghost@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"] == {"status": "sent"}

    def test_reset_replaces_password(self, client):
        _sign_up(client)
        client.post("/v1/auth/forgot-password", json={"email": "shopper@example.com"})
        response = client.post(
            "/v1/auth/sign-in", json={"email": "shopper@example.com", "password": PASSWORD}
        )
        assert response.status_code == 401


class TestUserDirectory:
    def test_customer_cannot_list_users(self, client):
        token = _sign_up(client).json()["data"]["access_token"]
        response = client.get("/v1/users", headers=_bearer(token))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    @pytest.mark.parametrize("role", [Role.ADMIN, Role.EMPLOYEE])
    def test_staff_can_list_and_filter(self, client, role):
        customer_id = _sign_up(client).json()["data"]["user"]["id"]
        _make_staff("staff@example.com", role)
        token = client.post(
            "/v1/auth/sign-in", json={"email": "staff@example.com", "password": PASSWORD}
        ).json()["data"]["access_token"]

        everyone = client.get("/v1/users", headers=_bearer(token))
        customers = client.get("/v1/users", params={"role": "CUSTOMER"}, headers=_bearer(token))
        single = client.get(f"/v1/users/{customer_id}", headers=_bearer(token))

        assert len(everyone.json()["data"]["items"]) == 2
        assert [u["id"] for u in customers.json()["data"]["items"]] == [customer_id]
        assert single.json()["data"]["id"] == customer_id

    def test_unknown_user_is_404(self, client):
        _make_staff("admin@example.com", Role.ADMIN)
        token = client.post(
            "/v1/auth/sign-in", json={"email": "admin@example.com", "password": PASSWORD}
        ).json()["data"]["access_token"]
        response = client.get("/v1/users/does-not-exist", headers=_bearer(token))
        assert response.status_code == 404


class TestAppPlumbing:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["cache"]["type"] == "MemoryCache"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_security_headers(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]
