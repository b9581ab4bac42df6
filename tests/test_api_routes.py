"""
tests/test_api_routes.py -- Integration tests for the token API and RBAC admin routes.

These tests exercise the full stack: FastAPI routing -> auth dependency injection
-> AuthGateway / PermissionResolver -> response model serialization and the
uniform error envelope. Unit tests cover each component; these check that the
HTTP edge exposes exactly the public face of every failure.

Coverage:
  - Token login: camelCase pair, no-store, one 401 shape for every credential failure
  - Refresh rotation and replay, logout, expired access tokens
  - /auth/me and /auth/permissions
  - Rate limiting on POST /auth/login (429 + Retry-After)
  - RBAC admin: assign/unassign, direct overrides, tenant overrides, role defaults
  - Cross-tenant requests answer 404; missing permission answers 403
  - Suspension revokes access on the very next request

Fixtures used (from conftest.py):
  - app_env: AppEnv(client, clock, hasher) around a fresh app and database
"""

from __future__ import annotations

import pytest


def _error_code(resp) -> str:
    return resp.json()["error"]["code"]


@pytest.fixture
def tenant(app_env):
    """Tenant 1 with an owner (admin role), a clerk (no roles yet) and a CLERK role."""
    app_env.role("ADMIN", ("USER_ASSIGN_ROLES", "SETTINGS_EDIT", "USER_EDIT"))
    app_env.role("CLERK", ("SALE_VIEW",))
    owner = app_env.user("olivia", kind="tenant_owner", tenant_id=1)
    clerk = app_env.user("carl", tenant_id=1)
    app_env.store.assign_role(owner.id, "ADMIN", 1)
    return owner, clerk


# ---------------------------------------------------------------------------
# Token login / refresh / logout
# ---------------------------------------------------------------------------


class TestTokenLogin:
    def test_login_returns_camel_case_pair(self, app_env) -> None:
        app_env.user("alice")
        resp = app_env.client.post("/api/v1/auth/login", json={"identity": "alice", "secret": "correct horse battery"})
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert set(body) == {"accessToken", "refreshToken", "tokenType", "expiresIn"}
        assert body["tokenType"] == "bearer"
        assert body["expiresIn"] == 900
        assert resp.headers["Cache-Control"] == "no-store"

    @pytest.mark.parametrize(
        "identity,secret",
        [("alice", "wrong password"), ("nobody", "correct horse battery")],
    )
    def test_credential_failures_look_identical(self, app_env, identity, secret) -> None:
        """Unknown identity and wrong password must be indistinguishable on the wire."""
        app_env.user("alice")
        resp = app_env.client.post("/api/v1/auth/login", json={"identity": identity, "secret": secret})
        assert resp.status_code == 401
        assert resp.json() == {
            "error": {"code": "invalid_credentials", "message": "Invalid credentials.", "detail": None}
        }
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    def test_suspended_account_looks_like_bad_credentials(self, app_env) -> None:
        user = app_env.user("alice")
        app_env.store.set_status(user.id, "suspended")
        resp = app_env.client.post("/api/v1/auth/login", json={"identity": "alice", "secret": "correct horse battery"})
        assert resp.status_code == 401
        assert _error_code(resp) == "invalid_credentials"

    def test_lockout_after_five_failures(self, app_env) -> None:
        app_env.user("alice")
        for _ in range(5):
            app_env.client.post("/api/v1/auth/login", json={"identity": "alice", "secret": "nope"})
        resp = app_env.client.post("/api/v1/auth/login", json={"identity": "alice", "secret": "correct horse battery"})
        assert resp.status_code == 401
        app_env.clock.advance(minutes=16)
        app_env.token_login("alice")

    def test_validation_error_does_not_echo_secret(self, app_env) -> None:
        resp = app_env.client.post("/api/v1/auth/login", json={"identity": "alice", "secret": ""})
        assert resp.status_code == 422
        assert _error_code(resp) == "validation_error"
        assert "correct horse" not in resp.text

    def test_login_is_rate_limited(self, app_env) -> None:
        statuses = [
            app_env.client.post("/api/v1/auth/login", json={"identity": f"u{i}", "secret": "x"}).status_code
            for i in range(11)
        ]
        assert statuses[:10] == [401] * 10
        assert statuses[10] == 429

    def test_rate_limit_response_shape(self, app_env) -> None:
        for i in range(10):
            app_env.client.post("/api/v1/auth/login", json={"identity": f"u{i}", "secret": "x"})
        resp = app_env.client.post("/api/v1/auth/login", json={"identity": "u10", "secret": "x"})
        assert resp.status_code == 429
        assert _error_code(resp) == "rate_limited"
        assert "Retry-After" in resp.headers


class TestRefreshAndLogout:
    def test_refresh_rotates(self, app_env) -> None:
        app_env.user("alice")
        pair = app_env.token_login("alice")
        resp = app_env.client.post("/api/v1/auth/refresh", json={"refreshToken": pair["refreshToken"]})
        assert resp.status_code == 200
        assert resp.json()["refreshToken"] != pair["refreshToken"]

    def test_replayed_refresh_token_rejected(self, app_env) -> None:
        app_env.user("alice")
        pair = app_env.token_login("alice")
        app_env.client.post("/api/v1/auth/refresh", json={"refreshToken": pair["refreshToken"]})
        resp = app_env.client.post("/api/v1/auth/refresh", json={"refreshToken": pair["refreshToken"]})
        assert resp.status_code == 401
        assert _error_code(resp) == "invalid_token"

    def test_refresh_after_thirty_one_days(self, app_env) -> None:
        app_env.user("alice")
        pair = app_env.token_login("alice")
        app_env.clock.advance(days=31)
        resp = app_env.client.post("/api/v1/auth/refresh", json={"refreshToken": pair["refreshToken"]})
        assert resp.status_code == 401
        assert _error_code(resp) == "invalid_token"

    def test_logout_revokes_family(self, app_env) -> None:
        app_env.user("alice")
        pair = app_env.token_login("alice")
        resp = app_env.client.post("/api/v1/auth/logout", json={"refreshToken": pair["refreshToken"]})
        assert resp.status_code == 204
        resp = app_env.client.post("/api/v1/auth/refresh", json={"refreshToken": pair["refreshToken"]})
        assert resp.status_code == 401

    def test_logout_with_garbage_token(self, app_env) -> None:
        resp = app_env.client.post("/api/v1/auth/logout", json={"refreshToken": "garbage"})
        assert resp.status_code == 401
        assert _error_code(resp) == "invalid_token"


class TestMe:
    def test_me_requires_auth(self, app_env) -> None:
        resp = app_env.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert _error_code(resp) == "invalid_token"

    def test_me(self, app_env) -> None:
        user = app_env.user("alice", tenant_id=3)
        resp = app_env.client.get("/api/v1/auth/me", headers=app_env.bearer("alice"))
        assert resp.status_code == 200
        assert resp.json() == {
            "userId": user.id,
            "username": "alice",
            "kind": "tenant_staff",
            "status": "active",
            "tenantId": 3,
            "authMethod": "token",
        }

    def test_expired_access_token(self, app_env) -> None:
        app_env.user("alice")
        headers = app_env.bearer("alice")
        app_env.clock.advance(minutes=16)
        resp = app_env.client.get("/api/v1/auth/me", headers=headers)
        assert resp.status_code == 401
        assert _error_code(resp) == "invalid_token"

    def test_tampered_token(self, app_env) -> None:
        app_env.user("alice")
        token = app_env.token_login("alice")["accessToken"]
        header, payload, signature = token.split(".")
        forged = ".".join([header, payload[::-1], signature])
        resp = app_env.client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {forged}"})
        assert resp.status_code == 401
        assert _error_code(resp) == "invalid_token"

    def test_permissions_listing(self, app_env, tenant) -> None:
        resp = app_env.client.get("/api/v1/auth/permissions", headers=app_env.bearer("olivia"))
        assert resp.status_code == 200
        assert resp.json() == {
            "tenantId": 1,
            "permissions": ["SETTINGS_EDIT", "USER_ASSIGN_ROLES", "USER_EDIT"],
        }

    def test_operator_sees_every_code(self, app_env, tenant) -> None:
        app_env.user("root", kind="platform_operator")
        data = app_env.client.get("/api/v1/auth/permissions", headers=app_env.bearer("root")).json()
        assert data["tenantId"] is None
        assert data["permissions"] == ["SALE_VIEW", "SETTINGS_EDIT", "USER_ASSIGN_ROLES", "USER_EDIT"]

    def test_operator_token_for_chosen_tenant(self, app_env) -> None:
        app_env.user("root", kind="platform_operator")
        headers = app_env.bearer("root", tenantId=7)
        assert app_env.client.get("/api/v1/auth/me", headers=headers).json()["tenantId"] == 7

    def test_tenant_principal_cannot_choose_foreign_tenant(self, app_env) -> None:
        app_env.user("alice", tenant_id=1)
        resp = app_env.client.post(
            "/api/v1/auth/login",
            json={"identity": "alice", "secret": "correct horse battery", "tenantId": 2},
        )
        assert resp.status_code == 404
        assert _error_code(resp) == "not_found"


# ---------------------------------------------------------------------------
# RBAC administration
# ---------------------------------------------------------------------------


class TestRoleAssignment:
    def test_assign_role_takes_effect_immediately(self, app_env, tenant) -> None:
        _, clerk = tenant
        clerk_headers = app_env.bearer("carl")
        before = app_env.client.get("/api/v1/auth/permissions", headers=clerk_headers).json()
        assert before["permissions"] == []

        resp = app_env.client.put(f"/api/v1/tenants/1/users/{clerk.id}/roles/CLERK", headers=app_env.bearer("olivia"))
        assert resp.status_code == 200
        assert resp.json() == {"changed": True}

        after = app_env.client.get("/api/v1/auth/permissions", headers=clerk_headers).json()
        assert after["permissions"] == ["SALE_VIEW"]

    def test_assign_twice_reports_no_change(self, app_env, tenant) -> None:
        _, clerk = tenant
        headers = app_env.bearer("olivia")
        app_env.client.put(f"/api/v1/tenants/1/users/{clerk.id}/roles/CLERK", headers=headers)
        resp = app_env.client.put(f"/api/v1/tenants/1/users/{clerk.id}/roles/CLERK", headers=headers)
        assert resp.json() == {"changed": False}

    def test_unassign_role(self, app_env, tenant) -> None:
        _, clerk = tenant
        app_env.store.assign_role(clerk.id, "CLERK", 1)
        resp = app_env.client.delete(
            f"/api/v1/tenants/1/users/{clerk.id}/roles/CLERK", headers=app_env.bearer("olivia")
        )
        assert resp.json() == {"changed": True}
        data = app_env.client.get("/api/v1/auth/permissions", headers=app_env.bearer("carl")).json()
        assert data["permissions"] == []

    def test_unknown_role_is_404(self, app_env, tenant) -> None:
        _, clerk = tenant
        resp = app_env.client.put(f"/api/v1/tenants/1/users/{clerk.id}/roles/NO_SUCH_ROLE", headers=app_env.bearer("olivia"))
        assert resp.status_code == 404
        assert _error_code(resp) == "not_found"

    def test_malformed_role_code_is_422(self, app_env, tenant) -> None:
        _, clerk = tenant
        resp = app_env.client.put(f"/api/v1/tenants/1/users/{clerk.id}/roles/clerk", headers=app_env.bearer("olivia"))
        assert resp.status_code == 422

    def test_without_permission_is_403(self, app_env, tenant) -> None:
        owner, _ = tenant
        resp = app_env.client.put(f"/api/v1/tenants/1/users/{owner.id}/roles/CLERK", headers=app_env.bearer("carl"))
        assert resp.status_code == 403
        assert _error_code(resp) == "forbidden"


class TestCrossTenant:
    def test_foreign_tenant_path_is_404(self, app_env, tenant) -> None:
        foreign = app_env.user("fred", tenant_id=2)
        resp = app_env.client.put(f"/api/v1/tenants/2/users/{foreign.id}/roles/CLERK", headers=app_env.bearer("olivia"))
        assert resp.status_code == 404
        assert _error_code(resp) == "not_found"

    def test_foreign_user_under_own_tenant_path_is_404(self, app_env, tenant) -> None:
        foreign = app_env.user("fred", tenant_id=2)
        resp = app_env.client.put(f"/api/v1/tenants/1/users/{foreign.id}/roles/CLERK", headers=app_env.bearer("olivia"))
        assert resp.status_code == 404
        assert app_env.store.get_role_grants(foreign.id, 1) == []

    def test_missing_user_matches_foreign_user(self, app_env, tenant) -> None:
        foreign = app_env.user("fred", tenant_id=2)
        headers = app_env.bearer("olivia")
        missing = app_env.client.put("/api/v1/tenants/1/users/9999/roles/CLERK", headers=headers)
        hidden = app_env.client.put(f"/api/v1/tenants/1/users/{foreign.id}/roles/CLERK", headers=headers)
        assert missing.status_code == hidden.status_code == 404
        assert missing.json() == hidden.json()

    def test_operator_administers_any_tenant(self, app_env, tenant) -> None:
        app_env.user("root", kind="platform_operator")
        foreign = app_env.user("fred", tenant_id=2)
        resp = app_env.client.put(f"/api/v1/tenants/2/users/{foreign.id}/roles/CLERK", headers=app_env.bearer("root"))
        assert resp.status_code == 200
        assert app_env.state.resolver.has_permission(foreign, 2, "SALE_VIEW") is True


class TestOverrides:
    def test_direct_denial_beats_role(self, app_env, tenant) -> None:
        _, clerk = tenant
        app_env.store.assign_role(clerk.id, "CLERK", 1)
        clerk_headers = app_env.bearer("carl")
        assert app_env.client.get("/api/v1/auth/permissions", headers=clerk_headers).json()["permissions"] == [
            "SALE_VIEW"
        ]
        resp = app_env.client.put(
            f"/api/v1/tenants/1/users/{clerk.id}/permissions/SALE_VIEW",
            json={"allowed": False},
            headers=app_env.bearer("olivia"),
        )
        assert resp.status_code == 200
        assert app_env.client.get("/api/v1/auth/permissions", headers=clerk_headers).json()["permissions"] == []

        resp = app_env.client.delete(
            f"/api/v1/tenants/1/users/{clerk.id}/permissions/SALE_VIEW", headers=app_env.bearer("olivia")
        )
        assert resp.json() == {"changed": True}
        assert app_env.client.get("/api/v1/auth/permissions", headers=clerk_headers).json()["permissions"] == [
            "SALE_VIEW"
        ]

    def test_tenant_override_disables_role_code(self, app_env, tenant) -> None:
        _, clerk = tenant
        app_env.store.assign_role(clerk.id, "CLERK", 1)
        clerk_headers = app_env.bearer("carl")
        app_env.client.get("/api/v1/auth/permissions", headers=clerk_headers)
        resp = app_env.client.put(
            "/api/v1/tenants/1/roles/CLERK/permissions/SALE_VIEW",
            json={"enabled": False},
            headers=app_env.bearer("olivia"),
        )
        assert resp.status_code == 200
        assert app_env.client.get("/api/v1/auth/permissions", headers=clerk_headers).json()["permissions"] == []

    def test_tenant_override_is_scoped_to_tenant(self, app_env, tenant) -> None:
        other = app_env.user("otto", tenant_id=2)
        app_env.store.assign_role(other.id, "CLERK", 2)
        app_env.client.put(
            "/api/v1/tenants/1/roles/CLERK/permissions/SALE_VIEW",
            json={"enabled": False},
            headers=app_env.bearer("olivia"),
        )
        data = app_env.client.get("/api/v1/auth/permissions", headers=app_env.bearer("otto")).json()
        assert data["permissions"] == ["SALE_VIEW"]

    def test_unknown_permission_is_404(self, app_env, tenant) -> None:
        _, clerk = tenant
        resp = app_env.client.put(
            f"/api/v1/tenants/1/users/{clerk.id}/permissions/NOT_DEFINED",
            json={"allowed": True},
            headers=app_env.bearer("olivia"),
        )
        assert resp.status_code == 404


class TestRoleDefaults:
    def test_operator_replaces_defaults(self, app_env, tenant) -> None:
        _, clerk = tenant
        app_env.store.assign_role(clerk.id, "CLERK", 1)
        clerk_headers = app_env.bearer("carl")
        app_env.client.get("/api/v1/auth/permissions", headers=clerk_headers)
        app_env.user("root", kind="platform_operator")
        resp = app_env.client.put(
            "/api/v1/roles/CLERK/permissions",
            json={"codes": ["SALE_VIEW", "SETTINGS_EDIT"]},
            headers=app_env.bearer("root"),
        )
        assert resp.status_code == 200
        data = app_env.client.get("/api/v1/auth/permissions", headers=clerk_headers).json()
        assert data["permissions"] == ["SALE_VIEW", "SETTINGS_EDIT"]

    def test_tenant_owner_cannot_change_defaults(self, app_env, tenant) -> None:
        resp = app_env.client.put(
            "/api/v1/roles/CLERK/permissions",
            json={"codes": ["SALE_VIEW"]},
            headers=app_env.bearer("olivia"),
        )
        assert resp.status_code == 403


class TestSuspend:
    def test_suspend_cuts_access_on_next_request(self, app_env, tenant) -> None:
        _, clerk = tenant
        clerk_pair = app_env.token_login("carl")
        clerk_headers = {"Authorization": f"Bearer {clerk_pair['accessToken']}"}
        assert app_env.client.get("/api/v1/auth/me", headers=clerk_headers).status_code == 200

        resp = app_env.client.post(f"/api/v1/users/{clerk.id}/suspend", headers=app_env.bearer("olivia"))
        assert resp.status_code == 200
        assert resp.json()["status"] == "suspended"

        assert app_env.client.get("/api/v1/auth/me", headers=clerk_headers).status_code == 401
        resp = app_env.client.post("/api/v1/auth/refresh", json={"refreshToken": clerk_pair["refreshToken"]})
        assert resp.status_code == 401

    def test_suspend_foreign_principal_is_404(self, app_env, tenant) -> None:
        foreign = app_env.user("fred", tenant_id=2)
        resp = app_env.client.post(f"/api/v1/users/{foreign.id}/suspend", headers=app_env.bearer("olivia"))
        assert resp.status_code == 404
        assert app_env.store.get_user(foreign.id).status == "active"

    def test_suspend_requires_user_edit(self, app_env, tenant) -> None:
        owner, _ = tenant
        resp = app_env.client.post(f"/api/v1/users/{owner.id}/suspend", headers=app_env.bearer("carl"))
        assert resp.status_code == 403
