"""Unit tests for auth/seed.py and auth/store.py reference data.

Covers:
- seed_defaults() inserts the six system roles, seventeen permissions and
  the MANAGER grant set, and is a no-op the second time
- administrator edits to a seeded role survive a re-seed
- system roles cannot be deleted; custom roles can
- permission codes are validated on insert
- tenant-bound principal kinds require a tenant
"""

import pytest

from auth.models import Permission, Role, User
from auth.seed import DEFAULT_PERMISSIONS, DEFAULT_ROLE_PERMISSIONS, DEFAULT_ROLES, seed_defaults
from auth.store import ReferenceNotFound


class TestSeed:
    def test_first_run_inserts_everything(self, store):
        added = seed_defaults(store)
        assert added == {"roles": 6, "permissions": 17, "role_grants": 8}
        assert [r.code for r in store.list_roles()] == sorted(code for code, _, _ in DEFAULT_ROLES)
        assert len(store.list_permission_codes()) == len(DEFAULT_PERMISSIONS)
        assert store.get_role_permission_codes("MANAGER") == set(DEFAULT_ROLE_PERMISSIONS["MANAGER"])

    def test_second_run_is_noop(self, store):
        seed_defaults(store)
        assert seed_defaults(store) == {"roles": 0, "permissions": 0, "role_grants": 0}

    def test_reseed_keeps_admin_edits(self, store):
        seed_defaults(store)
        store.set_role_permissions("MANAGER", ["SALE_VIEW"])
        seed_defaults(store)
        assert store.get_role_permission_codes("MANAGER") == {"SALE_VIEW"}

    def test_seeded_roles_are_system(self, store):
        seed_defaults(store)
        assert all(role.is_system for role in store.list_roles())


class TestReferenceData:
    def test_system_role_cannot_be_deleted(self, store):
        seed_defaults(store)
        with pytest.raises(ValueError):
            store.delete_role("MANAGER")

    def test_custom_role_delete_removes_assignments(self, store, make_user):
        seed_defaults(store)
        store.create_role(Role(code="NIGHT_SHIFT", name="Night Shift"))
        store.set_role_permissions("NIGHT_SHIFT", ["SALE_VIEW"])
        user = make_user("nina", tenant_id=1)
        store.assign_role(user.id, "NIGHT_SHIFT", 1)
        assert store.delete_role("NIGHT_SHIFT") is True
        assert store.get_role_grants(user.id, 1) == []
        assert store.delete_role("NIGHT_SHIFT") is False

    @pytest.mark.parametrize("code", ["sale_view", "SV", "1SALE", "SALE-VIEW", "A" * 51])
    def test_invalid_permission_code(self, store, code):
        with pytest.raises(ValueError):
            store.create_permission(Permission(code=code, name="x", module="x"))

    def test_unknown_codes_in_role_defaults(self, store):
        seed_defaults(store)
        with pytest.raises(ReferenceNotFound):
            store.set_role_permissions("MANAGER", ["SALE_VIEW", "TELEPORT"])
        assert store.get_role_permission_codes("MANAGER") == set(DEFAULT_ROLE_PERMISSIONS["MANAGER"])

    def test_tenant_kind_requires_tenant(self, store):
        with pytest.raises(ValueError):
            store.create_user(User(username="drifter", kind="tenant_staff", tenant_id=None))

    def test_usernames_are_case_folded(self, store, make_user):
        make_user("Alice", tenant_id=1)
        assert store.get_user_by_username("ALICE").username == "alice"
