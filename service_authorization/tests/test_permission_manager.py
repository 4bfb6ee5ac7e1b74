"""
Unit tests for PermissionManager.
"""

from datetime import timedelta

import pytest

from service_authorization.app.permissions.catalog import PermissionCatalog, default_role_permissions
from service_authorization.app.permissions.manager import (
    PermissionManager, REASON_CONDITIONS_NOT_MET, REASON_GRANTED, REASON_NO_MATCH,
    REASON_SUPER_ADMIN,
)
from service_authorization.app.permissions.models import (
    CheckOptions, Condition, Permission, Role,
)
from conftest import make_user


class TestPermissionManager:
    """Test cases for PermissionManager."""

    @pytest.fixture
    def manager(self, clock):
        return PermissionManager(clock=clock)

    def test_catalog_permission_allows(self, manager, ppl_user):
        result = manager.check_permission(ppl_user, "submissions", "create")
        assert result.allowed
        assert result.reason == REASON_GRANTED
        assert result.applied_permissions == [Permission("submissions", "create")]

    def test_missing_permission_denies(self, manager, ppl_user):
        result = manager.check_permission(ppl_user, "submissions", "approve")
        assert not result.allowed
        assert result.reason == REASON_NO_MATCH

    def test_every_unconditioned_catalog_entry_allows(self, manager):
        for role, row in default_role_permissions().items():
            user = make_user(f"user-{role.value}", role)
            options = CheckOptions(allow_super_admin=False)
            for permission in row:
                if permission.conditions:
                    continue
                result = manager.check_permission(
                    user, permission.resource, permission.action, options=options
                )
                assert result.allowed, permission.key

    def test_super_admin_bypass(self, manager, admin_user):
        result = manager.check_permission(admin_user, "anything", "whatever")
        assert result.allowed
        assert result.reason == REASON_SUPER_ADMIN

        result = manager.check_permission(
            admin_user, "anything", "whatever", options=CheckOptions(allow_super_admin=False)
        )
        assert not result.allowed

    def test_owner_condition(self, manager, dinas_user):
        manager.add_role_permission(
            Role.DINAS,
            Permission("submissions", "view_own", (Condition("created_by", "eq", "${user.id}"),)),
        )
        allowed = manager.check_permission(dinas_user, "submissions", "view_own", context={"created_by": "u1"})
        assert allowed.allowed
        assert allowed.evaluated_conditions[0].result

        denied = manager.check_permission(dinas_user, "submissions", "view_own", context={"created_by": "u2"})
        assert not denied.allowed
        assert denied.reason == REASON_CONDITIONS_NOT_MET
        assert denied.evaluated_conditions[0].actual_value == "u2"

    def test_any_satisfied_candidate_allows(self, manager, popt_user):
        # POPT holds both a plain and a status-conditioned distribute permission.
        result = manager.check_permission(popt_user, "transactions", "distribute", context={"status": "draft"})
        assert result.allowed
        assert result.applied_permissions == [Permission("transactions", "distribute")]

    def test_conditioned_update_for_field_worker(self, manager, ppl_user):
        context = {"status": "draft", "created_by": ppl_user.id}
        assert manager.has_permission(ppl_user, "submissions", "update", context)
        assert not manager.has_permission(ppl_user, "submissions", "update", {"status": "pending", "created_by": ppl_user.id})
        assert not manager.has_permission(ppl_user, "submissions", "update", {"status": "draft", "created_by": "other"})
        assert not manager.has_permission(ppl_user, "submissions", "update")

    def test_wildcard_permission(self, clock):
        catalog = PermissionCatalog({Role.POPT: [Permission("*", "*")]})
        manager = PermissionManager(catalog=catalog, clock=clock)
        user = make_user("p2", Role.POPT)
        assert manager.has_permission(user, "medicines", "delete")
        assert manager.has_permission(user, "anything", "at_all")

    def test_dynamic_grant_lifecycle(self, manager, ppl_user, clock):
        assert not manager.has_permission(ppl_user, "medicines", "delete")

        grant = manager.add_dynamic_permission(
            ppl_user.id,
            Permission("medicines", "delete"),
            granted_by="a1",
            expires_at=clock() + timedelta(hours=1),
        )
        assert grant.granted_at == clock()
        assert manager.has_permission(ppl_user, "medicines", "delete")

        clock.advance(hours=1, minutes=1)
        assert not manager.has_permission(ppl_user, "medicines", "delete")
        assert manager.get_dynamic_permissions(ppl_user.id) == []
        assert manager.get_dynamic_permissions(ppl_user.id, include_expired=True) == [grant]

    def test_grants_are_per_user(self, manager, ppl_user):
        manager.add_dynamic_permission("someone-else", Permission("medicines", "delete"), granted_by="a1")
        assert not manager.has_permission(ppl_user, "medicines", "delete")

    def test_remove_and_clear_grants(self, manager, ppl_user):
        manager.add_dynamic_permission(ppl_user.id, Permission("medicines", "delete"), granted_by="a1")
        manager.add_dynamic_permission(ppl_user.id, Permission("inventory", "update"), granted_by="a1")

        assert manager.remove_dynamic_permission(ppl_user.id, "medicines", "delete") == 1
        assert not manager.has_permission(ppl_user, "medicines", "delete")
        assert manager.has_permission(ppl_user, "inventory", "update")

        assert manager.clear_dynamic_permissions(ppl_user.id) == 1
        assert manager.clear_dynamic_permissions(ppl_user.id) == 0
        assert not manager.has_permission(ppl_user, "inventory", "update")

    def test_any_all_and_missing(self, manager, ppl_user):
        wanted = [("submissions", "create"), ("submissions", "approve"), ("reports", "export")]
        assert manager.has_any_permission(ppl_user, wanted)
        assert not manager.has_all_permissions(ppl_user, wanted)
        assert manager.get_missing_permissions(ppl_user, wanted) == [
            ("submissions", "approve"), ("reports", "export"),
        ]
        assert manager.has_all_permissions(ppl_user, [("medicines", "read"), ("qrcode", "scan")])
        assert not manager.has_any_permission(ppl_user, [])

    def test_user_permissions_snapshot(self, manager, ppl_user):
        manager.add_dynamic_permission(ppl_user.id, Permission("medicines", "delete"), granted_by="a1")
        snapshot = manager.get_user_permissions(ppl_user)
        assert snapshot.role == Role.PPL
        assert Permission("submissions", "create") in snapshot.role_permissions
        assert [g.permission.key for g in snapshot.dynamic_permissions] == ["medicines:delete"]

    def test_role_management(self, manager, ppl_user):
        manager.set_role_permissions(Role.PPL, [Permission("reports", "read")])
        assert manager.has_permission(ppl_user, "reports", "read")
        assert not manager.has_permission(ppl_user, "submissions", "create")
        assert manager.remove_role_permission(Role.PPL, "reports", "read") == 1
        assert manager.get_role_permissions(Role.PPL) == []
        assert manager.get_permission_matrix()["PPL"] == {}

    def test_validate_permission(self):
        assert PermissionManager.validate_permission(Permission("files", "read")) == []
        assert PermissionManager.validate_permission(Permission("files!", "read"))
