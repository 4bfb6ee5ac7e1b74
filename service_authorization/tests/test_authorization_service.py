"""
Unit tests for AuthorizationService.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from service_authorization.app.audit.logger import AuditLogger
from service_authorization.app.audit.models import AuditResult
from service_authorization.app.audit.sinks import MemoryAuditSink
from service_authorization.app.cache.backends import MemoryCacheBackend
from service_authorization.app.cache.permission_cache import PermissionCache
from service_authorization.app.errors import AuthorizationError, AuthorizationErrorCode, CacheBackendError
from service_authorization.app.permissions.manager import PermissionManager, REASON_NO_MATCH
from service_authorization.app.permissions.models import (
    CheckOptions, Condition, Permission, Role,
)
from service_authorization.app.permissions.requirements import (
    AllPermissionsRequirement, AnyPermissionRequirement, MinimumRoleRequirement,
    PermissionRequirement, ResourceAccessRequirement, RoleRequirement,
)
from service_authorization.app.service import AuthorizationService, REASON_RESOURCE_DENIED
from conftest import DummyMetrics, GatedBackend, make_user


class TestAuthorizationService:
    """Test cases for AuthorizationService."""

    @pytest.fixture
    def sink(self):
        return MemoryAuditSink()

    @pytest.fixture
    def metrics(self):
        return DummyMetrics()

    @pytest.fixture
    def service(self, clock, sink, metrics):
        return AuthorizationService(
            permission_manager=PermissionManager(clock=clock),
            cache=PermissionCache(MemoryCacheBackend(), timeout=1.0),
            audit_logger=AuditLogger(sink),
            metrics=metrics,
        )

    async def _audited(self, service, sink):
        await service.audit.flush_all()
        return sink.entries

    @pytest.mark.asyncio
    async def test_role_catalog_decisions(self, service, ppl_user):
        assert (await service.check_permission(ppl_user, "submissions", "create")).allowed
        denied = await service.check_permission(ppl_user, "submissions", "approve")
        assert not denied.allowed
        assert denied.reason == REASON_NO_MATCH

    @pytest.mark.asyncio
    async def test_no_user_is_unauthorized(self, service):
        with pytest.raises(AuthorizationError) as exc_info:
            await service.check_permission(None, "submissions", "create")
        assert exc_info.value.error_code == AuthorizationErrorCode.UNAUTHORIZED
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_repeated_check_hits_cache(self, service, dinas_user, sink, metrics):
        service.permission_manager.add_role_permission(
            Role.DINAS,
            Permission("submissions", "view_own", (Condition("created_by", "eq", "${user.id}"),)),
        )
        context = {"created_by": "u1"}
        first = await service.check_permission(dinas_user, "submissions", "view_own", context=context)
        second = await service.check_permission(dinas_user, "submissions", "view_own", context=context)
        assert first.allowed and not first.cache_hit
        assert second == first
        assert second.cache_hit

        other = await service.check_permission(dinas_user, "submissions", "view_own", context={"created_by": "u2"})
        assert not other.allowed
        assert not other.cache_hit

        entries = await self._audited(service, sink)
        assert [e.metadata["cache_hit"] for e in entries] == [False, True, False]
        assert all(e.action == "authz_view_own" for e in entries)

        sources = [labels["source"] for name, _, labels in metrics.counters if name == "authorization_checks_total"]
        assert sources == ["computed", "cache", "computed"]

    @pytest.mark.asyncio
    async def test_log_access_option(self, service, ppl_user, sink):
        await service.check_permission(ppl_user, "medicines", "read", options=CheckOptions(log_access=False))
        assert await self._audited(service, sink) == []

    @pytest.mark.asyncio
    async def test_super_admin(self, service, admin_user):
        result = await service.check_permission(admin_user, "settings", "anything")
        assert result.allowed
        assert service.build_access_query(admin_user, "submissions", "read") == {}
        assert service.can_access_resource(admin_user, "users", "u2", "delete")

        restricted = await service.check_permission(
            admin_user, "settings", "anything", options=CheckOptions(allow_super_admin=False)
        )
        assert not restricted.allowed
        assert (await service.cache.get_stats())["size"] == 1

    @pytest.mark.asyncio
    async def test_resource_guard_applies_with_resource_id(self, service, ppl_user):
        own = await service.check_permission(ppl_user, "submissions", "read", "s1", {"created_by": "u9"})
        assert own.allowed

        other = await service.check_permission(ppl_user, "submissions", "read", "s2", {"created_by": "u2"})
        assert not other.allowed
        assert other.reason == REASON_RESOURCE_DENIED

        nested = await service.check_permission(
            ppl_user, "submissions", "read", "s3", {"resource": {"created_by": "u9"}}
        )
        assert nested.allowed

        unguarded = await service.check_permission(ppl_user, "medicines", "read", "m1")
        assert unguarded.allowed

    @pytest.mark.asyncio
    async def test_dynamic_grant_and_expiry(self, service, ppl_user, clock, sink):
        assert not (await service.check_permission(ppl_user, "medicines", "delete")).allowed

        await service.grant_dynamic_permission(
            "u9", Permission("medicines", "delete"), granted_by="a1", expires_at=clock() + timedelta(hours=1)
        )
        granted = await service.check_permission(ppl_user, "medicines", "delete")
        assert granted.allowed
        assert not granted.cache_hit

        clock.advance(hours=2)
        await service.cache.invalidate_user_permissions("u9")
        assert not (await service.check_permission(ppl_user, "medicines", "delete")).allowed

        grants = [e for e in await self._audited(service, sink) if e.action == "grant_dynamic_permission"]
        assert len(grants) == 1
        assert grants[0].user_id == "a1"
        assert grants[0].context["permission"] == "medicines:delete"

    @pytest.mark.asyncio
    async def test_revoke_takes_effect_immediately(self, service, ppl_user):
        await service.grant_dynamic_permission("u9", Permission("inventory", "delete"), granted_by="a1")
        assert (await service.check_permission(ppl_user, "inventory", "delete")).allowed
        assert (await service.check_permission(ppl_user, "inventory", "delete")).cache_hit

        assert await service.revoke_dynamic_permission("u9", "inventory", "delete", revoked_by="a1") == 1
        assert not (await service.check_permission(ppl_user, "inventory", "delete")).allowed

    @pytest.mark.asyncio
    async def test_clear_grants(self, service, ppl_user):
        await service.grant_dynamic_permission("u9", Permission("inventory", "delete"), granted_by="a1")
        await service.grant_dynamic_permission("u9", Permission("inventory", "update"), granted_by="a1")
        assert len(service.get_dynamic_permissions("u9")) == 2
        assert await service.clear_user_dynamic_permissions("u9", cleared_by="a1") == 2
        assert service.get_dynamic_permissions("u9") == []

    @pytest.mark.asyncio
    async def test_grant_validation(self, service, clock):
        with pytest.raises(AuthorizationError) as exc_info:
            await service.grant_dynamic_permission("u9", Permission("Medicines", "delete"), granted_by="a1")
        assert exc_info.value.error_code == AuthorizationErrorCode.INVALID_PERMISSION
        assert exc_info.value.details["invalid_permissions"][0]["index"] == 0

        with pytest.raises(AuthorizationError) as exc_info:
            await service.grant_dynamic_permission(
                "u9", Permission("medicines", "delete"), granted_by="a1", expires_at=clock() - timedelta(minutes=1)
            )
        assert exc_info.value.error_code == AuthorizationErrorCode.PERMISSION_EXPIRED
        assert service.get_dynamic_permissions("u9") == []

    @pytest.mark.asyncio
    async def test_revoke_during_inflight_check(self, clock, sink, ppl_user):
        backend = GatedBackend()
        service = AuthorizationService(
            permission_manager=PermissionManager(clock=clock),
            cache=PermissionCache(backend, timeout=1.0),
            audit_logger=AuditLogger(sink),
        )
        await service.grant_dynamic_permission("u9", Permission("medicines", "delete"), granted_by="a1")

        check = asyncio.create_task(service.check_permission(ppl_user, "medicines", "delete"))
        await backend.entered.wait()
        await service.revoke_dynamic_permission("u9", "medicines", "delete", revoked_by="a1")
        backend.release.set()

        assert (await check).allowed
        after = await service.check_permission(ppl_user, "medicines", "delete")
        assert not after.allowed
        assert not after.cache_hit

    @pytest.mark.asyncio
    async def test_revoke_for_user_id_with_glob_characters(self, service):
        user = make_user("u[9]", Role.PPL)
        await service.grant_dynamic_permission("u[9]", Permission("medicines", "delete"), granted_by="a1")
        assert (await service.check_permission(user, "medicines", "delete")).allowed

        await service.revoke_dynamic_permission("u[9]", "medicines", "delete", revoked_by="a1")
        after = await service.check_permission(user, "medicines", "delete")
        assert not after.allowed
        assert not after.cache_hit

    @pytest.mark.asyncio
    async def test_grant_rolled_back_on_invalidation_failure(self, service, ppl_user, sink):
        existing = await service.grant_dynamic_permission("u9", Permission("medicines", "delete"), granted_by="a1")

        with patch.object(
            service.cache, "invalidate_user_permissions",
            AsyncMock(side_effect=CacheBackendError("delete_pattern", "down"))
        ):
            with pytest.raises(CacheBackendError):
                await service.grant_dynamic_permission("u9", Permission("medicines", "delete"), granted_by="a2")
            with pytest.raises(CacheBackendError):
                await service.grant_dynamic_permission("u9", Permission("reports", "read"), granted_by="a2")

        assert [g.id for g in service.get_dynamic_permissions("u9")] == [existing.id]
        assert not service.has_permission(ppl_user, "reports", "read")

        grants = [e for e in await self._audited(service, sink) if e.action == "grant_dynamic_permission"]
        assert [e.result for e in grants] == [AuditResult.GRANTED, AuditResult.DENIED, AuditResult.DENIED]
        assert grants[-1].user_id == "a2"
        assert grants[-1].reason == "rolled back: cache invalidation failed"
        assert grants[-1].context["permission"] == "reports:read"

    @pytest.mark.asyncio
    async def test_revoke_stands_when_invalidation_fails(self, service, ppl_user, sink):
        await service.grant_dynamic_permission("u9", Permission("medicines", "delete"), granted_by="a1")
        with patch.object(
            service.cache, "invalidate_user_permissions",
            AsyncMock(side_effect=CacheBackendError("delete_pattern", "down"))
        ):
            with pytest.raises(CacheBackendError):
                await service.revoke_dynamic_permission("u9", "medicines", "delete", revoked_by="a1")

        assert not service.has_permission(ppl_user, "medicines", "delete")
        actions = [e.action for e in await self._audited(service, sink)]
        assert "revoke_dynamic_permission" in actions

    @pytest.mark.asyncio
    async def test_role_update_rolled_back_on_invalidation_failure(self, service, ppl_user, sink):
        before = service.get_role_permissions(Role.PPL)
        with patch.object(
            service.cache, "invalidate_role_permissions",
            AsyncMock(side_effect=CacheBackendError("delete_pattern", "down"))
        ):
            with pytest.raises(CacheBackendError):
                await service.update_role_permissions(Role.PPL, [Permission("reports", "read")], updated_by="a1")

        assert service.get_role_permissions(Role.PPL) == before
        assert not service.has_permission(ppl_user, "reports", "read")
        assert service.has_permission(ppl_user, "submissions", "create")

        entries = [e for e in await self._audited(service, sink) if e.action == "update_role_permissions"]
        assert [e.result for e in entries] == [AuditResult.DENIED]

    @pytest.mark.asyncio
    async def test_update_role_permissions(self, service, ppl_user, sink):
        assert not (await service.check_permission(ppl_user, "reports", "read")).allowed

        updated = await service.update_role_permissions(
            Role.PPL, service.get_role_permissions(Role.PPL) + [Permission("reports", "read")], updated_by="a1"
        )
        assert Permission("reports", "read") in updated
        result = await service.check_permission(ppl_user, "reports", "read")
        assert result.allowed
        assert not result.cache_hit

        with pytest.raises(AuthorizationError) as exc_info:
            await service.update_role_permissions(Role.PPL, [Permission("reports", "read all")], updated_by="a1")
        assert exc_info.value.error_code == AuthorizationErrorCode.INVALID_PERMISSION
        assert exc_info.value.status_code == 400
        assert Permission("reports", "read") in service.get_role_permissions(Role.PPL)

        actions = [e.action for e in await self._audited(service, sink)]
        assert actions.count("update_role_permissions") == 1

    @pytest.mark.asyncio
    async def test_cache_failure_falls_back(self, clock, ppl_user, sink):
        backend = MagicMock(spec=MemoryCacheBackend)
        backend.get = AsyncMock(side_effect=ConnectionError("down"))
        backend.set = AsyncMock(side_effect=ConnectionError("down"))
        service = AuthorizationService(
            permission_manager=PermissionManager(clock=clock),
            cache=PermissionCache(backend),
            audit_logger=AuditLogger(sink),
        )
        result = await service.check_permission(ppl_user, "submissions", "create")
        assert result.allowed
        assert service.cache.errors == 2
        snapshot = await service.get_user_permissions(ppl_user)
        assert snapshot.user_id == "u9"

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_change_decision(self, service, ppl_user):
        with patch.object(service.audit, "_prepare", side_effect=RuntimeError("audit down")):
            result = await service.check_permission(ppl_user, "submissions", "create")
        assert result.allowed

    @pytest.mark.asyncio
    async def test_unexpected_error_is_forbidden(self, service, ppl_user, sink):
        with patch.object(service.permission_manager, "check_permission", side_effect=RuntimeError("boom")):
            with pytest.raises(AuthorizationError) as exc_info:
                await service.check_permission(ppl_user, "submissions", "create")
        assert exc_info.value.error_code == AuthorizationErrorCode.FORBIDDEN
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        entries = await self._audited(service, sink)
        assert entries[-1].action == "permission_check_error"

    def test_sync_helpers(self, service, ppl_user):
        assert service.has_permission(ppl_user, "medicines", "read")
        assert service.has_any_permission(ppl_user, [("reports", "export"), ("qrcode", "scan")])
        assert not service.has_all_permissions(ppl_user, [("reports", "export"), ("qrcode", "scan")])
        assert service.get_missing_permissions(ppl_user, [("reports", "export")]) == [("reports", "export")]

    def test_resource_helpers(self, service, ppl_user):
        records = [{"id": "s1", "created_by": "u9"}, {"id": "s2", "created_by": "u2"}]
        assert service.filter_accessible_resources(ppl_user, "submissions", records) == records[:1]
        assert service.build_access_query(ppl_user, "submissions", "read") == {"created_by": "u9"}
        assert not service.can_access_resource(ppl_user, "submissions", "s2", "read", records[1])

    @pytest.mark.asyncio
    async def test_user_permissions_are_cached(self, service, ppl_user):
        first = await service.get_user_permissions(ppl_user)
        with patch.object(service.permission_manager, "get_user_permissions") as computed:
            second = await service.get_user_permissions(ppl_user)
        computed.assert_not_called()
        assert second == first


class TestEnforce:
    """Test cases for requirement enforcement."""

    @pytest.fixture
    def sink(self):
        return MemoryAuditSink()

    @pytest.fixture
    def service(self, clock, sink):
        return AuthorizationService(
            permission_manager=PermissionManager(clock=clock),
            cache=PermissionCache(MemoryCacheBackend(), timeout=1.0),
            audit_logger=AuditLogger(sink),
        )

    @pytest.mark.asyncio
    async def test_role_requirement(self, service, ppl_user, admin_user, sink):
        await service.enforce(RoleRequirement((Role.ADMIN,)), admin_user)
        with pytest.raises(AuthorizationError) as exc_info:
            await service.enforce(RoleRequirement((Role.ADMIN, Role.DINAS)), ppl_user)
        assert exc_info.value.error_code == AuthorizationErrorCode.INSUFFICIENT_ROLE
        assert exc_info.value.details["required_roles"] == ["ADMIN", "DINAS"]

        events = await service.get_security_events()
        assert events == []
        await service.audit.flush_all()
        events = await service.get_security_events()
        assert [e.action for e in events] == ["security_insufficient_role"]

    @pytest.mark.asyncio
    async def test_minimum_role_requirement(self, service, dinas_user, ppl_user):
        await service.enforce(MinimumRoleRequirement(Role.POPT), dinas_user)
        with pytest.raises(AuthorizationError) as exc_info:
            await service.enforce(MinimumRoleRequirement(Role.POPT), ppl_user)
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_permission_requirements(self, service, ppl_user):
        await service.enforce(PermissionRequirement("submissions", "create"), ppl_user)
        with pytest.raises(AuthorizationError) as exc_info:
            await service.enforce(PermissionRequirement("submissions", "approve"), ppl_user)
        assert exc_info.value.error_code == AuthorizationErrorCode.INSUFFICIENT_PERMISSION
        assert exc_info.value.details["missing_permissions"] == ["submissions:approve"]

        await service.enforce(AnyPermissionRequirement((("reports", "export"), ("medicines", "read"))), ppl_user)
        with pytest.raises(AuthorizationError) as exc_info:
            await service.enforce(AnyPermissionRequirement((("reports", "export"),)), ppl_user)
        assert exc_info.value.details["required_any"] == ["reports:export"]

        with pytest.raises(AuthorizationError) as exc_info:
            await service.enforce(
                AllPermissionsRequirement((("medicines", "read"), ("reports", "export"), ("users", "delete"))),
                ppl_user,
            )
        assert exc_info.value.details["missing_permissions"] == ["reports:export", "users:delete"]

    @pytest.mark.asyncio
    async def test_resource_access_requirement(self, service, ppl_user):
        requirement = ResourceAccessRequirement("submissions", "read")
        await service.enforce(requirement, ppl_user, resource_id="s1", resource_data={"created_by": "u9"})

        with pytest.raises(AuthorizationError) as exc_info:
            await service.enforce(requirement, ppl_user, resource_id="s2", resource_data={"created_by": "u2"})
        assert exc_info.value.error_code == AuthorizationErrorCode.RESOURCE_NOT_FOUND
        assert exc_info.value.status_code == 404

        with pytest.raises(AuthorizationError) as exc_info:
            await service.enforce(requirement, ppl_user)
        assert exc_info.value.error_code == AuthorizationErrorCode.RESOURCE_NOT_FOUND

    @pytest.mark.asyncio
    async def test_missing_user_and_unknown_requirement(self, service, ppl_user):
        with pytest.raises(AuthorizationError) as exc_info:
            await service.enforce(PermissionRequirement("submissions", "create"), None)
        assert exc_info.value.error_code == AuthorizationErrorCode.UNAUTHORIZED

        with pytest.raises(ValueError):
            await service.enforce(object(), ppl_user)
