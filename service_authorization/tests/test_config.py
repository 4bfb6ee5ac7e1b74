"""
Unit tests for configuration and service wiring.
"""

import pytest
from pydantic import ValidationError

from shared.metrics import MetricsCollector

from service_authorization.app.audit.models import AuditLevel
from service_authorization.app.audit.sinks import JsonLinesAuditSink, MemoryAuditSink, PostgresAuditSink
from service_authorization.app.cache.backends import MemoryCacheBackend, RedisCacheBackend
from service_authorization.app.config import get_authorization_config
from service_authorization.app.errors import (
    AuthorizationErrorCode, CacheBackendError, create_authorization_error,
)
from service_authorization.app.service import build_authorization_service


class TestAuthorizationConfig:
    """Test cases for AuthorizationConfig."""

    def test_defaults(self):
        config = get_authorization_config()
        assert config.service_name == "authorization"
        assert config.port == 8020
        assert config.permission_ttl == 300
        assert config.user_permission_ttl == 600
        assert config.audit_batch_size == 100
        assert config.audit_flush_interval == 5.0

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("AUTHZ_CACHE_BACKEND", "redis")
        monkeypatch.setenv("AUTHZ_PERMISSION_TTL", "60")
        monkeypatch.setenv("AUTHZ_AUDIT_LEVEL", "full")
        config = get_authorization_config()
        assert config.cache_backend == "redis"
        assert config.permission_ttl == 60
        assert config.audit_level == "full"

    def test_invalid_values_rejected(self):
        with pytest.raises(ValidationError):
            get_authorization_config(cache_backend="memcached")
        with pytest.raises(ValidationError):
            get_authorization_config(audit_batch_size=0)

    def test_build_from_config(self, tmp_path):
        config = get_authorization_config(
            cache_backend="redis",
            cache_timeout_ms=20,
            audit_sink="file",
            audit_log_path=str(tmp_path / "audit.jsonl"),
            audit_level="basic",
            allow_super_admin_bypass=False,
        )
        service = build_authorization_service(config)
        assert isinstance(service.cache.backend, RedisCacheBackend)
        assert service.cache.timeout == pytest.approx(0.02)
        assert isinstance(service.audit.sink, JsonLinesAuditSink)
        assert service.audit.level == AuditLevel.BASIC
        assert service.allow_super_admin is False
        assert service.resource_guard.permission_manager is service.permission_manager

    def test_default_wiring(self):
        service = build_authorization_service(get_authorization_config(cache_max_size=5))
        assert isinstance(service.cache.backend, MemoryCacheBackend)
        assert service.cache.backend.max_size == 5
        assert isinstance(service.audit.sink, MemoryAuditSink)

    def test_postgres_sink(self):
        service = build_authorization_service(get_authorization_config(audit_sink="postgres"))
        assert isinstance(service.audit.sink, PostgresAuditSink)


class TestErrors:
    """Error taxonomy."""

    def test_status_codes(self):
        expected = {
            AuthorizationErrorCode.UNAUTHORIZED: 401,
            AuthorizationErrorCode.FORBIDDEN: 403,
            AuthorizationErrorCode.RESOURCE_NOT_FOUND: 404,
            AuthorizationErrorCode.INVALID_PERMISSION: 400,
            AuthorizationErrorCode.RATE_LIMIT_EXCEEDED: 429,
            AuthorizationErrorCode.AUDIT_LOG_FAILED: 500,
        }
        for code, status in expected.items():
            assert create_authorization_error(code).status_code == status

    def test_error_response(self):
        error = create_authorization_error(AuthorizationErrorCode.INSUFFICIENT_ROLE, {"required_roles": ["ADMIN"]})
        response = error.to_response()
        assert response.code == "INSUFFICIENT_ROLE"
        assert response.message == "Insufficient role privileges"
        assert response.details == {"required_roles": ["ADMIN"]}

    def test_cache_backend_error(self):
        error = CacheBackendError("get", "timed out", {"key": "permission:x"})
        assert error.status_code == 503
        assert error.details == {"operation": "get", "key": "permission:x"}


class TestMetricsCollector:
    """Authorization metrics registration."""

    def test_authorization_metrics_exported(self):
        metrics = MetricsCollector("authorization")
        metrics.increment_counter("authorization_checks_total", decision="allow", source="computed")
        metrics.observe_histogram("authorization_check_duration_seconds", 0.002)
        metrics.set_gauge("audit_queue_size", 3)
        metrics.increment_counter("unknown_metric")

        output = metrics.export().decode()
        assert 'authorization_checks_total{decision="allow",source="computed"} 1.0' in output
        assert "audit_queue_size 3.0" in output

    def test_collectors_are_independent(self):
        first = MetricsCollector("authorization")
        second = MetricsCollector("authorization")
        first.increment_counter("audit_entries_flushed_total", 5)
        assert "audit_entries_flushed_total 0.0" in second.export().decode()
