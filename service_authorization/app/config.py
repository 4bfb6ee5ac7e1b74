"""
Configuration for the Authorization Service.
"""

from typing import List
from pydantic import Field

from shared.config import ServiceConfig


class AuthorizationConfig(ServiceConfig):
    """Settings read from ``AUTHZ_*`` environment variables."""

    service_name: str = "authorization"
    port: int = 8020

    # Decision cache
    cache_enabled: bool = Field(default=True)
    cache_backend: str = Field(default="memory", pattern="^(memory|redis)$")
    permission_ttl: int = Field(default=300, ge=1)
    user_permission_ttl: int = Field(default=600, ge=1)
    cache_max_size: int = Field(default=1000, ge=1)
    cache_timeout_ms: int = Field(default=50, ge=1)

    # Audit trail
    audit_enabled: bool = Field(default=True)
    audit_level: str = Field(default="detailed", pattern="^(basic|detailed|full)$")
    audit_sink: str = Field(default="memory", pattern="^(memory|file|postgres)$")
    audit_log_path: str = Field(default="audit.log.jsonl")
    audit_batch_size: int = Field(default=100, ge=1)
    audit_flush_interval: float = Field(default=5.0, gt=0)
    audit_max_queue_size: int = Field(default=1000, ge=1)
    audit_write_timeout: float = Field(default=5.0, gt=0)
    audit_retention_days: int = Field(default=365, ge=1)
    audit_sensitive_fields: List[str] = Field(default_factory=lambda: ["password", "token", "secret", "key", "authorization", "cookie"])

    # Security
    allow_super_admin_bypass: bool = Field(default=True)


def get_authorization_config(**overrides) -> AuthorizationConfig:
    """Load configuration, applying explicit overrides over the environment."""
    return AuthorizationConfig(**overrides)
