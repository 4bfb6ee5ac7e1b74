"""
Audit trail data models.
"""

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Iterable, List, Optional

REDACTED = "[REDACTED]"
DEFAULT_SENSITIVE_FIELDS = ("password", "token", "secret", "key", "authorization", "cookie")


class AuditResult(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"


class AuditLevel(str, Enum):
    """How much request detail is attached to an entry."""
    BASIC = "basic"
    DETAILED = "detailed"
    FULL = "full"


@dataclass(frozen=True)
class AuditLogEntry:
    """Append-only record of one decision or security relevant event."""
    user_id: str
    action: str
    resource: str
    result: AuditResult
    resource_id: Optional[str] = None
    reason: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action,
            "resource": self.resource,
            "resource_id": self.resource_id,
            "result": AuditResult(self.result).value,
            "reason": self.reason,
            "context": self.context,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditLogEntry":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            action=data["action"],
            resource=data["resource"],
            resource_id=data.get("resource_id"),
            result=AuditResult(data["result"]),
            reason=data.get("reason"),
            context=data.get("context"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            metadata=data.get("metadata") or {},
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass
class RequestMeta:
    """Request details an entry may carry; supplied by the HTTP layer."""
    method: Optional[str] = None
    path: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, Any] = field(default_factory=dict)
    body: Any = None
    client_host: Optional[str] = None

    @classmethod
    def from_request(cls, request, body: Any = None) -> "RequestMeta":
        """Build from a Starlette/FastAPI request."""
        return cls(
            method=request.method,
            path=request.url.path,
            headers={k.lower(): v for k, v in request.headers.items()},
            query=dict(request.query_params),
            body=body,
            client_host=request.client.host if request.client else None,
        )

    @property
    def ip_address(self) -> Optional[str]:
        forwarded = self.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
        real_ip = self.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()
        return self.client_host

    @property
    def user_agent(self) -> Optional[str]:
        return self.headers.get("user-agent")


@dataclass
class AuditLogOptions:
    level: AuditLevel = AuditLevel.DETAILED
    include_context: bool = True
    include_headers: bool = False
    include_body: bool = False
    exclude_fields: List[str] = field(default_factory=list)


@dataclass
class AuditQuery:
    """Filter over stored audit entries."""
    user_id: Optional[str] = None
    resource: Optional[str] = None
    resource_id: Optional[str] = None
    action_prefix: Optional[str] = None
    result: Optional[AuditResult] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: int = 100

    def matches(self, entry: AuditLogEntry) -> bool:
        if self.user_id is not None and entry.user_id != self.user_id:
            return False
        if self.resource is not None and entry.resource != self.resource:
            return False
        if self.resource_id is not None and entry.resource_id != self.resource_id:
            return False
        if self.action_prefix is not None and not entry.action.startswith(self.action_prefix):
            return False
        if self.result is not None and AuditResult(entry.result) != AuditResult(self.result):
            return False
        if self.since is not None and entry.timestamp < self.since:
            return False
        if self.until is not None and entry.timestamp > self.until:
            return False
        return True


def _is_sensitive(name: str, sensitive: Iterable[str]) -> bool:
    lowered = name.lower()
    return any(s.lower() in lowered for s in sensitive)


def redact(value: Any, sensitive: Iterable[str] = DEFAULT_SENSITIVE_FIELDS) -> Any:
    """Copy of ``value`` with sensitive keys replaced by ``[REDACTED]`` at any depth."""
    sensitive = tuple(sensitive)
    if isinstance(value, Mapping):
        return {
            k: (REDACTED if isinstance(k, str) and _is_sensitive(k, sensitive) else redact(v, sensitive))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item, sensitive) for item in value]
    return value
