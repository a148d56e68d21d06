from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import StrEnum
from types import MappingProxyType
from typing import Any


class Operation(StrEnum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    ALL = "all"


CONCRETE_OPERATIONS: tuple[Operation, ...] = (
    Operation.READ,
    Operation.CREATE,
    Operation.UPDATE,
    Operation.DELETE,
)

def _empty() -> Mapping[str, Any]:
    return MappingProxyType({})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class RequestMeta:
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True, slots=True)
class AuthorizationContext:
    """Per-operation authorization context.

    Built once per logical operation, enriched by the resolver manager and then
    treated as read-only. ``resolved`` is exposed as a read-only mapping.
    """

    user_id: str
    tenant_id: str | None = None
    roles: frozenset[str] = frozenset()
    is_system: bool = False
    resolved: Mapping[str, Any] = field(default_factory=_empty)
    request_meta: RequestMeta | None = None
    organization_ids: tuple[str, ...] = ()
    permissions: frozenset[str] = frozenset()
    attributes: Mapping[str, Any] = field(default_factory=_empty)
    meta: Mapping[str, Any] = field(default_factory=_empty)
    timestamp: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        object.__setattr__(self, "roles", frozenset(self.roles))
        object.__setattr__(self, "permissions", frozenset(self.permissions))
        object.__setattr__(self, "organization_ids", tuple(self.organization_ids))
        for name in ("resolved", "attributes", "meta"):
            value = getattr(self, name)
            if not isinstance(value, MappingProxyType):
                object.__setattr__(self, name, MappingProxyType(dict(value)))

    @property
    def request_id(self) -> str | None:
        return self.request_meta.request_id if self.request_meta is not None else None

    def has_role(self, *roles: str) -> bool:
        return any(role in self.roles for role in roles)

    def has_any_role(self, roles: Iterable[str]) -> bool:
        return self.has_role(*roles)

    def with_resolved(self, resolved: Mapping[str, Any]) -> AuthorizationContext:
        return replace(self, resolved=MappingProxyType(dict(resolved)))


@dataclass(frozen=True, slots=True)
class PolicyEvaluationContext:
    """What a policy predicate sees: the caller plus the row/payload under evaluation."""

    auth: AuthorizationContext
    table: str
    operation: Operation = Operation.READ
    row: Mapping[str, Any] = field(default_factory=_empty)
    data: Mapping[str, Any] | None = None

    @property
    def resolved(self) -> Mapping[str, Any]:
        return self.auth.resolved

    @property
    def meta(self) -> Mapping[str, Any]:
        return self.auth.meta
