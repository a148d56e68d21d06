from __future__ import annotations

from collections.abc import Iterable
from typing import Any


class AuthorizationError(Exception):
    """Base authorization error for resolution, policy and field enforcement failures."""

    code = "AUTHORIZATION_ERROR"

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "error": type(self).__name__, "message": str(self)}


class SchemaError(AuthorizationError):
    """Raised eagerly when a resolver, relationship or field configuration is invalid."""

    code = "SCHEMA_INVALID"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["details"] = self.details
        return payload


class ContextMissingError(AuthorizationError):
    code = "CONTEXT_MISSING"

    def __init__(self, message: str = "No authorization context bound; run inside authorization_scope()") -> None:
        super().__init__(message)


class ResolverError(AuthorizationError):
    """A required context resolver failed; the enclosing resolution is aborted."""

    code = "RESOLVER_FAILED"

    def __init__(self, resolver: str, message: str) -> None:
        self.resolver = resolver
        super().__init__(f"Resolver '{resolver}' failed: {message}")

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["resolver"] = self.resolver
        return payload


class ResolverTimeoutError(ResolverError):
    code = "RESOLVER_TIMEOUT"


class PolicyViolation(AuthorizationError):
    """Raised when an operation or a mutation payload is rejected by policy."""

    code = "POLICY_VIOLATION"

    def __init__(
        self,
        operation: str,
        table: str,
        reason: str,
        *,
        fields: Iterable[str] = (),
        policy_name: str | None = None,
    ) -> None:
        self.operation = str(operation)
        self.table = table
        self.reason = reason
        self.fields = sorted(set(fields))
        self.policy_name = policy_name
        super().__init__(f"Policy violation: {self.operation} on '{table}' - {reason}")

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            {
                "operation": self.operation,
                "table": self.table,
                "reason": self.reason,
                "fields": self.fields,
                "policy_name": self.policy_name,
            }
        )
        return payload


class FieldEvaluationError(AuthorizationError):
    """A single field predicate raised; always converted to a fail-closed decision."""

    code = "FIELD_EVALUATION_ERROR"

    def __init__(self, table: str, field: str, message: str) -> None:
        self.table = table
        self.field = field
        super().__init__(f"Error evaluating access for '{table}.{field}': {message}")


class AuditError(AuthorizationError):
    """Adapter failure handed to the audit ``on_error`` callback; never raised to callers."""

    code = "AUDIT_FAILED"
