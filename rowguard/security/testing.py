"""Helpers for exercising relationship and field policies in downstream test suites."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from rowguard.security.context import AuthorizationContext, Operation, PolicyEvaluationContext, RequestMeta
from rowguard.security.fls import FieldAccessRegistry
from rowguard.security.rebac import PolicyDecision, PolicyOutcome, RelationshipFilter, RelationshipRegistry


def create_test_context(
    user_id: str = "test-user",
    *,
    tenant_id: str | None = None,
    roles: Iterable[str] = (),
    is_system: bool = False,
    resolved: Mapping[str, Any] | None = None,
    organization_ids: Iterable[str] = (),
    request_id: str | None = None,
    meta: Mapping[str, Any] | None = None,
) -> AuthorizationContext:
    return AuthorizationContext(
        user_id=user_id,
        tenant_id=tenant_id,
        roles=frozenset(roles),
        is_system=is_system,
        resolved=resolved or {},
        organization_ids=tuple(organization_ids),
        request_meta=RequestMeta(request_id=request_id) if request_id else None,
        meta=meta or {},
    )


class PolicyTester:
    def __init__(
        self,
        relationships: RelationshipRegistry | None = None,
        field_access: FieldAccessRegistry | None = None,
    ) -> None:
        self.relationships = relationships or RelationshipRegistry()
        self.field_access = field_access or FieldAccessRegistry()

    def evaluate(self, table: str, operation: Operation | str, ctx: AuthorizationContext) -> PolicyDecision:
        return self.relationships.evaluate(table, operation, ctx)

    def get_filters(self, table: str, operation: Operation | str, ctx: AuthorizationContext) -> list[RelationshipFilter]:
        return list(self.evaluate(table, operation, ctx).filters)

    def check_mutation(
        self,
        table: str,
        operation: Operation | str,
        ctx: AuthorizationContext,
        data: Mapping[str, Any],
        row: Mapping[str, Any] | None = None,
    ) -> PolicyDecision:
        return self.relationships.check_mutation(table, operation, data, row, ctx)

    async def can_read(
        self,
        table: str,
        field: str,
        ctx: AuthorizationContext,
        row: Mapping[str, Any] | None = None,
    ) -> bool:
        eval_ctx = PolicyEvaluationContext(auth=ctx, table=table, operation=Operation.READ, row=row or {})
        return await self.field_access.can_read_field(table, field, eval_ctx)

    async def can_write(
        self,
        table: str,
        field: str,
        ctx: AuthorizationContext,
        row: Mapping[str, Any] | None = None,
        data: Mapping[str, Any] | None = None,
    ) -> bool:
        eval_ctx = PolicyEvaluationContext(
            auth=ctx,
            table=table,
            operation=Operation.UPDATE,
            row=row or {},
            data=data,
        )
        return await self.field_access.can_write_field(table, field, eval_ctx)

    def list_policies(self, table: str) -> list[dict[str, Any]]:
        return [
            {
                "name": policy.name,
                "type": str(policy.policy_type),
                "operations": sorted(str(operation) for operation in policy.operations),
                "priority": policy.priority,
                "relationship_path": policy.relationship_path.name if policy.relationship_path is not None else None,
            }
            for policy in self.relationships.get_policies(table, Operation.ALL)
        ]

    @property
    def tables(self) -> list[str]:
        return sorted(set(self.relationships.tables) | set(self.field_access.tables))


def assert_allowed(decision: PolicyDecision, message: str | None = None) -> None:
    if decision.outcome == PolicyOutcome.DENY:
        raise AssertionError(message or f"Expected {decision.operation} on '{decision.table}' to be allowed: {decision.reason}")


def assert_denied(decision: PolicyDecision, message: str | None = None) -> None:
    if decision.outcome != PolicyOutcome.DENY:
        raise AssertionError(message or f"Expected {decision.operation} on '{decision.table}' to be denied, got {decision.outcome}")


def assert_policy_used(decision: PolicyDecision, policy_name: str) -> None:
    used = (decision.policy_name or "").split(",")
    if policy_name not in used:
        raise AssertionError(f"Expected policy '{policy_name}' to decide, got '{decision.policy_name}'")


def assert_filters_include(decision: PolicyDecision, conditions: Mapping[str, Any]) -> None:
    merged: dict[str, Any] = {}
    for relationship_filter in decision.filters:
        merged.update(relationship_filter.conditions)
    missing = {key: value for key, value in conditions.items() if merged.get(key, object()) != value}
    if missing:
        raise AssertionError(f"Filters {merged} do not include {missing}")
