"""Attribute policies on a table's own columns, activation wrappers and reusable policy sets.

These build ``ReBAcPolicy`` definitions without a relationship path. They are
registered next to relationship policies and evaluated by the same registry.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import replace
from typing import Any

from rowguard.security.context import Operation, PolicyEvaluationContext
from rowguard.security.rebac import ActivationCondition, DataCheck, EndCondition, PolicyType, ReBAcPolicy


def filter_rows(
    operations: str | Iterable[str],
    end_condition: EndCondition,
    *,
    name: str | None = None,
    priority: int = 0,
) -> ReBAcPolicy:
    return ReBAcPolicy(
        type=PolicyType.FILTER,
        operations=operations,
        end_condition=end_condition,
        name=name,
        priority=priority,
    )


def exclude_rows(
    operations: str | Iterable[str],
    end_condition: EndCondition,
    *,
    name: str | None = None,
    priority: int = 100,
) -> ReBAcPolicy:
    return ReBAcPolicy(
        type=PolicyType.FILTER,
        operations=operations,
        end_condition=end_condition,
        name=name,
        priority=priority,
        negate=True,
    )


def allow_when(
    operations: str | Iterable[str],
    condition: ActivationCondition,
    *,
    name: str | None = None,
    priority: int = 0,
) -> ReBAcPolicy:
    return ReBAcPolicy(
        type=PolicyType.ALLOW,
        operations=operations,
        condition=condition,
        name=name,
        priority=priority,
    )


def deny_when(
    operations: str | Iterable[str],
    condition: ActivationCondition | None = None,
    *,
    name: str | None = None,
    priority: int = 100,
) -> ReBAcPolicy:
    return ReBAcPolicy(
        type=PolicyType.DENY,
        operations=operations,
        condition=condition,
        name=name,
        priority=priority,
    )


def validate_data(
    operations: str | Iterable[str],
    check: DataCheck,
    *,
    name: str | None = None,
    priority: int = 0,
) -> ReBAcPolicy:
    """``check`` sees the payload as ``ctx.data`` and the stored row as ``ctx.row``."""

    return ReBAcPolicy(
        type=PolicyType.VALIDATE,
        operations=operations,
        check=check,
        name=name,
        priority=priority,
    )


def when_condition(condition: ActivationCondition, policy: ReBAcPolicy) -> ReBAcPolicy:
    """Gate ``policy`` on ``condition`` in addition to any condition it already has."""

    existing = policy.condition
    if existing is None:
        return replace(policy, condition=condition)
    return replace(policy, condition=lambda ctx: bool(condition(ctx)) and bool(existing(ctx)))


def when_environment(environments: Iterable[str], policy: ReBAcPolicy) -> ReBAcPolicy:
    allowed = frozenset(environments)
    return when_condition(lambda ctx: ctx.meta.get("environment") in allowed, policy)


def when_feature(feature: str, policy: ReBAcPolicy) -> ReBAcPolicy:
    return when_condition(lambda ctx: feature_enabled(ctx, feature), policy)


def when_time_range(start_hour: int, end_hour: int, policy: ReBAcPolicy) -> ReBAcPolicy:
    """Active between ``start_hour`` and ``end_hour`` (UTC); ranges may wrap past midnight."""

    def in_range(ctx: PolicyEvaluationContext) -> bool:
        hour = ctx.auth.timestamp.hour
        if start_hour > end_hour:
            return hour >= start_hour or hour < end_hour
        return start_hour <= hour < end_hour

    return when_condition(in_range, policy)


def feature_enabled(ctx: PolicyEvaluationContext, feature: str) -> bool:
    features = ctx.meta.get("features")
    if isinstance(features, Mapping):
        return bool(features.get(feature))
    if isinstance(features, (list, tuple, set, frozenset)):
        return feature in features
    return False


def tenant_isolation(tenant_column: str = "tenant_id", *, validate_on_mutation: bool = True) -> list[ReBAcPolicy]:
    """Rows scoped to the caller's tenant; creates and updates may not name another tenant."""

    policies = [
        filter_rows(
            (Operation.READ, Operation.UPDATE, Operation.DELETE),
            lambda ctx: {tenant_column: ctx.auth.tenant_id},
            name="tenant_isolation_filter",
            priority=1000,
        )
    ]
    if validate_on_mutation:
        policies.append(
            validate_data(
                Operation.CREATE,
                lambda ctx: _payload(ctx).get(tenant_column) == ctx.auth.tenant_id,
                name="tenant_isolation_create",
            )
        )
        policies.append(
            validate_data(
                Operation.UPDATE,
                lambda ctx: tenant_column not in _payload(ctx) or _payload(ctx)[tenant_column] == ctx.auth.tenant_id,
                name="tenant_isolation_update",
            )
        )
    return policies


def ownership(
    owner_column: str = "owner_id",
    operations: Iterable[str] = (Operation.READ, Operation.UPDATE, Operation.DELETE),
    *,
    can_delete: bool = True,
) -> list[ReBAcPolicy]:
    requested = [Operation(operation) for operation in operations]
    owner_operations = [operation for operation in requested if operation != Operation.DELETE or can_delete]

    policies: list[ReBAcPolicy] = []
    if owner_operations:
        policies.append(
            filter_rows(owner_operations, lambda ctx: {owner_column: ctx.auth.user_id}, name="ownership_filter")
        )
    if not can_delete and Operation.DELETE in requested:
        policies.append(deny_when(Operation.DELETE, name="ownership_no_delete", priority=150))
    return policies


def _payload(ctx: PolicyEvaluationContext) -> Mapping[str, Any]:
    return ctx.data or {}
