"""Relationship-based access control.

A relationship path is a chain of joins from a resource table to the table that
holds the membership facts (``products -> shops -> organizations -> employees``).
Policies reference paths by name and are compiled when a table is registered, so
broken chains and dangling references fail at registration time.

Evaluation never touches SQL. A ``filter`` policy produces a ``RelationshipFilter``
(the compiled steps plus the end conditions for the last table) that the query
layer turns into a join or an ``EXISTS`` subquery.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any, ClassVar, assert_never

from rowguard.context import get_context
from rowguard.metrics import observe_rebac_decision
from rowguard.security.context import (
    CONCRETE_OPERATIONS,
    AuthorizationContext,
    Operation,
    PolicyEvaluationContext,
)
from rowguard.security.errors import PolicyViolation, SchemaError


logger = logging.getLogger("rowguard.rebac")


class _Skip:
    def __repr__(self) -> str:
        return "SKIP"


SKIP: Any = _Skip()
"""End-condition value that drops the column from the predicate."""


class PolicyType(StrEnum):
    ALLOW = "allow"
    DENY = "deny"
    FILTER = "filter"
    VALIDATE = "validate"


class JoinType(StrEnum):
    INNER = "inner"
    LEFT = "left"
    RIGHT = "right"


class PolicyOutcome(StrEnum):
    ALLOW = "allow"
    DENY = "deny"
    FILTER = "filter"
    ABSTAIN = "abstain"


EndCondition = Callable[[PolicyEvaluationContext], Mapping[str, Any]] | Mapping[str, Any]
ActivationCondition = Callable[[PolicyEvaluationContext], bool]
DataCheck = Callable[[PolicyEvaluationContext], bool]

WRITE_OPERATIONS = frozenset({Operation.CREATE, Operation.UPDATE})


@dataclass(frozen=True, slots=True)
class RelationshipStep:
    from_: str
    to: str
    from_column: str | None = None
    to_column: str | None = None
    alias: str | None = None
    join_type: str = JoinType.INNER
    additional_conditions: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RelationshipPath:
    name: str
    steps: tuple[RelationshipStep | Mapping[str, Any], ...]
    description: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))


@dataclass(frozen=True, slots=True)
class ReBAcPolicy:
    """Declarative policy definition, compiled by ``RelationshipRegistry.register_table``.

    Without a ``relationship_path`` a filter constrains the table's own columns.
    ``negate`` turns a filter into "no such relationship exists". ``check`` is the
    predicate of a ``validate`` policy, run against mutation payloads.
    """

    relationship_path: str | None = None
    type: str = PolicyType.FILTER
    operations: str | Iterable[str] = Operation.ALL
    end_condition: EndCondition | None = None
    condition: ActivationCondition | None = None
    name: str | None = None
    priority: int = 0
    negate: bool = False
    check: DataCheck | None = None


@dataclass(frozen=True, slots=True)
class TableRelationshipConfig:
    relationships: tuple[RelationshipPath, ...] = ()
    policies: tuple[ReBAcPolicy, ...] = ()


@dataclass(frozen=True, slots=True)
class CompiledStep:
    from_: str
    to: str
    from_column: str
    to_column: str
    alias: str
    join_type: JoinType
    additional_conditions: Mapping[str, Any]
    source_alias: str


@dataclass(frozen=True, slots=True)
class CompiledRelationshipPath:
    name: str
    steps: tuple[CompiledStep, ...]
    source_table: str
    target_table: str

    @property
    def target_alias(self) -> str:
        return self.steps[-1].alias


@dataclass(frozen=True, slots=True)
class _CompiledPolicyBase:
    name: str
    table: str
    operations: frozenset[Operation]
    relationship_path: CompiledRelationshipPath | None
    priority: int
    end_condition: Callable[[PolicyEvaluationContext], Mapping[str, Any]]
    condition: ActivationCondition | None = None

    def get_end_conditions(self, ctx: PolicyEvaluationContext) -> dict[str, Any]:
        return dict(self.end_condition(ctx))

    def applies_to(self, operation: Operation) -> bool:
        return operation == Operation.ALL or operation in self.operations


@dataclass(frozen=True, slots=True)
class AllowPolicy(_CompiledPolicyBase):
    policy_type: ClassVar[PolicyType] = PolicyType.ALLOW


@dataclass(frozen=True, slots=True)
class DenyPolicy(_CompiledPolicyBase):
    policy_type: ClassVar[PolicyType] = PolicyType.DENY


@dataclass(frozen=True, slots=True)
class FilterPolicy(_CompiledPolicyBase):
    policy_type: ClassVar[PolicyType] = PolicyType.FILTER
    negated: bool = False


@dataclass(frozen=True, slots=True)
class ValidatePolicy(_CompiledPolicyBase):
    policy_type: ClassVar[PolicyType] = PolicyType.VALIDATE
    check: DataCheck | None = None


CompiledPolicy = AllowPolicy | DenyPolicy | FilterPolicy | ValidatePolicy


@dataclass(frozen=True, slots=True)
class RelationshipFilter:
    """Row predicate for the query layer.

    With a ``path`` the conditions apply to the far end of the relationship and are
    joined in; without one they apply to ``table`` itself. A negated filter keeps
    the rows the predicate does not match.
    """

    policy_name: str
    path: CompiledRelationshipPath | None
    conditions: Mapping[str, Any]
    table: str = ""
    negated: bool = False

    @property
    def target_alias(self) -> str:
        return self.path.target_alias if self.path is not None else self.table


@dataclass(frozen=True, slots=True)
class PolicyDecision:
    table: str
    operation: Operation
    outcome: PolicyOutcome
    policy_name: str | None = None
    filters: tuple[RelationshipFilter, ...] = ()
    reason: str | None = None

    @property
    def allowed(self) -> bool:
        return self.outcome != PolicyOutcome.DENY


@dataclass(slots=True)
class _CompiledTable:
    relationships: dict[str, CompiledRelationshipPath]
    policies: list[CompiledPolicy]


def normalize_operations(operations: str | Iterable[str]) -> frozenset[Operation]:
    items = [operations] if isinstance(operations, str) else list(operations)
    expanded: set[Operation] = set()
    for item in items:
        try:
            operation = Operation(item)
        except ValueError:
            raise SchemaError(f"Unknown operation '{item}'", {"operation": item}) from None
        if operation == Operation.ALL:
            expanded.update(CONCRETE_OPERATIONS)
        else:
            expanded.add(operation)
    if not expanded:
        raise SchemaError("Policy must name at least one operation")
    return frozenset(expanded)


class RelationshipRegistry:
    """Compiled relationship paths and ReBAC policies per table."""

    def __init__(self, schema: Mapping[str, TableRelationshipConfig | Mapping[str, Any]] | None = None) -> None:
        self._tables: dict[str, _CompiledTable] = {}
        self._global_relationships: dict[str, CompiledRelationshipPath] = {}
        if schema:
            self.load_schema(schema)

    def load_schema(self, schema: Mapping[str, TableRelationshipConfig | Mapping[str, Any]]) -> None:
        for table, config in schema.items():
            if config:
                self.register_table(table, config)

    def register_table(self, table: str, config: TableRelationshipConfig | Mapping[str, Any]) -> None:
        relationships, policies = _unpack_table_config(config)

        compiled = _CompiledTable(relationships={}, policies=[])
        for path in relationships:
            compiled.relationships[path.name] = self._compile_path(path)

        for index, policy in enumerate(policies):
            name = policy.name or f"{table}_rebac_policy_{index}"
            compiled.policies.append(self._compile_policy(policy, name, table, compiled.relationships))

        # stable sort keeps declaration order between equal priorities
        compiled.policies.sort(key=lambda item: item.priority, reverse=True)

        self._tables[table] = compiled
        self._global_relationships.update(compiled.relationships)
        logger.info(
            "rebac.table_registered",
            extra={"table": table, "count": len(compiled.policies)},
        )

    def register_relationship(self, path: RelationshipPath | Mapping[str, Any]) -> CompiledRelationshipPath:
        path = _coerce_path(path)
        compiled = self._compile_path(path)
        self._global_relationships[path.name] = compiled
        return compiled

    def get_policies(self, table: str, operation: Operation | str) -> list[CompiledPolicy]:
        config = self._tables.get(table)
        if config is None:
            return []
        operation = Operation(operation)
        return [policy for policy in config.policies if policy.applies_to(operation)]

    def get_relationship(self, name: str, table: str | None = None) -> CompiledRelationshipPath | None:
        if table is not None:
            config = self._tables.get(table)
            if config is not None and name in config.relationships:
                return config.relationships[name]
        return self._global_relationships.get(name)

    def has_table(self, table: str) -> bool:
        return table in self._tables

    @property
    def tables(self) -> list[str]:
        return list(self._tables)

    def clear(self) -> None:
        self._tables.clear()
        self._global_relationships.clear()

    def evaluate(
        self,
        table: str,
        operation: Operation | str,
        ctx: AuthorizationContext | None = None,
    ) -> PolicyDecision:
        """Decide how ``operation`` on ``table`` is constrained for the caller.

        Policies run highest priority first. An active deny wins immediately, an
        active allow stops evaluation, filters accumulate and are AND-ed. A
        configured table with no matching policy is denied.
        """

        operation = Operation(operation)
        if not self.has_table(table):
            return PolicyDecision(table, operation, PolicyOutcome.ABSTAIN, reason="table has no relationship policies")

        ctx = ctx or get_context()
        if ctx.is_system:
            decision = PolicyDecision(table, operation, PolicyOutcome.ALLOW, reason="system identity")
            observe_rebac_decision(table, operation, decision.outcome)
            return decision

        decision = self._evaluate_policies(table, operation, PolicyEvaluationContext(ctx, table, operation))
        observe_rebac_decision(table, operation, decision.outcome)
        logger.debug(
            "rebac.decision",
            extra={
                "table": table,
                "operation": str(operation),
                "decision": str(decision.outcome),
                "policy": decision.policy_name,
            },
        )
        return decision

    def _evaluate_policies(
        self,
        table: str,
        operation: Operation,
        eval_ctx: PolicyEvaluationContext,
    ) -> PolicyDecision:
        filters: list[RelationshipFilter] = []
        for policy in self.get_policies(table, operation):
            if isinstance(policy, DenyPolicy):
                if self._is_active(policy, eval_ctx, fail_closed=True):
                    return PolicyDecision(table, operation, PolicyOutcome.DENY, policy.name, reason="denied by policy")
            elif isinstance(policy, AllowPolicy):
                if self._is_active(policy, eval_ctx, fail_closed=False):
                    if filters:
                        break
                    return PolicyDecision(table, operation, PolicyOutcome.ALLOW, policy.name, reason="allowed by policy")
            elif isinstance(policy, FilterPolicy):
                active = self._condition_state(policy, eval_ctx)
                if active is False:
                    continue
                conditions = self._end_conditions(policy, eval_ctx) if active else None
                if conditions is None:
                    return PolicyDecision(
                        table,
                        operation,
                        PolicyOutcome.DENY,
                        policy.name,
                        reason="end condition evaluation failed",
                    )
                filters.append(
                    RelationshipFilter(
                        policy_name=policy.name,
                        path=policy.relationship_path,
                        conditions=MappingProxyType(
                            {column: value for column, value in conditions.items() if value is not SKIP}
                        ),
                        table=table,
                        negated=policy.negated,
                    )
                )
            elif isinstance(policy, ValidatePolicy):
                continue
            else:
                assert_never(policy)

        if filters:
            return PolicyDecision(
                table,
                operation,
                PolicyOutcome.FILTER,
                ",".join(item.policy_name for item in filters),
                filters=tuple(filters),
            )
        return PolicyDecision(table, operation, PolicyOutcome.DENY, reason="no matching relationship policy")

    def check_mutation(
        self,
        table: str,
        operation: Operation | str,
        data: Mapping[str, Any],
        existing_row: Mapping[str, Any] | None = None,
        ctx: AuthorizationContext | None = None,
    ) -> PolicyDecision:
        """Run the table's ``validate`` policies against a create/update payload."""

        operation = Operation(operation)
        policies = [policy for policy in self.get_policies(table, operation) if isinstance(policy, ValidatePolicy)]
        if not policies:
            return PolicyDecision(table, operation, PolicyOutcome.ABSTAIN, reason="no validation policy")

        ctx = ctx or get_context()
        if ctx.is_system:
            return PolicyDecision(table, operation, PolicyOutcome.ALLOW, reason="system identity")

        eval_ctx = PolicyEvaluationContext(ctx, table, operation, row=existing_row or {}, data=data)
        for policy in policies:
            active = self._condition_state(policy, eval_ctx)
            if active is False:
                continue
            try:
                valid = active is not None and policy.check is not None and bool(policy.check(eval_ctx))
            except Exception as exc:
                logger.warning(
                    "rebac.validation_failed",
                    extra={"table": table, "policy": policy.name, "error": str(exc)},
                )
                valid = False
            if not valid:
                observe_rebac_decision(table, operation, PolicyOutcome.DENY)
                return PolicyDecision(
                    table, operation, PolicyOutcome.DENY, policy.name, reason="data failed validation"
                )

        observe_rebac_decision(table, operation, PolicyOutcome.ALLOW)
        return PolicyDecision(
            table,
            operation,
            PolicyOutcome.ALLOW,
            ",".join(policy.name for policy in policies),
            reason="data passed validation",
        )

    def validate_mutation(
        self,
        table: str,
        operation: Operation | str,
        data: Mapping[str, Any],
        existing_row: Mapping[str, Any] | None = None,
        ctx: AuthorizationContext | None = None,
    ) -> PolicyDecision:
        decision = self.check_mutation(table, operation, data, existing_row, ctx)
        if decision.outcome == PolicyOutcome.DENY:
            raise PolicyViolation(
                decision.operation,
                table,
                decision.reason or "data failed validation",
                fields=data.keys(),
                policy_name=decision.policy_name,
            )
        return decision

    @staticmethod
    def _end_conditions(policy: FilterPolicy, eval_ctx: PolicyEvaluationContext) -> dict[str, Any] | None:
        try:
            return policy.get_end_conditions(eval_ctx)
        except Exception as exc:
            logger.warning(
                "rebac.end_condition_failed",
                extra={"table": policy.table, "policy": policy.name, "error": str(exc)},
            )
            return None

    @staticmethod
    def _condition_state(policy: CompiledPolicy, eval_ctx: PolicyEvaluationContext) -> bool | None:
        """``True``/``False`` for an active/inactive policy, ``None`` when the condition raised."""

        if policy.condition is None:
            return True
        try:
            return bool(policy.condition(eval_ctx))
        except Exception as exc:
            logger.warning(
                "rebac.condition_failed",
                extra={"table": policy.table, "policy": policy.name, "error": str(exc)},
            )
            return None

    @classmethod
    def _is_active(
        cls,
        policy: AllowPolicy | DenyPolicy,
        eval_ctx: PolicyEvaluationContext,
        *,
        fail_closed: bool,
    ) -> bool:
        state = cls._condition_state(policy, eval_ctx)
        return fail_closed if state is None else state

    def _compile_path(self, path: RelationshipPath) -> CompiledRelationshipPath:
        if not path.name:
            raise SchemaError("Relationship path must have a name")
        if not path.steps:
            raise SchemaError(f"Relationship path '{path.name}' must have at least one step", {"path": path.name})

        compiled: list[CompiledStep] = []
        for index, raw_step in enumerate(path.steps):
            step = _coerce_step(raw_step)
            if not step.from_ or not step.to:
                raise SchemaError(
                    f"Relationship step {index} in '{path.name}' must have 'from' and 'to' tables",
                    {"path": path.name, "step": index},
                )
            try:
                join_type = JoinType(step.join_type)
            except ValueError:
                raise SchemaError(
                    f"Relationship step {index} in '{path.name}' has unknown join type '{step.join_type}'",
                    {"path": path.name, "step": index},
                ) from None

            previous = compiled[-1] if compiled else None
            if previous is not None and step.from_ not in {previous.to, previous.alias}:
                raise SchemaError(
                    f"Relationship path '{path.name}' has broken chain at step {index}: "
                    f"expected '{previous.to}' but got '{step.from_}'",
                    {"path": path.name, "step": index},
                )

            compiled.append(
                CompiledStep(
                    from_=step.from_,
                    to=step.to,
                    from_column=step.from_column or f"{step.to}_id",
                    to_column=step.to_column or "id",
                    alias=step.alias or step.to,
                    join_type=join_type,
                    additional_conditions=MappingProxyType(dict(step.additional_conditions)),
                    source_alias=previous.alias if previous is not None else step.from_,
                )
            )

        return CompiledRelationshipPath(
            name=path.name,
            steps=tuple(compiled),
            source_table=compiled[0].from_,
            target_table=compiled[-1].to,
        )

    def _compile_policy(
        self,
        policy: ReBAcPolicy,
        name: str,
        table: str,
        table_relationships: dict[str, CompiledRelationshipPath],
    ) -> CompiledPolicy:
        path = None
        if policy.relationship_path is not None:
            path = table_relationships.get(policy.relationship_path) or self._global_relationships.get(
                policy.relationship_path
            )
            if path is None:
                raise SchemaError(
                    f"ReBAC policy '{name}' references unknown relationship path '{policy.relationship_path}'",
                    {"policy": name, "table": table, "relationship_path": policy.relationship_path},
                )

        try:
            policy_type = PolicyType(policy.type)
        except ValueError:
            raise SchemaError(
                f"ReBAC policy '{name}' has unknown type '{policy.type}'",
                {"policy": name, "table": table},
            ) from None

        end_condition = _compile_end_condition(policy.end_condition, name)
        if policy.condition is not None and not callable(policy.condition):
            raise SchemaError(f"ReBAC policy '{name}' condition must be callable", {"policy": name})
        if policy.negate and policy_type != PolicyType.FILTER:
            raise SchemaError(f"ReBAC policy '{name}' can only negate a filter", {"policy": name})

        operations = normalize_operations(policy.operations)
        if policy_type == PolicyType.VALIDATE:
            if not callable(policy.check):
                raise SchemaError(f"Validate policy '{name}' needs a callable check", {"policy": name})
            operations &= WRITE_OPERATIONS
            if not operations:
                raise SchemaError(
                    f"Validate policy '{name}' must apply to create or update",
                    {"policy": name, "table": table},
                )

        common = {
            "name": name,
            "table": table,
            "operations": operations,
            "relationship_path": path,
            "priority": policy.priority,
            "end_condition": end_condition,
            "condition": policy.condition,
        }
        if policy_type == PolicyType.ALLOW:
            return AllowPolicy(**common)
        if policy_type == PolicyType.DENY:
            return DenyPolicy(**common)
        if policy_type == PolicyType.VALIDATE:
            return ValidatePolicy(check=policy.check, **common)
        return FilterPolicy(negated=policy.negate, **common)


def _unpack_table_config(
    config: TableRelationshipConfig | Mapping[str, Any],
) -> tuple[list[RelationshipPath], list[ReBAcPolicy]]:
    if isinstance(config, TableRelationshipConfig):
        relationships, policies = config.relationships, config.policies
    else:
        relationships, policies = config.get("relationships", ()), config.get("policies", ())
    return [_coerce_path(path) for path in relationships], list(policies)


def _coerce_path(path: RelationshipPath | Mapping[str, Any]) -> RelationshipPath:
    if isinstance(path, RelationshipPath):
        return path
    return RelationshipPath(name=path.get("name", ""), steps=tuple(path.get("steps", ())), description=path.get("description"))


def _coerce_step(step: RelationshipStep | Mapping[str, Any]) -> RelationshipStep:
    if isinstance(step, RelationshipStep):
        return step
    return RelationshipStep(
        from_=step.get("from") or step.get("from_") or "",
        to=step.get("to") or "",
        from_column=step.get("from_column"),
        to_column=step.get("to_column"),
        alias=step.get("alias"),
        join_type=step.get("join_type", JoinType.INNER),
        additional_conditions=step.get("additional_conditions") or {},
    )


def _compile_end_condition(
    end_condition: EndCondition | None,
    name: str,
) -> Callable[[PolicyEvaluationContext], Mapping[str, Any]]:
    if end_condition is None:
        return lambda ctx: {}
    if callable(end_condition):
        return end_condition
    if isinstance(end_condition, Mapping):
        frozen = MappingProxyType(dict(end_condition))
        return lambda ctx: frozen
    raise SchemaError(f"ReBAC policy '{name}' end condition must be a mapping or callable", {"policy": name})


def filter_relation(
    operations: str | Iterable[str],
    relationship_path: str,
    end_condition: EndCondition,
    *,
    name: str | None = None,
    priority: int = 0,
) -> ReBAcPolicy:
    return ReBAcPolicy(
        relationship_path=relationship_path,
        type=PolicyType.FILTER,
        operations=operations,
        end_condition=end_condition,
        name=name,
        priority=priority,
    )


def allow_relation(
    operations: str | Iterable[str],
    relationship_path: str,
    end_condition: EndCondition | None = None,
    *,
    condition: ActivationCondition | None = None,
    name: str | None = None,
    priority: int = 0,
) -> ReBAcPolicy:
    """Rows are visible when the relationship exists with ``end_condition``.

    Without an end condition the policy is a short-circuit allow for the whole
    operation, optionally gated by ``condition``.
    """

    return ReBAcPolicy(
        relationship_path=relationship_path,
        type=PolicyType.ALLOW if end_condition is None else PolicyType.FILTER,
        operations=operations,
        end_condition=end_condition,
        condition=condition,
        name=name,
        priority=priority,
    )


def deny_relation(
    operations: str | Iterable[str],
    relationship_path: str,
    end_condition: EndCondition | None = None,
    *,
    condition: ActivationCondition | None = None,
    name: str | None = None,
    priority: int = 100,
) -> ReBAcPolicy:
    """Rows are hidden when the relationship exists with ``end_condition`` (``NOT EXISTS``).

    Without an end condition the policy denies the whole operation.
    """

    return ReBAcPolicy(
        relationship_path=relationship_path,
        type=PolicyType.DENY if end_condition is None else PolicyType.FILTER,
        operations=operations,
        end_condition=end_condition,
        condition=condition,
        name=name,
        priority=priority,
        negate=end_condition is not None,
    )


def org_membership_path(resource_table: str, organization_column: str = "organization_id") -> RelationshipPath:
    return RelationshipPath(
        name=f"{resource_table}_org_membership",
        description=f"Access {resource_table} through organization membership",
        steps=(
            RelationshipStep(from_=resource_table, to="organizations", from_column=organization_column, to_column="id"),
            RelationshipStep(from_="organizations", to="employees", from_column="id", to_column="organization_id"),
        ),
    )


def shop_org_membership_path(resource_table: str, shop_column: str = "shop_id") -> RelationshipPath:
    return RelationshipPath(
        name=f"{resource_table}_shop_org_membership",
        description=f"Access {resource_table} through the shop's organization membership",
        steps=(
            RelationshipStep(from_=resource_table, to="shops", from_column=shop_column, to_column="id"),
            RelationshipStep(from_="shops", to="organizations", from_column="organization_id", to_column="id"),
            RelationshipStep(from_="organizations", to="employees", from_column="id", to_column="organization_id"),
        ),
    )


def team_hierarchy_path(resource_table: str, team_column: str = "team_id") -> RelationshipPath:
    return RelationshipPath(
        name=f"{resource_table}_team_access",
        description=f"Access {resource_table} through team membership",
        steps=(
            RelationshipStep(from_=resource_table, to="teams", from_column=team_column, to_column="id"),
            RelationshipStep(from_="teams", to="team_members", from_column="id", to_column="team_id"),
        ),
    )
