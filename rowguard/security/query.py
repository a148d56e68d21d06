from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Protocol, TypeVar, runtime_checkable

from sqlalchemy import (
    ColumnElement,
    Exists,
    Select,
    and_,
    false,
    literal_column,
    not_,
    select,
    table as table_clause,
    true,
)
from sqlalchemy.orm import Session

from rowguard.security.context import AuthorizationContext, Operation
from rowguard.security.errors import PolicyViolation
from rowguard.security.rebac import (
    SKIP,
    CompiledStep,
    JoinType,
    PolicyDecision,
    PolicyOutcome,
    RelationshipFilter,
    RelationshipRegistry,
)


logger = logging.getLogger("rowguard.query")

QueryT = TypeVar("QueryT")


@runtime_checkable
class QueryAdapter(Protocol[QueryT]):
    """The query layer seen from the policy engine: attach predicates and joins, run the result."""

    def apply_filter(self, query: QueryT, relationship_filter: RelationshipFilter) -> QueryT:
        ...

    def apply_join(self, query: QueryT, step: CompiledStep) -> QueryT:
        ...

    def execute(self, query: QueryT) -> list[Mapping[str, Any]]:
        ...


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _ref(alias: str, column: str) -> ColumnElement[Any]:
    return literal_column(f"{_quote(alias)}.{_quote(column)}")


def _from_item(step: CompiledStep):
    target = table_clause(step.to)
    return target.alias(step.alias) if step.alias != step.to else target


def column_conditions(alias: str, conditions: Mapping[str, Any]) -> list[ColumnElement[bool]]:
    """Equality predicates on ``alias``: ``None`` is IS NULL, a list is IN, an empty list matches nothing."""

    clauses: list[ColumnElement[bool]] = []
    for column, value in conditions.items():
        if value is SKIP:
            continue
        ref = _ref(alias, column)
        if value is None:
            clauses.append(ref.is_(None))
        elif isinstance(value, (list, tuple, set, frozenset)):
            clauses.append(ref.in_(list(value)) if value else false())
        else:
            clauses.append(ref == value)
    return clauses


class SqlAlchemyQueryAdapter:
    """Renders relationship filters as correlated ``EXISTS`` subqueries on SQLAlchemy selects.

    Identifiers inside the subquery are written with ANSI double quotes.
    """

    def __init__(self, session: Session | None = None) -> None:
        self._session = session

    def apply_filter(self, query: Select[Any], relationship_filter: RelationshipFilter) -> Select[Any]:
        return query.where(self.build_predicate(relationship_filter))

    def build_predicate(self, relationship_filter: RelationshipFilter) -> ColumnElement[bool]:
        if relationship_filter.path is None:
            clauses = column_conditions(relationship_filter.table, relationship_filter.conditions)
            predicate: ColumnElement[bool] = and_(*clauses) if clauses else true()
        else:
            predicate = self.build_exists(relationship_filter)
        return not_(predicate) if relationship_filter.negated else predicate

    def apply_join(self, query: Select[Any], step: CompiledStep) -> Select[Any]:
        onclause = and_(
            _ref(step.source_alias, step.from_column) == _ref(step.alias, step.to_column),
            *column_conditions(step.alias, step.additional_conditions),
        )
        # a RIGHT join inside the correlated EXISTS only keeps rows matched back to the source, i.e. an inner join
        return query.join(_from_item(step), onclause, isouter=step.join_type == JoinType.LEFT)

    def build_exists(self, relationship_filter: RelationshipFilter) -> Exists:
        if relationship_filter.path is None:
            raise ValueError(f"filter '{relationship_filter.policy_name}' has no relationship path")
        first, *rest = relationship_filter.path.steps
        subquery = select(literal_column("1")).select_from(_from_item(first))
        for step in rest:
            subquery = self.apply_join(subquery, step)

        criteria = [
            _ref(first.alias, first.to_column) == _ref(first.source_alias, first.from_column),
            *column_conditions(first.alias, first.additional_conditions),
            *column_conditions(relationship_filter.target_alias, relationship_filter.conditions),
        ]
        return subquery.where(and_(*criteria)).exists()

    def execute(self, query: Select[Any]) -> list[Mapping[str, Any]]:
        if self._session is None:
            raise RuntimeError("SqlAlchemyQueryAdapter needs a session to execute queries")
        return [dict(row) for row in self._session.execute(query).mappings().all()]


def apply_decision(query: QueryT, decision: PolicyDecision, adapter: QueryAdapter[QueryT]) -> QueryT:
    if decision.outcome == PolicyOutcome.DENY:
        raise PolicyViolation(
            decision.operation,
            decision.table,
            decision.reason or "denied by relationship policy",
            policy_name=decision.policy_name,
        )
    for relationship_filter in decision.filters:
        query = adapter.apply_filter(query, relationship_filter)
    return query


def secure_query(
    query: QueryT,
    table: str,
    operation: Operation | str = Operation.READ,
    *,
    adapter: QueryAdapter[QueryT],
    registry: RelationshipRegistry,
    ctx: AuthorizationContext | None = None,
) -> QueryT:
    """Constrain ``query`` on ``table`` to the rows the caller may reach through its relationships."""

    decision = registry.evaluate(table, operation, ctx)
    if decision.filters:
        logger.debug(
            "query.filters_applied",
            extra={"table": table, "operation": str(operation), "count": len(decision.filters)},
        )
    return apply_decision(query, decision, adapter)
