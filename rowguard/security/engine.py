from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from rowguard.context import authorization_scope, get_context_or_none
from rowguard.core.config import Settings, get_settings
from rowguard.security.audit import AuditAdapter, AuditEvent, AuditLogger
from rowguard.security.cache import CacheProvider
from rowguard.security.context import AuthorizationContext, Operation
from rowguard.security.errors import PolicyViolation
from rowguard.security.fls import (
    FieldAccessProcessor,
    FieldAccessRegistry,
    MaskedRow,
    MaskOptions,
    TableFieldAccessConfig,
    WritableFields,
)
from rowguard.security.query import QueryAdapter, QueryT, apply_decision
from rowguard.security.rebac import (
    CompiledPolicy,
    CompiledRelationshipPath,
    PolicyDecision,
    PolicyOutcome,
    RelationshipPath,
    RelationshipRegistry,
    TableRelationshipConfig,
)
from rowguard.security.resolvers import ContextResolver, ResolverManager


logger = logging.getLogger("rowguard.engine")


class AuthorizationEngine:
    """One resolver manager, relationship registry, field processor and audit logger wired together.

    Decisions taken through the engine are forwarded to the audit logger when one
    is configured.
    """

    def __init__(
        self,
        *,
        resolver_manager: ResolverManager | None = None,
        relationships: RelationshipRegistry | None = None,
        field_access: FieldAccessRegistry | None = None,
        audit_logger: AuditLogger | None = None,
        audit_adapter: AuditAdapter | None = None,
        cache_provider: CacheProvider | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.resolvers = resolver_manager or ResolverManager(cache_provider=cache_provider, settings=settings)
        self.relationships = relationships or RelationshipRegistry()
        self.field_access = field_access or FieldAccessRegistry()
        self.fields = FieldAccessProcessor(self.field_access, settings.field_default_mask_value)
        if audit_logger is None and audit_adapter is not None:
            audit_logger = AuditLogger(audit_adapter)
        self.audit = audit_logger

    def register_resolver(self, resolver: ContextResolver) -> None:
        self.resolvers.register(resolver)

    def register_relationship(self, path: RelationshipPath | Mapping[str, Any]) -> CompiledRelationshipPath:
        return self.relationships.register_relationship(path)

    def register_relationship_table(self, table: str, config: TableRelationshipConfig | Mapping[str, Any]) -> None:
        self.relationships.register_table(table, config)

    def register_field_access_table(self, table: str, config: TableFieldAccessConfig | Mapping[str, Any]) -> None:
        self.field_access.register_table(table, config)

    async def resolve_context(self, base: AuthorizationContext) -> AuthorizationContext:
        return await self.resolvers.resolve(base)

    @contextmanager
    def scope(self, ctx: AuthorizationContext) -> Iterator[AuthorizationContext]:
        with authorization_scope(ctx) as bound:
            yield bound

    def get_policies(self, table: str, operation: Operation | str) -> list[CompiledPolicy]:
        return self.relationships.get_policies(table, operation)

    async def evaluate(
        self,
        table: str,
        operation: Operation | str,
        *,
        ctx: AuthorizationContext | None = None,
    ) -> PolicyDecision:
        started = time.perf_counter()
        decision = self.relationships.evaluate(table, operation, ctx)
        duration_ms = (time.perf_counter() - started) * 1000

        if self.audit is not None and decision.outcome != PolicyOutcome.ABSTAIN:
            await self.audit.log_decision(
                decision.operation,
                table,
                decision.outcome,
                decision.policy_name,
                reason=decision.reason,
                duration_ms=duration_ms,
                ctx=ctx or get_context_or_none(),
            )
        return decision

    async def secure_query(
        self,
        query: QueryT,
        table: str,
        operation: Operation | str = Operation.READ,
        *,
        adapter: QueryAdapter[QueryT],
        ctx: AuthorizationContext | None = None,
    ) -> QueryT:
        decision = await self.evaluate(table, operation, ctx=ctx)
        return apply_decision(query, decision, adapter)

    async def mask_row(
        self,
        table: str,
        row: Mapping[str, Any],
        options: MaskOptions | None = None,
        *,
        ctx: AuthorizationContext | None = None,
    ) -> MaskedRow:
        result = await self.fields.mask_row(table, row, options, ctx=ctx)
        await self._audit_masking(table, [row], [result], ctx)
        return result

    async def mask_rows(
        self,
        table: str,
        rows: Iterable[Mapping[str, Any]],
        options: MaskOptions | None = None,
        *,
        ctx: AuthorizationContext | None = None,
    ) -> list[MaskedRow]:
        rows = list(rows)
        results = await self.fields.mask_rows(table, rows, options, ctx=ctx)
        await self._audit_masking(table, rows, results, ctx)
        return results

    async def validate_write(
        self,
        table: str,
        data: Mapping[str, Any],
        existing_row: Mapping[str, Any] | None = None,
        *,
        ctx: AuthorizationContext | None = None,
        operation: Operation | str = Operation.UPDATE,
    ) -> None:
        try:
            await self.fields.validate_write(table, data, existing_row, ctx=ctx, operation=operation)
        except PolicyViolation as exc:
            if self.audit is not None:
                await self.audit.log_deny(
                    operation,
                    table,
                    exc.policy_name,
                    reason=exc.reason,
                    context={"fields": exc.fields},
                    ctx=ctx or get_context_or_none(),
                )
            raise

    async def validate_mutation(
        self,
        table: str,
        operation: Operation | str,
        data: Mapping[str, Any],
        existing_row: Mapping[str, Any] | None = None,
        *,
        ctx: AuthorizationContext | None = None,
    ) -> PolicyDecision:
        """Run the table's ``validate`` policies, raising ``PolicyViolation`` on a rejected payload."""

        decision = self.relationships.check_mutation(table, operation, data, existing_row, ctx)
        if decision.outcome == PolicyOutcome.DENY:
            if self.audit is not None:
                await self.audit.log_deny(
                    decision.operation,
                    table,
                    decision.policy_name,
                    reason=decision.reason,
                    context={"fields": sorted(data)},
                    ctx=ctx or get_context_or_none(),
                )
            raise PolicyViolation(
                decision.operation,
                table,
                decision.reason or "data failed validation",
                fields=data.keys(),
                policy_name=decision.policy_name,
            )
        return decision

    async def filter_writable_fields(
        self,
        table: str,
        data: Mapping[str, Any],
        existing_row: Mapping[str, Any] | None = None,
        *,
        ctx: AuthorizationContext | None = None,
        operation: Operation | str = Operation.UPDATE,
    ) -> WritableFields:
        return await self.fields.filter_writable_fields(table, data, existing_row, ctx=ctx, operation=operation)

    async def log_allow(self, operation: Operation | str, table: str, policy_name: str | None = None, **options: Any) -> AuditEvent | None:
        if self.audit is None:
            return None
        return await self.audit.log_allow(operation, table, policy_name, **options)

    async def log_deny(self, operation: Operation | str, table: str, policy_name: str | None = None, **options: Any) -> AuditEvent | None:
        if self.audit is None:
            return None
        return await self.audit.log_deny(operation, table, policy_name, **options)

    async def log_filter(self, table: str, policy_name: str | None = None, **options: Any) -> AuditEvent | None:
        if self.audit is None:
            return None
        return await self.audit.log_filter(table, policy_name, **options)

    async def close(self) -> None:
        if self.audit is not None:
            await self.audit.close()

    async def _audit_masking(
        self,
        table: str,
        rows: list[Mapping[str, Any]],
        results: list[MaskedRow],
        ctx: AuthorizationContext | None,
    ) -> None:
        if self.audit is None:
            return
        masked = sorted({name for result in results for name in result.masked_fields})
        omitted = sorted({name for result in results for name in result.omitted_fields})
        if not masked and not omitted:
            return
        row_ids = [
            row["id"]
            for row, result in zip(rows, results)
            if "id" in row and (result.masked_fields or result.omitted_fields)
        ]
        await self.audit.log_filter(
            table,
            reason="field access restricted",
            row_ids=row_ids,
            context={"masked_fields": masked, "omitted_fields": omitted},
            ctx=ctx or get_context_or_none(),
        )
