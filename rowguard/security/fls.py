from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from rowguard.context import get_context
from rowguard.core.config import get_settings
from rowguard.metrics import observe_fls_denied_writes, observe_fls_field_counts
from rowguard.security.context import AuthorizationContext, Operation, PolicyEvaluationContext
from rowguard.security.errors import FieldEvaluationError, PolicyViolation, SchemaError


logger = logging.getLogger("rowguard.fls")

FieldPredicate = Callable[[PolicyEvaluationContext], "bool | Awaitable[bool]"]
MaskFunction = Callable[[Any], Any]


class DefaultAccess(StrEnum):
    ALLOW = "allow"
    DENY = "deny"


def _always(ctx: PolicyEvaluationContext) -> bool:
    return True


def _never(ctx: PolicyEvaluationContext) -> bool:
    return False


@dataclass(frozen=True, slots=True)
class FieldAccessConfig:
    can_read: FieldPredicate | None = None
    can_write: FieldPredicate | None = None
    masked_value: Any = None
    omit_when_hidden: bool = False
    mask_fn: MaskFunction | None = None


@dataclass(frozen=True, slots=True)
class TableFieldAccessConfig:
    fields: Mapping[str, FieldAccessConfig] = field(default_factory=dict)
    default_access: str = DefaultAccess.ALLOW
    skip_for_roles: Iterable[str] = ()


@dataclass(frozen=True, slots=True)
class CompiledFieldAccess:
    field: str
    can_read: FieldPredicate
    can_write: FieldPredicate
    masked_value: Any
    omit_when_hidden: bool
    mask_fn: MaskFunction | None


@dataclass(frozen=True, slots=True)
class CompiledTableFieldAccess:
    table: str
    default_access: DefaultAccess
    skip_for_roles: frozenset[str]
    fields: Mapping[str, CompiledFieldAccess]

    def bypasses(self, ctx: AuthorizationContext) -> bool:
        return ctx.is_system or ctx.has_any_role(self.skip_for_roles)


@dataclass(frozen=True, slots=True)
class MaskOptions:
    include_fields: frozenset[str] | None = None
    exclude_fields: frozenset[str] = frozenset()
    throw_on_denied: bool = False

    def __post_init__(self) -> None:
        if self.include_fields is not None:
            object.__setattr__(self, "include_fields", frozenset(self.include_fields))
        object.__setattr__(self, "exclude_fields", frozenset(self.exclude_fields))

    def skips(self, field_name: str) -> bool:
        if field_name in self.exclude_fields:
            return True
        return self.include_fields is not None and field_name not in self.include_fields


@dataclass(slots=True)
class MaskedRow:
    data: dict[str, Any]
    masked_fields: list[str] = field(default_factory=list)
    omitted_fields: list[str] = field(default_factory=list)


@dataclass(slots=True)
class WritableFields:
    data: dict[str, Any]
    removed_fields: list[str] = field(default_factory=list)


class FieldAccessRegistry:
    """Per-table field read/write predicates, compiled once at registration."""

    def __init__(self, schema: Mapping[str, TableFieldAccessConfig | Mapping[str, Any]] | None = None) -> None:
        self._tables: dict[str, CompiledTableFieldAccess] = {}
        if schema:
            self.load_schema(schema)

    def load_schema(self, schema: Mapping[str, TableFieldAccessConfig | Mapping[str, Any]]) -> None:
        for table, config in schema.items():
            if config:
                self.register_table(table, config)

    def register_table(self, table: str, config: TableFieldAccessConfig | Mapping[str, Any]) -> None:
        if not isinstance(config, TableFieldAccessConfig):
            config = TableFieldAccessConfig(
                fields=config.get("fields", {}),
                default_access=config.get("default_access", config.get("default", DefaultAccess.ALLOW)),
                skip_for_roles=config.get("skip_for_roles", config.get("skip_for", ())),
            )

        try:
            default_access = DefaultAccess(config.default_access)
        except ValueError:
            raise SchemaError(
                f"Field access for '{table}' has unknown default access '{config.default_access}'",
                {"table": table},
            ) from None

        fields = {
            field_name: _compile_field(table, field_name, field_config)
            for field_name, field_config in config.fields.items()
            if field_config is not None
        }
        self._tables[table] = CompiledTableFieldAccess(
            table=table,
            default_access=default_access,
            skip_for_roles=frozenset(config.skip_for_roles),
            fields=MappingProxyType(fields),
        )
        logger.info("fls.table_registered", extra={"table": table, "count": len(fields)})

    async def can_read_field(self, table: str, field_name: str, ctx: PolicyEvaluationContext) -> bool:
        return await self._check(table, field_name, ctx, write=False)

    async def can_write_field(self, table: str, field_name: str, ctx: PolicyEvaluationContext) -> bool:
        return await self._check(table, field_name, ctx, write=True)

    async def evaluate(self, compiled: CompiledFieldAccess, ctx: PolicyEvaluationContext, *, write: bool) -> bool:
        """Run one field predicate; any error counts as "not accessible"."""

        return await self.evaluate_access(compiled, ctx, write=write) is True

    async def evaluate_access(
        self,
        compiled: CompiledFieldAccess,
        ctx: PolicyEvaluationContext,
        *,
        write: bool,
    ) -> bool | None:
        """Like ``evaluate`` but ``None`` when the predicate raised."""

        predicate = compiled.can_write if write else compiled.can_read
        try:
            result = predicate(ctx)
            if inspect.isawaitable(result):
                result = await result
            return bool(result)
        except Exception as exc:
            error = FieldEvaluationError(ctx.table, compiled.field, str(exc))
            logger.warning(
                "fls.evaluation_failed",
                extra={
                    "table": ctx.table,
                    "field": compiled.field,
                    "operation": "write" if write else "read",
                    "error": str(error),
                },
            )
            return None

    def get_field_config(self, table: str, field_name: str) -> CompiledFieldAccess | None:
        config = self._tables.get(table)
        return config.fields.get(field_name) if config is not None else None

    def get_table_config(self, table: str) -> CompiledTableFieldAccess | None:
        return self._tables.get(table)

    def configured_fields(self, table: str) -> list[str]:
        config = self._tables.get(table)
        return list(config.fields) if config is not None else []

    def has_table(self, table: str) -> bool:
        return table in self._tables

    @property
    def tables(self) -> list[str]:
        return list(self._tables)

    def clear(self) -> None:
        self._tables.clear()

    async def _check(self, table: str, field_name: str, ctx: PolicyEvaluationContext, *, write: bool) -> bool:
        config = self._tables.get(table)
        if config is None or config.bypasses(ctx.auth):
            return True
        compiled = config.fields.get(field_name)
        if compiled is None:
            return config.default_access == DefaultAccess.ALLOW
        return await self.evaluate(compiled, ctx, write=write)


class FieldAccessProcessor:
    """Applies compiled field rules to result rows and mutation payloads.

    The caller comes from the ambient authorization scope unless ``ctx`` is passed.
    """

    def __init__(self, registry: FieldAccessRegistry, default_mask_value: Any = None) -> None:
        self._registry = registry
        if default_mask_value is None:
            default_mask_value = get_settings().field_default_mask_value
        self._default_mask_value = default_mask_value

    @property
    def registry(self) -> FieldAccessRegistry:
        return self._registry

    async def mask_row(
        self,
        table: str,
        row: Mapping[str, Any],
        options: MaskOptions | None = None,
        *,
        ctx: AuthorizationContext | None = None,
    ) -> MaskedRow:
        ctx = ctx or get_context()
        options = options or MaskOptions()
        config = self._registry.get_table_config(table)
        if config is None or config.bypasses(ctx):
            return MaskedRow(data=dict(row))

        eval_ctx = PolicyEvaluationContext(auth=ctx, table=table, operation=Operation.READ, row=row)
        result = MaskedRow(data={})

        for field_name, value in row.items():
            if options.skips(field_name):
                continue

            compiled = config.fields.get(field_name)
            if compiled is None:
                if config.default_access == DefaultAccess.ALLOW:
                    result.data[field_name] = value
                    continue
                if options.throw_on_denied:
                    raise PolicyViolation(Operation.READ, table, f"Cannot read field: {field_name}", fields=[field_name])
                result.omitted_fields.append(field_name)
                continue

            access = await self._registry.evaluate_access(compiled, eval_ctx, write=False)
            if access:
                result.data[field_name] = value
                continue

            if options.throw_on_denied:
                raise PolicyViolation(Operation.READ, table, f"Cannot read field: {field_name}", fields=[field_name])
            # a failed predicate never reaches mask_fn
            if access is None or compiled.omit_when_hidden:
                result.omitted_fields.append(field_name)
            else:
                result.data[field_name] = self._mask_value(table, compiled, value)
                result.masked_fields.append(field_name)

        observe_fls_field_counts(table, len(result.masked_fields), len(result.omitted_fields))
        return result

    async def mask_rows(
        self,
        table: str,
        rows: Iterable[Mapping[str, Any]],
        options: MaskOptions | None = None,
        *,
        ctx: AuthorizationContext | None = None,
    ) -> list[MaskedRow]:
        ctx = ctx or get_context()
        return list(await asyncio.gather(*(self.mask_row(table, row, options, ctx=ctx) for row in rows)))

    async def validate_write(
        self,
        table: str,
        data: Mapping[str, Any],
        existing_row: Mapping[str, Any] | None = None,
        *,
        ctx: AuthorizationContext | None = None,
        operation: Operation | str = Operation.UPDATE,
    ) -> None:
        removed = await self._unwritable_fields(table, data, existing_row, ctx, Operation(operation))
        if not removed:
            return

        observe_fls_denied_writes(table, len(removed))
        logger.info(
            "fls.write_denied",
            extra={"table": table, "operation": str(operation), "fields": removed},
        )
        raise PolicyViolation(
            operation,
            table,
            f"Cannot write to protected fields: {', '.join(removed)}",
            fields=removed,
        )

    async def filter_writable_fields(
        self,
        table: str,
        data: Mapping[str, Any],
        existing_row: Mapping[str, Any] | None = None,
        *,
        ctx: AuthorizationContext | None = None,
        operation: Operation | str = Operation.UPDATE,
    ) -> WritableFields:
        removed = await self._unwritable_fields(table, data, existing_row, ctx, Operation(operation))
        observe_fls_denied_writes(table, len(removed))
        return WritableFields(
            data={key: value for key, value in data.items() if key not in removed},
            removed_fields=removed,
        )

    async def get_readable_fields(
        self,
        table: str,
        row: Mapping[str, Any],
        *,
        ctx: AuthorizationContext | None = None,
    ) -> list[str]:
        ctx = ctx or get_context()
        eval_ctx = PolicyEvaluationContext(auth=ctx, table=table, operation=Operation.READ, row=row)
        return [name for name in row if await self._registry.can_read_field(table, name, eval_ctx)]

    async def get_writable_fields(
        self,
        table: str,
        row: Mapping[str, Any],
        *,
        ctx: AuthorizationContext | None = None,
    ) -> list[str]:
        ctx = ctx or get_context()
        eval_ctx = PolicyEvaluationContext(auth=ctx, table=table, operation=Operation.UPDATE, row=row)
        return [name for name in row if await self._registry.can_write_field(table, name, eval_ctx)]

    async def _unwritable_fields(
        self,
        table: str,
        data: Mapping[str, Any],
        existing_row: Mapping[str, Any] | None,
        ctx: AuthorizationContext | None,
        operation: Operation,
    ) -> list[str]:
        ctx = ctx or get_context()
        eval_ctx = PolicyEvaluationContext(
            auth=ctx,
            table=table,
            operation=operation,
            row=existing_row or {},
            data=data,
        )
        return [name for name in data if not await self._registry.can_write_field(table, name, eval_ctx)]

    def _mask_value(self, table: str, compiled: CompiledFieldAccess, value: Any) -> Any:
        fallback = compiled.masked_value if compiled.masked_value is not None else self._default_mask_value
        if compiled.mask_fn is None:
            return fallback
        try:
            return compiled.mask_fn(value)
        except Exception as exc:
            logger.warning(
                "fls.mask_failed",
                extra={"table": table, "field": compiled.field, "error": str(exc)},
            )
            return fallback


def _compile_field(table: str, field_name: str, config: FieldAccessConfig | Mapping[str, Any]) -> CompiledFieldAccess:
    if not isinstance(config, FieldAccessConfig):
        config = FieldAccessConfig(
            can_read=config.get("can_read", config.get("read")),
            can_write=config.get("can_write", config.get("write")),
            masked_value=config.get("masked_value"),
            omit_when_hidden=bool(config.get("omit_when_hidden", False)),
            mask_fn=config.get("mask_fn"),
        )

    for label, predicate in (("can_read", config.can_read), ("can_write", config.can_write), ("mask_fn", config.mask_fn)):
        if predicate is not None and not callable(predicate):
            raise SchemaError(
                f"Field '{table}.{field_name}' {label} must be callable",
                {"table": table, "field": field_name},
            )

    return CompiledFieldAccess(
        field=field_name,
        can_read=config.can_read or _always,
        can_write=config.can_write or _always,
        masked_value=config.masked_value,
        omit_when_hidden=config.omit_when_hidden,
        mask_fn=config.mask_fn,
    )


def _is_owner(ctx: PolicyEvaluationContext, owner_field: str) -> bool:
    owner = ctx.row.get(owner_field)
    return owner is not None and str(owner) == str(ctx.auth.user_id)


def never_accessible() -> FieldAccessConfig:
    return FieldAccessConfig(can_read=_never, can_write=_never, omit_when_hidden=True)


def owner_only(owner_field: str = "id", *, masked_value: Any = None) -> FieldAccessConfig:
    def check(ctx: PolicyEvaluationContext) -> bool:
        return _is_owner(ctx, owner_field)

    return FieldAccessConfig(can_read=check, can_write=check, masked_value=masked_value)


def owner_or_roles(roles: Iterable[str], owner_field: str = "id") -> FieldAccessConfig:
    allowed = frozenset(roles)

    def check(ctx: PolicyEvaluationContext) -> bool:
        return _is_owner(ctx, owner_field) or ctx.auth.has_any_role(allowed)

    return FieldAccessConfig(can_read=check, can_write=check)


def roles_only(roles: Iterable[str]) -> FieldAccessConfig:
    allowed = frozenset(roles)

    def check(ctx: PolicyEvaluationContext) -> bool:
        return ctx.auth.has_any_role(allowed)

    return FieldAccessConfig(can_read=check, can_write=check)


def read_only(read_condition: FieldPredicate | None = None) -> FieldAccessConfig:
    return FieldAccessConfig(can_read=read_condition or _always, can_write=_never)


def public_read_restricted_write(write_condition: FieldPredicate) -> FieldAccessConfig:
    return FieldAccessConfig(can_read=_always, can_write=write_condition)


def masked_field(mask_fn: MaskFunction, condition: FieldPredicate) -> FieldAccessConfig:
    """Readable when ``condition`` holds, otherwise shown through ``mask_fn`` (e.g. last four digits)."""

    return FieldAccessConfig(can_read=condition, can_write=condition, mask_fn=mask_fn)
