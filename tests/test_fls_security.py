from __future__ import annotations

from collections.abc import Generator

import pytest

from rowguard.context import authorization_scope
from rowguard.core.config import get_settings
from rowguard.security.context import AuthorizationContext
from rowguard.security.errors import ContextMissingError, PolicyViolation, SchemaError
from rowguard.security.fls import (
    FieldAccessConfig,
    FieldAccessProcessor,
    FieldAccessRegistry,
    MaskOptions,
    TableFieldAccessConfig,
    masked_field,
    never_accessible,
    owner_only,
    owner_or_roles,
    read_only,
    roles_only,
)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _users_processor(**table_options) -> FieldAccessProcessor:  # type: ignore[no-untyped-def]
    registry = FieldAccessRegistry()
    registry.register_table(
        "users",
        TableFieldAccessConfig(
            fields={
                "email": owner_only("id"),
                "password_hash": never_accessible(),
                "salary": owner_or_roles(["hr"], "id"),
                "role": read_only(),
                "card": masked_field(lambda value: f"****{value[-4:]}", lambda ctx: ctx.auth.has_role("billing")),
            },
            **table_options,
        ),
    )
    return FieldAccessProcessor(registry)


ROW = {
    "id": "u1",
    "name": "Ada",
    "email": "ada@example.com",
    "password_hash": "x",
    "salary": 100,
    "role": "admin",
    "card": "4111111111111111",
}


@pytest.mark.asyncio
async def test_owner_only_masks_for_other_users() -> None:
    processor = _users_processor()

    result = await processor.mask_row("users", ROW, ctx=AuthorizationContext(user_id="u2"))

    assert result.data["email"] is None
    assert result.data["name"] == "Ada"
    assert result.data["card"] == "****1111"
    assert "password_hash" not in result.data
    assert result.omitted_fields == ["password_hash"]
    assert sorted(result.masked_fields) == ["card", "email", "salary"]


@pytest.mark.asyncio
async def test_owner_and_roles_see_their_fields() -> None:
    processor = _users_processor()

    owner = await processor.mask_row("users", ROW, ctx=AuthorizationContext(user_id="u1"))
    hr = await processor.mask_row("users", ROW, ctx=AuthorizationContext(user_id="u9", roles={"hr"}))

    assert owner.data["email"] == "ada@example.com"
    assert owner.data["salary"] == 100
    assert hr.data["salary"] == 100
    assert hr.data["email"] is None


@pytest.mark.asyncio
async def test_default_deny_omits_unconfigured_fields() -> None:
    registry = FieldAccessRegistry()
    registry.register_table(
        "patients",
        TableFieldAccessConfig(fields={"name": FieldAccessConfig()}, default_access="deny"),
    )
    processor = FieldAccessProcessor(registry)

    result = await processor.mask_row(
        "patients",
        {"name": "Grace", "ssn": "123-45-6789"},
        ctx=AuthorizationContext(user_id="doc"),
    )

    assert result.data == {"name": "Grace"}
    assert result.omitted_fields == ["ssn"]


@pytest.mark.asyncio
async def test_validate_write_rejects_protected_fields() -> None:
    processor = _users_processor()

    with pytest.raises(PolicyViolation) as exc_info:
        await processor.validate_write(
            "users",
            {"email": "x@example.com", "name": "New"},
            {"id": "u1"},
            ctx=AuthorizationContext(user_id="u2"),
        )

    assert exc_info.value.fields == ["email"]
    assert "email" in str(exc_info.value)


@pytest.mark.asyncio
async def test_filter_writable_fields_strips_instead_of_raising() -> None:
    processor = _users_processor()

    result = await processor.filter_writable_fields(
        "users",
        {"email": "x@example.com", "name": "New", "role": "owner"},
        {"id": "u1"},
        ctx=AuthorizationContext(user_id="u1"),
    )

    assert result.data == {"email": "x@example.com", "name": "New"}
    assert result.removed_fields == ["role"]


@pytest.mark.asyncio
async def test_predicate_errors_fail_closed() -> None:
    def broken(ctx) -> bool:  # type: ignore[no-untyped-def]
        raise KeyError("tenant")

    registry = FieldAccessRegistry(
        {"accounts": TableFieldAccessConfig(fields={"balance": FieldAccessConfig(can_read=broken, masked_value="***")})}
    )
    processor = FieldAccessProcessor(registry)

    result = await processor.mask_row("accounts", {"balance": 10}, ctx=AuthorizationContext(user_id="u1"))

    assert result.data == {}
    assert result.omitted_fields == ["balance"]
    assert result.masked_fields == []


@pytest.mark.asyncio
async def test_failed_predicate_never_passes_value_to_mask_fn() -> None:
    seen: list[object] = []

    def broken(ctx) -> bool:  # type: ignore[no-untyped-def]
        raise RuntimeError("lookup failed")

    def last_four(value: object) -> str:
        seen.append(value)
        return "****" + str(value)[-4:]

    registry = FieldAccessRegistry(
        {
            "cards": TableFieldAccessConfig(
                fields={
                    "number": FieldAccessConfig(can_read=broken, mask_fn=last_four),
                    "holder": FieldAccessConfig(can_read=lambda ctx: False, mask_fn=last_four),
                }
            )
        }
    )
    processor = FieldAccessProcessor(registry)

    result = await processor.mask_row(
        "cards",
        {"number": "4111111111111111", "holder": "Ada Lovelace"},
        ctx=AuthorizationContext(user_id="u1"),
    )

    assert "number" not in result.data
    assert result.omitted_fields == ["number"]
    assert result.data["holder"] == "****lace"
    assert seen == ["Ada Lovelace"]


@pytest.mark.asyncio
async def test_async_predicates_and_skip_roles() -> None:
    async def is_auditor(ctx) -> bool:  # type: ignore[no-untyped-def]
        return ctx.auth.has_role("auditor")

    registry = FieldAccessRegistry()
    registry.register_table(
        "ledger",
        {"fields": {"amount": {"can_read": is_auditor}}, "skip_for_roles": ["superuser"]},
    )
    processor = FieldAccessProcessor(registry, default_mask_value="[hidden]")
    row = {"amount": 5}

    auditor = await processor.mask_row("ledger", row, ctx=AuthorizationContext(user_id="a", roles={"auditor"}))
    clerk = await processor.mask_row("ledger", row, ctx=AuthorizationContext(user_id="c"))
    superuser = await processor.mask_row("ledger", row, ctx=AuthorizationContext(user_id="s", roles={"superuser"}))
    system = await processor.mask_row("ledger", row, ctx=AuthorizationContext(user_id="job", is_system=True))

    assert auditor.data == {"amount": 5}
    assert clerk.data == {"amount": "[hidden]"}
    assert superuser.data == system.data == {"amount": 5}


@pytest.mark.asyncio
async def test_mask_options_and_throw_on_denied() -> None:
    processor = _users_processor()
    ctx = AuthorizationContext(user_id="u2")

    subset = await processor.mask_row("users", ROW, MaskOptions(include_fields=frozenset({"id", "email"})), ctx=ctx)
    assert subset.data == {"id": "u1", "email": None}

    excluded = await processor.mask_row("users", ROW, MaskOptions(exclude_fields=frozenset({"card"})), ctx=ctx)
    assert "card" not in excluded.data

    with pytest.raises(PolicyViolation):
        await processor.mask_row("users", ROW, MaskOptions(throw_on_denied=True), ctx=ctx)


@pytest.mark.asyncio
async def test_mask_rows_and_field_listings_use_ambient_context() -> None:
    processor = _users_processor()
    rows = [dict(ROW), dict(ROW, id="u2", email="bob@example.com")]

    with pytest.raises(ContextMissingError):
        await processor.mask_rows("users", rows)

    with authorization_scope(AuthorizationContext(user_id="u2", roles={"viewer"})):
        masked = await processor.mask_rows("users", rows)
        readable = await processor.get_readable_fields("users", rows[1])
        writable = await processor.get_writable_fields("users", rows[1])

    assert [row.data["email"] for row in masked] == [None, "bob@example.com"]
    assert "email" in readable and "password_hash" not in readable
    assert "role" not in writable and "email" in writable


def test_registry_validation_and_lookup() -> None:
    registry = FieldAccessRegistry()

    with pytest.raises(SchemaError):
        registry.register_table("t", TableFieldAccessConfig(default_access="maybe"))
    with pytest.raises(SchemaError):
        registry.register_table("t", {"fields": {"f": {"can_read": "yes"}}})

    registry.register_table("t", {"fields": {"f": roles_only(["admin"])}})
    assert registry.has_table("t")
    assert registry.configured_fields("t") == ["f"]
    assert registry.get_field_config("t", "f") is not None
    assert registry.get_field_config("t", "g") is None
    assert registry.tables == ["t"]

    registry.clear()
    assert registry.get_table_config("t") is None
