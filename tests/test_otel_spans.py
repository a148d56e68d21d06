from __future__ import annotations

import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from rowguard.core.config import Settings
from rowguard.otel import configure_tracing, setup_inmemory_otel, tracer_provider
from rowguard.security.cache import InMemoryCacheProvider
from rowguard.security.context import AuthorizationContext
from rowguard.security.resolvers import ResolverManager, create_resolver, resolver_cache_key


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("rowguard")
    exporter.clear()
    return exporter


@pytest.mark.asyncio
async def test_resolution_emits_parent_and_per_resolver_spans(span_exporter: InMemorySpanExporter) -> None:
    manager = ResolverManager(cache_provider=InMemoryCacheProvider())
    manager.register(create_resolver("org", lambda ctx: {"org_id": "o1"}))
    manager.register(
        create_resolver(
            "perms",
            lambda ctx: {"permissions": ["read"]},
            depends_on=["org"],
            cache_key=lambda ctx: resolver_cache_key("perms", ctx),
        )
    )

    await manager.resolve(AuthorizationContext(user_id="u1"))
    await manager.resolve(AuthorizationContext(user_id="u1"))

    spans = span_exporter.get_finished_spans()
    parents = [span for span in spans if span.name == "rowguard.resolve"]
    children = [span for span in spans if span.name == "rowguard.resolver"]

    assert len(parents) == 2
    assert parents[0].attributes.get("rowguard.user_id") == "u1"
    assert {span.attributes.get("rowguard.resolver") for span in children} == {"org", "perms"}
    assert any(
        span.attributes.get("rowguard.resolver") == "perms"
        and span.attributes.get("rowguard.level") == 1
        and span.attributes.get("rowguard.cache_hit") is True
        for span in children
    )
    assert all(span.parent is not None for span in children)


def test_configure_tracing_respects_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    assert configure_tracing(Settings(otel_enabled=False)) is None

    provider = tracer_provider()
    added: list[object] = []
    monkeypatch.setattr(provider, "add_span_processor", added.append)
    monkeypatch.setattr("rowguard.otel._exporters_installed", False)

    settings = Settings(otel_enabled=True, otel_console_exporter=True)
    assert configure_tracing(settings) is provider
    assert configure_tracing(settings) is provider
    assert len(added) == 1
