from rowguard.security.audit import (
    AuditDecision,
    AuditEvent,
    AuditLogger,
    AuditQuery,
    ConsoleAuditAdapter,
    InMemoryAuditAdapter,
    SqlAlchemyAuditAdapter,
    TableAuditConfig,
)
from rowguard.security.cache import CacheProvider, InMemoryCacheProvider
from rowguard.security.context import AuthorizationContext, Operation, PolicyEvaluationContext, RequestMeta
from rowguard.security.engine import AuthorizationEngine
from rowguard.security.errors import (
    AuditError,
    AuthorizationError,
    ContextMissingError,
    FieldEvaluationError,
    PolicyViolation,
    ResolverError,
    ResolverTimeoutError,
    SchemaError,
)
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
    public_read_restricted_write,
    read_only,
    roles_only,
)
from rowguard.security.policies import (
    allow_when,
    deny_when,
    exclude_rows,
    filter_rows,
    ownership,
    tenant_isolation,
    validate_data,
    when_condition,
    when_environment,
    when_feature,
    when_time_range,
)
from rowguard.security.query import SqlAlchemyQueryAdapter, secure_query
from rowguard.security.rebac import (
    SKIP,
    PolicyDecision,
    PolicyOutcome,
    ReBAcPolicy,
    RelationshipPath,
    RelationshipRegistry,
    RelationshipStep,
    TableRelationshipConfig,
    allow_relation,
    deny_relation,
    filter_relation,
)
from rowguard.security.resolvers import ContextResolver, ResolverManager, create_resolver

__all__ = [
    "AuditDecision",
    "AuditEvent",
    "AuditLogger",
    "AuditQuery",
    "ConsoleAuditAdapter",
    "InMemoryAuditAdapter",
    "SqlAlchemyAuditAdapter",
    "TableAuditConfig",
    "CacheProvider",
    "InMemoryCacheProvider",
    "AuthorizationContext",
    "Operation",
    "PolicyEvaluationContext",
    "RequestMeta",
    "AuthorizationEngine",
    "AuditError",
    "AuthorizationError",
    "ContextMissingError",
    "FieldEvaluationError",
    "PolicyViolation",
    "ResolverError",
    "ResolverTimeoutError",
    "SchemaError",
    "FieldAccessConfig",
    "FieldAccessProcessor",
    "FieldAccessRegistry",
    "MaskOptions",
    "TableFieldAccessConfig",
    "masked_field",
    "never_accessible",
    "owner_only",
    "owner_or_roles",
    "public_read_restricted_write",
    "read_only",
    "roles_only",
    "allow_when",
    "deny_when",
    "exclude_rows",
    "filter_rows",
    "ownership",
    "tenant_isolation",
    "validate_data",
    "when_condition",
    "when_environment",
    "when_feature",
    "when_time_range",
    "SqlAlchemyQueryAdapter",
    "secure_query",
    "SKIP",
    "PolicyDecision",
    "PolicyOutcome",
    "ReBAcPolicy",
    "RelationshipPath",
    "RelationshipRegistry",
    "RelationshipStep",
    "TableRelationshipConfig",
    "allow_relation",
    "deny_relation",
    "filter_relation",
    "ContextResolver",
    "ResolverManager",
    "create_resolver",
]
