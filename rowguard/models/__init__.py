from rowguard.models.audit import AuditLogRecord

__all__ = ["AuditLogRecord"]
