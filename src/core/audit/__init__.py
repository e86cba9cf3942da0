from src.core.audit.models import AuditLog
from src.core.audit.service import AuditOperation, AuditResult, AuditService, list_audit_entries

__all__ = ["AuditLog", "AuditOperation", "AuditResult", "AuditService", "list_audit_entries"]
