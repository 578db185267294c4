"""
Audit trail infrastructure for pipeline events.
"""

from app.infrastructure.audit.audit_logger import SYSTEM_ACTOR, AuditLogger

__all__ = ["AuditLogger", "SYSTEM_ACTOR"]
