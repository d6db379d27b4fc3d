"""Audit infrastructure components.

This package provides infrastructure components for audit logging of the
changes reconciliation passes make to persisted records.
"""

from reconciler.infrastructure.audit.change_audit_logger import ChangeAuditLogger

__all__ = ['ChangeAuditLogger']
