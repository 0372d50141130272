"""Append-only audit trail and client configuration artifacts."""

from vpn_orchestrator.audit.artifacts import ConfigArtifactStore
from vpn_orchestrator.audit.db import AuditLog, SqliteAuditLog
from vpn_orchestrator.audit.models import AuditEvent, AuditEventType, AuditOutcome

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditLog",
    "AuditOutcome",
    "ConfigArtifactStore",
    "SqliteAuditLog",
]
