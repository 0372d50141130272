"""SQLite-backed append-only audit log."""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Protocol

from vpn_orchestrator.audit.models import (
    MAX_MESSAGE_LENGTH,
    AuditEvent,
    AuditEventType,
    AuditOutcome,
)
from vpn_orchestrator.store.sqlite import SqliteDatabase
from vpn_orchestrator.utils.masking import redact_sensitive_fields
from vpn_orchestrator.utils.serialization import json_default
from vpn_orchestrator.utils.time import to_iso, utc_now

logger = logging.getLogger(__name__)


class AuditLog(Protocol):
    def append(self, event: AuditEvent) -> None: ...


class SqliteAuditLog(SqliteDatabase):
    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS audit_events (
                event_id TEXT PRIMARY KEY,
                event_type TEXT NOT NULL,
                outcome TEXT NOT NULL,
                session_id TEXT,
                user_id TEXT,
                message TEXT NOT NULL,
                duration_ms INTEGER,
                metadata TEXT NOT NULL,
                timestamp TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_audit_events_session_id
                ON audit_events(session_id);
            CREATE INDEX IF NOT EXISTS idx_audit_events_timestamp
                ON audit_events(timestamp);
            """
        )
        self._conn.commit()

    def append(self, event: AuditEvent) -> None:
        metadata = redact_sensitive_fields(event.metadata)
        self.execute(
            """
            INSERT INTO audit_events (
                event_id, event_type, outcome, session_id, user_id,
                message, duration_ms, metadata, timestamp
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.event_id,
                event.event_type.value,
                event.outcome.value,
                event.session_id,
                event.user_id,
                event.message[:MAX_MESSAGE_LENGTH],
                event.duration_ms,
                json.dumps(metadata, ensure_ascii=True, default=json_default),
                event.timestamp,
            ),
        )

    def query(
        self,
        *,
        session_id: str | None = None,
        event_type: AuditEventType | None = None,
        limit: int = 500,
    ) -> list[AuditEvent]:
        clauses: list[str] = []
        params: list[str | int] = []
        if session_id is not None:
            clauses.append("session_id = ?")
            params.append(session_id)
        if event_type is not None:
            clauses.append("event_type = ?")
            params.append(event_type.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        rows = self.fetch_all(
            f"SELECT * FROM audit_events {where} ORDER BY timestamp ASC, rowid ASC LIMIT ?",
            params,
        )
        return [
            AuditEvent(
                event_id=row["event_id"],
                event_type=AuditEventType(row["event_type"]),
                outcome=AuditOutcome(row["outcome"]),
                session_id=row["session_id"],
                user_id=row["user_id"],
                message=row["message"],
                duration_ms=row["duration_ms"],
                metadata=json.loads(row["metadata"]),
                timestamp=row["timestamp"],
            )
            for row in rows
        ]

    def cleanup_expired(self, retention_days: int) -> int:
        """Delete events older than the retention window.

        Returns:
            Number of events deleted.
        """
        cutoff_iso = to_iso(utc_now() - timedelta(days=retention_days))
        deleted = self.execute("DELETE FROM audit_events WHERE timestamp < ?", (cutoff_iso,))
        if deleted:
            logger.info("Audit retention removed %d event(s) older than %s", deleted, cutoff_iso)
        return deleted
