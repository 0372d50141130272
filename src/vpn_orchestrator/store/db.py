"""SQLite session store with optimistic-concurrency writes.

Every mutable record carries a ``version`` column. Conditional writes are
plain ``UPDATE ... WHERE version = ?`` statements; a rowcount of zero means a
concurrent writer won and the caller must re-read.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import replace
from typing import Iterable

from vpn_orchestrator.domain.session import (
    AGGREGATE_STATE_ID,
    AggregateState,
    ClientConfig,
    Session,
    SessionStatus,
    UserLease,
)
from vpn_orchestrator.errors import ConflictError, NotFoundError
from vpn_orchestrator.store.sqlite import SqliteDatabase
from vpn_orchestrator.utils.time import from_iso, to_iso

_SESSION_COLUMNS = (
    "session_id, user_id, status, compute_instance_ref, created_at, last_activity_at, "
    "terminated_at, bytes_transferred, idle_timeout_minutes, public_ip, vpn_port, "
    "error_message, cancel_requested, status_changed_at, version"
)


def _session_params(session: Session, version: int) -> tuple[object, ...]:
    return (
        session.session_id,
        session.user_id,
        session.status.value,
        session.compute_instance_ref,
        to_iso(session.created_at),
        to_iso(session.last_activity_at),
        to_iso(session.terminated_at),
        session.bytes_transferred,
        session.idle_timeout_minutes,
        session.public_ip,
        session.vpn_port,
        session.error_message,
        int(session.cancel_requested),
        to_iso(session.status_changed_at),
        version,
    )


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        session_id=row["session_id"],
        user_id=row["user_id"],
        status=SessionStatus(row["status"]),
        compute_instance_ref=row["compute_instance_ref"],
        created_at=from_iso(row["created_at"]),
        last_activity_at=from_iso(row["last_activity_at"]),
        terminated_at=from_iso(row["terminated_at"]),
        bytes_transferred=row["bytes_transferred"],
        idle_timeout_minutes=row["idle_timeout_minutes"],
        public_ip=row["public_ip"],
        vpn_port=row["vpn_port"],
        error_message=row["error_message"],
        cancel_requested=bool(row["cancel_requested"]),
        status_changed_at=from_iso(row["status_changed_at"]),
        version=row["version"],
    )


def _row_to_aggregate(row: sqlite3.Row) -> AggregateState:
    return AggregateState(
        state_id=row["state_id"],
        active_session_count=row["active_session_count"],
        total_bytes_transferred=row["total_bytes_transferred"],
        total_provisioning_attempts=row["total_provisioning_attempts"],
        total_provisioning_failures=row["total_provisioning_failures"],
        updated_at=from_iso(row["updated_at"]),
        version=row["version"],
    )


def _row_to_lease(row: sqlite3.Row) -> UserLease:
    return UserLease(
        user_id=row["user_id"],
        session_id=row["session_id"],
        created_at=from_iso(row["created_at"]),
    )


def _row_to_client_config(row: sqlite3.Row) -> ClientConfig:
    return ClientConfig(
        session_id=row["session_id"],
        user_id=row["user_id"],
        client_public_key=row["client_public_key"],
        client_address=row["client_address"],
        server_endpoint=row["server_endpoint"],
        allowed_ips=row["allowed_ips"],
        dns_servers=tuple(json.loads(row["dns_servers"])),
        artifact_location=row["artifact_location"],
        qr_code_location=row["qr_code_location"],
        created_at=from_iso(row["created_at"]),
        expires_at=from_iso(row["expires_at"]),
    )


class SqliteSessionStore(SqliteDatabase):
    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                status TEXT NOT NULL,
                compute_instance_ref TEXT,
                created_at TEXT NOT NULL,
                last_activity_at TEXT NOT NULL,
                terminated_at TEXT,
                bytes_transferred INTEGER NOT NULL DEFAULT 0,
                idle_timeout_minutes INTEGER NOT NULL,
                public_ip TEXT,
                vpn_port INTEGER NOT NULL,
                error_message TEXT,
                cancel_requested INTEGER NOT NULL DEFAULT 0,
                status_changed_at TEXT,
                version INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS aggregate_state (
                state_id TEXT PRIMARY KEY,
                active_session_count INTEGER NOT NULL,
                total_bytes_transferred INTEGER NOT NULL,
                total_provisioning_attempts INTEGER NOT NULL,
                total_provisioning_failures INTEGER NOT NULL,
                updated_at TEXT,
                version INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS user_leases (
                user_id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS client_configs (
                session_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                client_public_key TEXT NOT NULL,
                client_address TEXT NOT NULL,
                server_endpoint TEXT NOT NULL,
                allowed_ips TEXT NOT NULL,
                dns_servers TEXT NOT NULL,
                artifact_location TEXT,
                qr_code_location TEXT,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_user_id ON sessions(user_id);
            CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status);
            """
        )
        self._conn.commit()

    def _insert(self, query: str, params: tuple[object, ...], what: str) -> None:
        try:
            self.execute(query, params)
        except sqlite3.IntegrityError as exc:
            raise ConflictError(
                f"{what} already exists", code=ConflictError.ALREADY_EXISTS
            ) from exc

    # -- sessions ---------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        self._insert(
            f"INSERT INTO sessions ({_SESSION_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            _session_params(session, 1),
            f"Session {session.session_id}",
        )
        return replace(session, version=1)

    def get_session(self, session_id: str) -> Session | None:
        row = self.fetch_one(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE session_id = ?", (session_id,)
        )
        if row is None:
            return None
        return _row_to_session(row)

    def update_session(self, session: Session, expected_version: int) -> Session:
        """Write ``session`` only if the stored version still equals ``expected_version``."""
        new_version = expected_version + 1
        params = _session_params(session, new_version)
        updated = self.execute(
            """
            UPDATE sessions SET
                user_id = ?, status = ?, compute_instance_ref = ?, created_at = ?,
                last_activity_at = ?, terminated_at = ?, bytes_transferred = ?,
                idle_timeout_minutes = ?, public_ip = ?, vpn_port = ?, error_message = ?,
                cancel_requested = ?, status_changed_at = ?, version = ?
            WHERE session_id = ? AND version = ?
            """,
            (*params[1:], session.session_id, expected_version),
        )
        if updated == 1:
            return replace(session, version=new_version)

        current = self.get_session(session.session_id)
        if current is None:
            raise NotFoundError(f"Session {session.session_id} not found")
        raise ConflictError(
            f"Session {session.session_id} was modified concurrently",
            code=ConflictError.STALE_VERSION,
            details={"expectedVersion": expected_version, "currentVersion": current.version},
        )

    def query_sessions(
        self,
        *,
        user_id: str | None = None,
        statuses: Iterable[SessionStatus] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Session]:
        """Matching sessions, newest first; ``offset`` skips that many rows."""
        clauses: list[str] = []
        params: list[object] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if statuses is not None:
            values = [status.value for status in statuses]
            if not values:
                return []
            clauses.append(f"status IN ({','.join('?' for _ in values)})")
            params.extend(values)
        query = f"SELECT {_SESSION_COLUMNS} FROM sessions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, rowid DESC"
        if limit is not None or offset:
            query += " LIMIT ? OFFSET ?"
            params.extend((-1 if limit is None else limit, offset))
        return [_row_to_session(row) for row in self.fetch_all(query, params)]

    # -- aggregate state --------------------------------------------------

    def get_aggregate(self) -> AggregateState | None:
        row = self.fetch_one(
            "SELECT * FROM aggregate_state WHERE state_id = ?", (AGGREGATE_STATE_ID,)
        )
        if row is None:
            return None
        return _row_to_aggregate(row)

    def create_aggregate(self, state: AggregateState) -> AggregateState:
        self._insert(
            """
            INSERT INTO aggregate_state (
                state_id, active_session_count, total_bytes_transferred,
                total_provisioning_attempts, total_provisioning_failures, updated_at, version
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                state.state_id,
                state.active_session_count,
                state.total_bytes_transferred,
                state.total_provisioning_attempts,
                state.total_provisioning_failures,
                to_iso(state.updated_at),
                1,
            ),
            "Aggregate state",
        )
        return replace(state, version=1)

    def update_aggregate(self, state: AggregateState, expected_version: int) -> AggregateState:
        new_version = expected_version + 1
        updated = self.execute(
            """
            UPDATE aggregate_state SET
                active_session_count = ?, total_bytes_transferred = ?,
                total_provisioning_attempts = ?, total_provisioning_failures = ?,
                updated_at = ?, version = ?
            WHERE state_id = ? AND version = ?
            """,
            (
                state.active_session_count,
                state.total_bytes_transferred,
                state.total_provisioning_attempts,
                state.total_provisioning_failures,
                to_iso(state.updated_at),
                new_version,
                state.state_id,
                expected_version,
            ),
        )
        if updated != 1:
            raise ConflictError(
                "Aggregate state was modified concurrently",
                code=ConflictError.STALE_VERSION,
                details={"expectedVersion": expected_version},
            )
        return replace(state, version=new_version)

    # -- user leases ------------------------------------------------------

    def create_lease(self, lease: UserLease) -> UserLease:
        self._insert(
            "INSERT INTO user_leases (user_id, session_id, created_at) VALUES (?, ?, ?)",
            (lease.user_id, lease.session_id, to_iso(lease.created_at)),
            f"Lease for user {lease.user_id}",
        )
        return lease

    def get_lease(self, user_id: str) -> UserLease | None:
        row = self.fetch_one("SELECT * FROM user_leases WHERE user_id = ?", (user_id,))
        if row is None:
            return None
        return _row_to_lease(row)

    def delete_lease(self, user_id: str, session_id: str) -> bool:
        """Delete the lease only if ``session_id`` still holds it."""
        deleted = self.execute(
            "DELETE FROM user_leases WHERE user_id = ? AND session_id = ?",
            (user_id, session_id),
        )
        return deleted == 1

    def list_leases(self) -> list[UserLease]:
        rows = self.fetch_all("SELECT * FROM user_leases ORDER BY created_at ASC")
        return [_row_to_lease(row) for row in rows]

    def count_leases(self) -> int:
        row = self.fetch_one("SELECT COUNT(*) AS n FROM user_leases")
        return int(row["n"]) if row is not None else 0

    # -- client configs ---------------------------------------------------

    def create_client_config(self, config: ClientConfig) -> ClientConfig:
        self._insert(
            """
            INSERT INTO client_configs (
                session_id, user_id, client_public_key, client_address, server_endpoint,
                allowed_ips, dns_servers, artifact_location, qr_code_location, created_at,
                expires_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                config.session_id,
                config.user_id,
                config.client_public_key,
                config.client_address,
                config.server_endpoint,
                config.allowed_ips,
                json.dumps(list(config.dns_servers)),
                config.artifact_location,
                config.qr_code_location,
                to_iso(config.created_at),
                to_iso(config.expires_at),
            ),
            f"Client config for session {config.session_id}",
        )
        return config

    def get_client_config(self, session_id: str) -> ClientConfig | None:
        row = self.fetch_one("SELECT * FROM client_configs WHERE session_id = ?", (session_id,))
        if row is None:
            return None
        return _row_to_client_config(row)

    def expire_client_config(self, session_id: str, expires_at_iso: str) -> bool:
        updated = self.execute(
            "UPDATE client_configs SET expires_at = ?, artifact_location = NULL, "
            "qr_code_location = NULL "
            "WHERE session_id = ?",
            (expires_at_iso, session_id),
        )
        return updated == 1

    def delete_client_config(self, session_id: str) -> bool:
        return (
            self.execute("DELETE FROM client_configs WHERE session_id = ?", (session_id,)) == 1
        )
