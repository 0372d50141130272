"""Async facade over the blocking session store.

Each call runs in a worker thread and is bounded by the store budget. A
timed-out write may still land; versioned writes make that safe because the
caller re-reads before trying again.
"""

from __future__ import annotations

from typing import Iterable

from vpn_orchestrator.domain.session import (
    AggregateState,
    ClientConfig,
    Session,
    SessionStatus,
    UserLease,
)
from vpn_orchestrator.store.db import SqliteSessionStore
from vpn_orchestrator.utils.aio import run_blocking, within_budget


class AsyncSessionStore:
    def __init__(self, store: SqliteSessionStore, timeout_seconds: float = 5.0) -> None:
        self._store = store
        self._timeout = timeout_seconds

    async def _call(self, name: str, *args, **kwargs):
        method = getattr(self._store, name)
        return await within_budget(
            run_blocking(method, *args, **kwargs), self._timeout, f"store.{name}"
        )

    async def get_session(self, session_id: str) -> Session | None:
        return await self._call("get_session", session_id)

    async def create_session(self, session: Session) -> Session:
        return await self._call("create_session", session)

    async def update_session(self, session: Session, expected_version: int) -> Session:
        return await self._call("update_session", session, expected_version)

    async def query_sessions(
        self,
        *,
        user_id: str | None = None,
        statuses: Iterable[SessionStatus] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Session]:
        return await self._call(
            "query_sessions",
            user_id=user_id,
            statuses=list(statuses) if statuses is not None else None,
            limit=limit,
            offset=offset,
        )

    async def get_aggregate(self) -> AggregateState | None:
        return await self._call("get_aggregate")

    async def create_aggregate(self, state: AggregateState) -> AggregateState:
        return await self._call("create_aggregate", state)

    async def update_aggregate(
        self, state: AggregateState, expected_version: int
    ) -> AggregateState:
        return await self._call("update_aggregate", state, expected_version)

    async def create_lease(self, lease: UserLease) -> UserLease:
        return await self._call("create_lease", lease)

    async def get_lease(self, user_id: str) -> UserLease | None:
        return await self._call("get_lease", user_id)

    async def delete_lease(self, user_id: str, session_id: str) -> bool:
        return await self._call("delete_lease", user_id, session_id)

    async def list_leases(self) -> list[UserLease]:
        return await self._call("list_leases")

    async def count_leases(self) -> int:
        return await self._call("count_leases")

    async def create_client_config(self, config: ClientConfig) -> ClientConfig:
        return await self._call("create_client_config", config)

    async def get_client_config(self, session_id: str) -> ClientConfig | None:
        return await self._call("get_client_config", session_id)

    async def expire_client_config(self, session_id: str, expires_at_iso: str) -> bool:
        return await self._call("expire_client_config", session_id, expires_at_iso)
