"""Orchestrator API consumed by the HTTP layer."""

from __future__ import annotations

import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, ParamSpec, TypeVar

from vpn_orchestrator.audit.artifacts import ConfigArtifactStore
from vpn_orchestrator.compute.base import ComputeProvisioner, ComputeStatus
from vpn_orchestrator.config import TimeoutSettings
from vpn_orchestrator.domain.requests import (
    ProvisionRequest,
    validate_page,
    validate_session_id,
    validate_user_id,
)
from vpn_orchestrator.domain.session import (
    REAPABLE_STATUSES,
    AggregateState,
    ClientConfig,
    Session,
)
from vpn_orchestrator.errors import ConflictError, InternalError, NotFoundError, OrchestratorError
from vpn_orchestrator.lifecycle import state_machine
from vpn_orchestrator.lifecycle.common import MAX_WRITE_ATTEMPTS, load_owned_session
from vpn_orchestrator.lifecycle.deprovision import DeprovisionWorkflow
from vpn_orchestrator.lifecycle.provision import ProvisionWorkflow
from vpn_orchestrator.lifecycle.quota import QuotaGuard
from vpn_orchestrator.store.gateway import AsyncSessionStore
from vpn_orchestrator.utils.aio import run_blocking, within_budget
from vpn_orchestrator.utils.time import utc_now

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def _guarded(operation: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
    """Pass orchestrator errors through; anything else becomes ``InternalError``."""

    @functools.wraps(operation)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
        try:
            return await operation(*args, **kwargs)
        except OrchestratorError:
            raise
        except Exception as exc:
            logger.exception("Unexpected error in %s", operation.__name__)
            raise InternalError("An unexpected error occurred") from exc

    return wrapper


@dataclass(frozen=True)
class SessionStatusView:
    session: Session
    compute_status: ComputeStatus | None
    health_error: str | None = None

    @property
    def healthy(self) -> bool:
        return self.compute_status is not None and self.compute_status.is_healthy

    def to_dict(self) -> dict[str, Any]:
        payload = self.session.to_dict()
        payload["health"] = {
            "computeStatus": self.compute_status.value if self.compute_status else None,
            "healthy": self.healthy,
            "error": self.health_error,
        }
        return payload


@dataclass(frozen=True)
class ClientConfigBundle:
    config: ClientConfig
    content: str
    qr_code: str | None = None


class SessionOrchestrator:
    def __init__(
        self,
        *,
        store: AsyncSessionStore,
        quota: QuotaGuard,
        provision: ProvisionWorkflow,
        deprovision: DeprovisionWorkflow,
        compute: ComputeProvisioner,
        artifacts: ConfigArtifactStore,
        timeouts: TimeoutSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._quota = quota
        self._provision = provision
        self._deprovision = deprovision
        self._compute = compute
        self._artifacts = artifacts
        self._timeouts = timeouts
        self._clock = clock

    @_guarded
    async def request_provision(
        self,
        user_id: str,
        request: ProvisionRequest | dict[str, Any] | None = None,
    ) -> Session:
        return await self._provision.run(user_id, request)

    @_guarded
    async def request_deprovision(
        self, session_id: str, user_id: str, force: bool = False
    ) -> Session:
        user_id = validate_user_id(user_id)
        return await self._deprovision.run(session_id, user_id, force=force)

    @_guarded
    async def get_session(
        self, session_id: str, user_id: str, *, include_health: bool = False
    ) -> Session | SessionStatusView:
        session = await load_owned_session(
            self._store, validate_session_id(session_id), validate_user_id(user_id)
        )
        if not include_health:
            return session
        return await self._probe(session)

    async def _probe(self, session: Session) -> SessionStatusView:
        ref = session.compute_instance_ref
        if ref is None or session.is_terminal:
            return SessionStatusView(session=session, compute_status=None)
        try:
            status = await within_budget(
                self._compute.get_status(ref), self._timeouts.status_seconds, "compute.get_status"
            )
        except Exception as exc:
            logger.warning("Health probe for session %s failed: %s", session.session_id, exc)
            return SessionStatusView(
                session=session, compute_status=ComputeStatus.UNKNOWN, health_error=str(exc)
            )
        return SessionStatusView(session=session, compute_status=status)

    @_guarded
    async def list_sessions(
        self, user_id: str, *, limit: int | None = None, offset: int = 0
    ) -> list[Session]:
        """The user's sessions, newest first.

        All of them unless ``limit`` is given; ``offset`` pages past the
        first ``offset`` sessions.
        """
        user_id = validate_user_id(user_id)
        limit, offset = validate_page(limit, offset)
        return await self._store.query_sessions(user_id=user_id, limit=limit, offset=offset)

    @_guarded
    async def record_activity(
        self,
        session_id: str,
        user_id: str,
        bytes_transferred: int | None = None,
    ) -> Session:
        session_id = validate_session_id(session_id)
        user_id = validate_user_id(user_id)
        session = await load_owned_session(self._store, session_id, user_id)
        for _ in range(MAX_WRITE_ATTEMPTS):
            updated = state_machine.record_activity(
                session, now=self._clock(), bytes_transferred=bytes_transferred
            )
            try:
                return await self._store.update_session(updated, session.version)
            except ConflictError as exc:
                if exc.code != ConflictError.STALE_VERSION:
                    raise
            session = await load_owned_session(self._store, session_id, user_id)
        raise ConflictError(
            f"Session {session_id} kept changing while recording activity",
            code=ConflictError.STALE_VERSION,
        )

    @_guarded
    async def get_client_config(self, session_id: str, user_id: str) -> ClientConfigBundle:
        session = await load_owned_session(
            self._store, validate_session_id(session_id), validate_user_id(user_id)
        )
        config = await self._store.get_client_config(session.session_id)
        if config is None:
            raise NotFoundError(f"No client configuration for session {session.session_id}")
        if session.status not in REAPABLE_STATUSES or not config.artifact_location:
            raise NotFoundError(
                f"Client configuration for session {session.session_id} has expired",
                code="CONFIG_EXPIRED",
            )
        content = await run_blocking(self._artifacts.read_text, config.artifact_location)
        qr_code = None
        if config.qr_code_location:
            qr_code = await run_blocking(self._artifacts.read_text, config.qr_code_location)
        return ClientConfigBundle(config=config, content=content, qr_code=qr_code)

    @_guarded
    async def capacity(self) -> AggregateState:
        return await self._quota.snapshot()
