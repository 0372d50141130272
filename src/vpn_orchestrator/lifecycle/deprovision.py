"""Session teardown.

Once a session reaches TERMINATING, every cleanup step is attempted
regardless of earlier failures. Only the TERMINATED write itself can abort
the sequence. A session left in TERMINATING past its cleanup window is
resumed by a forced stop or by the reaper; the resumer first claims it with a
versioned write so two resumers never run the cleanup together.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from vpn_orchestrator.audit.artifacts import ConfigArtifactStore
from vpn_orchestrator.audit.db import AuditLog
from vpn_orchestrator.audit.models import AuditEvent, AuditEventType, AuditOutcome
from vpn_orchestrator.compute.base import ComputeProvisioner
from vpn_orchestrator.config import TimeoutSettings
from vpn_orchestrator.domain.requests import validate_session_id
from vpn_orchestrator.domain.session import Session, SessionStatus
from vpn_orchestrator.errors import ConflictError
from vpn_orchestrator.lifecycle.common import (
    MAX_WRITE_ATTEMPTS,
    is_stalled,
    load_owned_session,
    record_event,
)
from vpn_orchestrator.lifecycle.quota import QuotaGuard
from vpn_orchestrator.lifecycle.state_machine import (
    TransitionRejected,
    claim_termination,
    request_cancel,
    require_transition,
)
from vpn_orchestrator.secrets.base import SecretManager
from vpn_orchestrator.store.gateway import AsyncSessionStore
from vpn_orchestrator.utils.aio import run_blocking, within_budget
from vpn_orchestrator.utils.time import to_iso, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRIGGER_USER = "user"
TRIGGER_IDLE = "idle"
TRIGGER_CANCEL = "cancel"
TRIGGER_RECOVERY = "recovery"

_BYTES_PATTERN = re.compile(r"transferred:\s*(\d+)")


def parse_bytes_transferred(logs: str) -> int | None:
    """Largest ``transferred: <n>`` counter in ``logs``, or None."""
    values = [int(match) for match in _BYTES_PATTERN.findall(logs or "")]
    return max(values) if values else None


@dataclass(frozen=True)
class StepResult:
    name: str
    ok: bool
    error: str | None = None


@dataclass
class StepResults:
    """Outcome of each best-effort cleanup step, in execution order."""

    results: list[StepResult] = field(default_factory=list)

    async def attempt(self, name: str, step: Awaitable[T], default: T | None = None) -> T | None:
        try:
            value = await step
        except Exception as exc:
            logger.warning("Deprovision step %s failed: %s", name, exc)
            self.results.append(StepResult(name=name, ok=False, error=str(exc)))
            return default
        self.results.append(StepResult(name=name, ok=True))
        return value

    def skip(self, name: str) -> None:
        self.results.append(StepResult(name=name, ok=True, error="skipped"))

    @property
    def failures(self) -> list[StepResult]:
        return [result for result in self.results if not result.ok]

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_metadata(self) -> dict[str, Any]:
        return {
            "steps": [result.name for result in self.results],
            "failedSteps": [
                {"step": result.name, "error": result.error} for result in self.failures
            ],
        }


class DeprovisionWorkflow:
    def __init__(
        self,
        *,
        store: AsyncSessionStore,
        quota: QuotaGuard,
        compute: ComputeProvisioner,
        secrets: SecretManager,
        audit: AuditLog,
        artifacts: ConfigArtifactStore,
        timeouts: TimeoutSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._quota = quota
        self._compute = compute
        self._secrets = secrets
        self._audit = audit
        self._artifacts = artifacts
        self._timeouts = timeouts
        self._clock = clock

    async def run(
        self,
        session_id: str,
        user_id: str | None,
        *,
        force: bool = False,
        trigger: str = TRIGGER_USER,
        only_if: Callable[[Session], bool] | None = None,
    ) -> Session:
        """Stop a session and release everything it holds.

        Terminal sessions are returned unchanged. ``force`` additionally
        resumes a session stalled in TERMINATING and flags one still being
        provisioned for teardown once provisioning completes.
        ``only_if`` is re-checked against every fresh read before the first
        write; a session that no longer satisfies it is left alone.

        Raises:
            NotFoundError: unknown session, or owned by another user.
            ConflictError: the session cannot be stopped from its state.
        """
        session_id = validate_session_id(session_id)
        session = await load_owned_session(self._store, session_id, user_id)

        for _ in range(MAX_WRITE_ATTEMPTS):
            status = session.status
            if status.is_terminal:
                return session
            if only_if is not None and not only_if(session):
                raise ConflictError(
                    f"Session {session_id} no longer qualifies for this stop",
                    code=ConflictError.INVALID_STATE,
                )
            if status in (SessionStatus.ACTIVE, SessionStatus.IDLE):
                target = require_transition(session, SessionStatus.TERMINATING, now=self._clock())
            elif force and status is SessionStatus.TERMINATING:
                now = self._clock()
                if not is_stalled(session, now, self._timeouts):
                    raise ConflictError(
                        f"Session {session_id} is already being stopped",
                        code=ConflictError.INVALID_STATE,
                        details={"currentStatus": status.value},
                    )
                target = claim_termination(session, now=now)
            elif force:
                if session.cancel_requested:
                    return session
                target = request_cancel(session)
            else:
                TransitionRejected(status, SessionStatus.TERMINATING).raise_error()

            try:
                written = await self._store.update_session(target, session.version)
            except ConflictError as exc:
                if exc.code != ConflictError.STALE_VERSION:
                    raise
                session = await load_owned_session(self._store, session_id, user_id)
                continue

            if written.status is not SessionStatus.TERMINATING:
                logger.info("Stop of session %s deferred until provisioning completes", session_id)
                return written
            if status is SessionStatus.TERMINATING:
                logger.info("Resuming cleanup of session %s", session_id)
                return await self._cleanup(written, trigger)
            await record_event(
                self._audit,
                AuditEvent.success(
                    AuditEventType.VPN_STOP_START,
                    "VPN deprovisioning started",
                    session_id=session_id,
                    user_id=written.user_id,
                    metadata={"trigger": trigger, "force": force},
                ),
            )
            return await self._cleanup(written, trigger)

        raise ConflictError(
            f"Session {session_id} kept changing while stopping",
            code=ConflictError.STALE_VERSION,
        )

    async def _cleanup(self, session: Session, trigger: str) -> Session:
        started = time.monotonic()
        steps = StepResults()
        ref = session.compute_instance_ref

        reported: int | None = None
        if ref:
            logs = await steps.attempt(
                "fetch_logs",
                within_budget(
                    self._compute.get_logs(ref), self._timeouts.status_seconds, "compute.get_logs"
                ),
                default="",
            )
            reported = parse_bytes_transferred(logs or "")
            await steps.attempt(
                "delete_compute",
                within_budget(
                    self._compute.delete(ref),
                    self._timeouts.deprovision_seconds,
                    "compute.delete",
                ),
            )
        else:
            steps.skip("delete_compute")

        try:
            terminated, written = await self._terminate(session, reported)
        except Exception as exc:
            await record_event(
                self._audit,
                AuditEvent.failure(
                    AuditEventType.VPN_STOP_FAILURE,
                    f"VPN deprovisioning failed: {exc}",
                    session_id=session.session_id,
                    user_id=session.user_id,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    metadata={"trigger": trigger, **steps.to_metadata()},
                ),
            )
            raise

        if not written:
            logger.info("Session %s was terminated by another stop", terminated.session_id)
            return terminated

        now_iso = to_iso(self._clock())
        await steps.attempt(
            "expire_client_config",
            self._store.expire_client_config(terminated.session_id, now_iso),
        )
        await steps.attempt(
            "delete_config_artifact",
            run_blocking(self._artifacts.delete_client_config, terminated.session_id),
        )
        await steps.attempt(
            "release_quota",
            self._quota.release(terminated, bytes_delta=terminated.bytes_transferred),
        )
        await steps.attempt(
            "cleanup_secrets",
            within_budget(
                self._secrets.cleanup_session_secrets(terminated.session_id),
                self._timeouts.deprovision_seconds,
                "secrets.cleanup",
            ),
        )

        event_type = (
            AuditEventType.VPN_AUTO_SHUTDOWN
            if trigger == TRIGGER_IDLE
            else AuditEventType.VPN_STOP_SUCCESS
        )
        await record_event(
            self._audit,
            AuditEvent(
                event_type=event_type,
                outcome=AuditOutcome.SUCCESS if steps.ok else AuditOutcome.WARNING,
                message=(
                    "VPN deprovisioned" if steps.ok else "VPN deprovisioned with cleanup errors"
                ),
                session_id=terminated.session_id,
                user_id=terminated.user_id,
                duration_ms=int((time.monotonic() - started) * 1000),
                metadata={
                    "trigger": trigger,
                    "instanceRef": ref,
                    "durationMinutes": terminated.duration_minutes,
                    "bytesTransferred": terminated.bytes_transferred,
                    **steps.to_metadata(),
                },
            ),
        )
        logger.info(
            "Session %s terminated (%s, %d failed step(s))",
            terminated.session_id,
            trigger,
            len(steps.failures),
        )
        return terminated

    async def _terminate(
        self, session: Session, reported_bytes: int | None
    ) -> tuple[Session, bool]:
        """Write TERMINATED; the flag is False if another stop got there first."""
        for _ in range(MAX_WRITE_ATTEMPTS):
            if session.is_terminal:
                return session, False
            target = require_transition(
                session,
                SessionStatus.TERMINATED,
                now=self._clock(),
                bytes_transferred=reported_bytes,
            )
            try:
                return await self._store.update_session(target, session.version), True
            except ConflictError as exc:
                if exc.code != ConflictError.STALE_VERSION:
                    raise
            session = await load_owned_session(self._store, session.session_id, None)
        raise ConflictError(
            f"Session {session.session_id} kept changing while terminating",
            code=ConflictError.STALE_VERSION,
        )
