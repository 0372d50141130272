"""Session lifecycle transitions.

States:
    REQUESTED     -> PROVISIONING : admission granted
    PROVISIONING  -> ACTIVE       : compute ready
    PROVISIONING  -> FAILED       : compute error or budget exceeded
    ACTIVE        -> IDLE         : no traffic for the idle-detect threshold
    IDLE          -> ACTIVE       : traffic resumes
    ACTIVE / IDLE -> TERMINATING  : stop request or reaper trigger
    TERMINATING   -> TERMINATED   : cleanup sequence completed

``transition_to`` is the only function that changes ``Session.status``. It
never touches storage; callers persist the returned record with a versioned
write.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import NoReturn

from vpn_orchestrator.domain.session import (
    MAX_ERROR_MESSAGE_LENGTH,
    Session,
    SessionStatus,
)
from vpn_orchestrator.errors import ConflictError

S = SessionStatus

ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    S.REQUESTED: frozenset({S.PROVISIONING}),
    S.PROVISIONING: frozenset({S.ACTIVE, S.FAILED}),
    S.ACTIVE: frozenset({S.IDLE, S.TERMINATING}),
    S.IDLE: frozenset({S.ACTIVE, S.TERMINATING}),
    S.TERMINATING: frozenset({S.TERMINATED}),
    S.TERMINATED: frozenset(),
    S.FAILED: frozenset(),
}


@dataclass(frozen=True)
class TransitionApplied:
    session: Session
    noop: bool = False

    ok = True


@dataclass(frozen=True)
class TransitionRejected:
    current: SessionStatus
    target: SessionStatus

    ok = False

    @property
    def message(self) -> str:
        allowed = ", ".join(sorted(s.value for s in ALLOWED_TRANSITIONS[self.current])) or "none"
        return (
            f"Cannot transition from {self.current.value} to {self.target.value}. "
            f"Valid transitions: {allowed}"
        )

    def raise_error(self) -> NoReturn:
        raise ConflictError(
            self.message,
            code=ConflictError.INVALID_STATE,
            details={"currentStatus": self.current.value, "targetStatus": self.target.value},
        )


TransitionResult = TransitionApplied | TransitionRejected


def is_allowed(current: SessionStatus, target: SessionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def transition_to(
    session: Session,
    target: SessionStatus,
    *,
    now: datetime,
    compute_instance_ref: str | None = None,
    public_ip: str | None = None,
    bytes_transferred: int | None = None,
    error_message: str | None = None,
) -> TransitionResult:
    """Apply ``session.status -> target`` if the table allows it.

    Requesting the terminal state a session already sits in is an idempotent
    no-op that returns the stored record unchanged.
    """
    current = session.status
    if current == target and current.is_terminal:
        return TransitionApplied(session, noop=True)
    if not is_allowed(current, target):
        return TransitionRejected(current, target)

    if compute_instance_ref is not None and target not in (S.ACTIVE, S.FAILED):
        return TransitionRejected(current, target)
    if (
        compute_instance_ref is not None
        and session.compute_instance_ref is not None
        and compute_instance_ref != session.compute_instance_ref
    ):
        raise ConflictError(
            f"Session {session.session_id} already references a compute instance",
            code=ConflictError.INVALID_STATE,
        )

    changes: dict[str, object] = {"status": target, "status_changed_at": now}
    if compute_instance_ref is not None:
        changes["compute_instance_ref"] = compute_instance_ref
    if public_ip is not None:
        changes["public_ip"] = public_ip
    if bytes_transferred is not None:
        changes["bytes_transferred"] = max(session.bytes_transferred, bytes_transferred)
    if error_message is not None:
        changes["error_message"] = error_message[:MAX_ERROR_MESSAGE_LENGTH]

    match target:
        case S.ACTIVE:
            # Compute ready, or traffic resumed: both count as activity.
            changes["last_activity_at"] = max(session.last_activity_at, now)
        case S.TERMINATED:
            changes["terminated_at"] = session.terminated_at or now
        case S.FAILED:
            changes["terminated_at"] = session.terminated_at or now
        case S.PROVISIONING | S.IDLE | S.TERMINATING | S.REQUESTED:
            pass

    return TransitionApplied(replace(session, **changes))


def require_transition(session: Session, target: SessionStatus, **kwargs: object) -> Session:
    """``transition_to`` that raises ``ConflictError`` on a rejected pair."""
    result = transition_to(session, target, **kwargs)
    if isinstance(result, TransitionRejected):
        result.raise_error()
    return result.session


def record_activity(
    session: Session,
    *,
    now: datetime,
    bytes_transferred: int | None = None,
) -> Session:
    """Note traffic on a live session; an IDLE session becomes ACTIVE again."""
    if session.status not in (S.ACTIVE, S.IDLE):
        TransitionRejected(session.status, S.ACTIVE).raise_error()
    if session.status is S.IDLE:
        updated = require_transition(session, S.ACTIVE, now=now)
    else:
        updated = replace(session, last_activity_at=max(session.last_activity_at, now))
    if bytes_transferred is not None and bytes_transferred > updated.bytes_transferred:
        updated = replace(updated, bytes_transferred=bytes_transferred)
    return updated


def request_cancel(session: Session) -> Session:
    """Flag a session whose provisioning is still in flight for teardown."""
    if session.status not in (S.REQUESTED, S.PROVISIONING):
        TransitionRejected(session.status, S.TERMINATING).raise_error()
    return replace(session, cancel_requested=True)


def claim_termination(session: Session, *, now: datetime) -> Session:
    """Restart the cleanup clock of a session left in TERMINATING."""
    if session.status is not S.TERMINATING:
        TransitionRejected(session.status, S.TERMINATED).raise_error()
    return replace(session, status_changed_at=now)
