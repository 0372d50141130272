"""Helpers shared by the lifecycle workflows."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from vpn_orchestrator.audit.db import AuditLog
from vpn_orchestrator.audit.models import AuditEvent
from vpn_orchestrator.config import TimeoutSettings
from vpn_orchestrator.domain.session import Session, SessionStatus
from vpn_orchestrator.errors import NotFoundError
from vpn_orchestrator.store.gateway import AsyncSessionStore
from vpn_orchestrator.utils.aio import run_blocking

logger = logging.getLogger(__name__)

# Re-read/re-apply rounds for a versioned session write.
MAX_WRITE_ATTEMPTS = 5


async def load_owned_session(
    store: AsyncSessionStore, session_id: str, user_id: str | None
) -> Session:
    """Fetch a session; another user's session is reported as missing.

    ``user_id=None`` skips the ownership check (internal callers only).
    """
    session = await store.get_session(session_id)
    if session is None or (user_id is not None and session.user_id != user_id):
        raise NotFoundError(f"Session {session_id} not found")
    return session


async def record_event(audit: AuditLog, event: AuditEvent) -> None:
    """Append ``event``; a failing audit sink never fails the workflow."""
    try:
        await run_blocking(audit.append, event)
    except Exception as exc:
        logger.warning(
            "Failed to record audit event %s for session %s: %s",
            event.event_type.value,
            event.session_id,
            exc,
        )


def provisioning_window(timeouts: TimeoutSettings) -> timedelta:
    """Longest a live provisioning attempt keeps a session in REQUESTED or PROVISIONING.

    Covers the create budget plus the instance lookup, discard and store
    writes of a failing attempt.
    """
    return timedelta(
        seconds=timeouts.provision_seconds
        + timeouts.status_seconds
        + 2 * timeouts.deprovision_seconds
        + timeouts.store_seconds
    )


def cleanup_window(timeouts: TimeoutSettings) -> timedelta:
    """Longest a live cleanup keeps a session in TERMINATING."""
    return timedelta(
        seconds=timeouts.status_seconds
        + 2 * timeouts.deprovision_seconds
        + timeouts.store_seconds
    )


def is_stalled(session: Session, now: datetime, timeouts: TimeoutSettings) -> bool:
    """True once nothing can still be working on ``session``'s current status."""
    match session.status:
        case SessionStatus.REQUESTED | SessionStatus.PROVISIONING:
            window = provisioning_window(timeouts)
        case SessionStatus.TERMINATING:
            window = cleanup_window(timeouts)
        case _:
            return False
    return session.in_status_for(now) >= window
