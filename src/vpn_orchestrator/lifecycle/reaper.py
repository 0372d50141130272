"""Periodic sweep that stops abandoned sessions and recovers stalled ones."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from vpn_orchestrator.audit.db import SqliteAuditLog
from vpn_orchestrator.audit.models import AuditEvent, AuditEventType, AuditOutcome
from vpn_orchestrator.config import AuditSettings, LifecycleSettings, TimeoutSettings
from vpn_orchestrator.domain.session import (
    NON_TERMINAL_STATUSES,
    REAPABLE_STATUSES,
    Session,
    SessionStatus,
)
from vpn_orchestrator.errors import ConflictError, NotFoundError
from vpn_orchestrator.lifecycle.common import is_stalled, record_event
from vpn_orchestrator.lifecycle.deprovision import (
    TRIGGER_IDLE,
    TRIGGER_RECOVERY,
    DeprovisionWorkflow,
)
from vpn_orchestrator.lifecycle.provision import ProvisionWorkflow
from vpn_orchestrator.lifecycle.quota import QuotaGuard
from vpn_orchestrator.lifecycle.state_machine import require_transition
from vpn_orchestrator.store.gateway import AsyncSessionStore
from vpn_orchestrator.utils.aio import run_blocking
from vpn_orchestrator.utils.time import utc_now

logger = logging.getLogger(__name__)


@dataclass
class ReapReport:
    scanned: int = 0
    marked_idle: list[str] = field(default_factory=list)
    reaped: list[str] = field(default_factory=list)
    recovered: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    audit_events_purged: int = 0
    leases_reconciled: int = 0


def is_reapable(session: Session, now: datetime) -> bool:
    return session.status in REAPABLE_STATUSES and session.idle_for(now) >= session.idle_timeout


class IdleReaper:
    def __init__(
        self,
        *,
        store: AsyncSessionStore,
        provision: ProvisionWorkflow,
        deprovision: DeprovisionWorkflow,
        quota: QuotaGuard,
        audit: SqliteAuditLog,
        lifecycle: LifecycleSettings,
        timeouts: TimeoutSettings,
        audit_settings: AuditSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._provision = provision
        self._deprovision = deprovision
        self._quota = quota
        self._audit = audit
        self._lifecycle = lifecycle
        self._timeouts = timeouts
        self._audit_settings = audit_settings
        self._clock = clock

    async def run_once(self, now: datetime | None = None) -> ReapReport:
        """One sweep over all live sessions.

        A session is stopped once ``now - last_activity_at`` reaches its idle
        timeout; an ACTIVE session quiet for the idle-detect threshold is only
        marked IDLE. Sessions stalled in REQUESTED or PROVISIONING are failed,
        and those stalled in TERMINATING have their cleanup resumed.
        """
        now = now or self._clock()
        report = ReapReport()
        sessions = await self._store.query_sessions(statuses=NON_TERMINAL_STATUSES)
        report.scanned = len(sessions)

        for session in sessions:
            if is_reapable(session, now):
                await self._reap(session, now, report)
            elif session.status is SessionStatus.ACTIVE and self._is_quiet(session, now):
                await self._mark_idle(session, now, report)
            elif is_stalled(session, now, self._timeouts):
                await self._recover(session, report)

        try:
            report.audit_events_purged = await run_blocking(
                self._audit.cleanup_expired, self._audit_settings.retention_days
            )
        except Exception as exc:
            logger.warning("Audit retention sweep failed: %s", exc)
        try:
            report.leases_reconciled = await self._quota.reconcile()
        except Exception as exc:
            logger.warning("Quota reconcile failed: %s", exc)

        if report.reaped or report.recovered or report.errors:
            logger.info(
                "Reaper tick: scanned=%d reaped=%d recovered=%d idle=%d skipped=%d errors=%d",
                report.scanned,
                len(report.reaped),
                len(report.recovered),
                len(report.marked_idle),
                len(report.skipped),
                len(report.errors),
            )
        return report

    def _is_quiet(self, session: Session, now: datetime) -> bool:
        detect = min(timedelta(seconds=self._lifecycle.idle_detect_seconds), session.idle_timeout)
        return session.idle_for(now) >= detect

    async def _reap(self, session: Session, now: datetime, report: ReapReport) -> None:
        try:
            await self._deprovision.run(
                session.session_id,
                session.user_id,
                trigger=TRIGGER_IDLE,
                only_if=lambda current: is_reapable(current, now),
            )
        except (ConflictError, NotFoundError) as exc:
            logger.info("Skipping session %s: %s", session.session_id, exc)
            report.skipped.append(session.session_id)
            return
        except Exception as exc:
            logger.exception("Reaping session %s failed", session.session_id)
            report.errors[session.session_id] = str(exc)
            return
        report.reaped.append(session.session_id)

    async def _recover(self, session: Session, report: ReapReport) -> None:
        logger.warning(
            "Session %s stalled in %s; recovering", session.session_id, session.status.value
        )
        try:
            if session.status is SessionStatus.TERMINATING:
                await self._deprovision.run(
                    session.session_id, None, force=True, trigger=TRIGGER_RECOVERY
                )
            else:
                await self._provision.abandon(session)
        except (ConflictError, NotFoundError) as exc:
            logger.info("Skipping session %s: %s", session.session_id, exc)
            report.skipped.append(session.session_id)
            return
        except Exception as exc:
            logger.exception("Recovering session %s failed", session.session_id)
            report.errors[session.session_id] = str(exc)
            return
        report.recovered.append(session.session_id)

    async def _mark_idle(self, session: Session, now: datetime, report: ReapReport) -> None:
        updated = require_transition(session, SessionStatus.IDLE, now=now)
        try:
            await self._store.update_session(updated, session.version)
        except (ConflictError, NotFoundError) as exc:
            logger.debug("Session %s changed before idle marking: %s", session.session_id, exc)
            report.skipped.append(session.session_id)
            return
        report.marked_idle.append(session.session_id)
        await record_event(
            self._audit,
            AuditEvent(
                event_type=AuditEventType.VPN_IDLE_DETECTED,
                outcome=AuditOutcome.WARNING,
                message="VPN session idle",
                session_id=session.session_id,
                user_id=session.user_id,
                metadata={
                    "idleMinutes": round(session.idle_for(now).total_seconds() / 60, 1),
                    "idleTimeoutMinutes": session.idle_timeout_minutes,
                },
            ),
        )

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        interval = self._lifecycle.reaper_interval_seconds
        logger.info("Idle reaper started (interval %.1fs)", interval)
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Reaper tick failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Idle reaper stopped")
