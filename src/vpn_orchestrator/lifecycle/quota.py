"""Admission control over the shared aggregate counter.

Two records coordinate admission:

* ``AggregateState.active_session_count`` bounds the number of admitted,
  unreleased sessions. It only changes through compare-and-swap.
* ``UserLease`` (one row per user, insert-if-absent) is the per-user token.
  Release deletes it conditionally on the session id, and only the caller
  whose delete succeeded decrements the counter, so a session is released at
  most once no matter how many stop paths race.

A process dying between the lease delete and the decrement leaves the counter
one too high. It never drifts low, so the cap is never overshot.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta

from vpn_orchestrator.config import QuotaSettings
from vpn_orchestrator.domain.session import AggregateState, Session, SessionStatus, UserLease
from vpn_orchestrator.errors import AdmissionError, ConflictError
from vpn_orchestrator.store.gateway import AsyncSessionStore
from vpn_orchestrator.utils.aio import backoff_delay
from vpn_orchestrator.utils.time import utc_now

logger = logging.getLogger(__name__)


class QuotaGuard:
    def __init__(
        self,
        store: AsyncSessionStore,
        settings: QuotaSettings,
        *,
        lease_grace_seconds: float = 240.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._settings = settings
        self._lease_grace = timedelta(seconds=lease_grace_seconds)
        self._clock = clock

    @property
    def global_cap(self) -> int:
        return self._settings.global_session_cap

    def _delay(self, attempt: int) -> float:
        return backoff_delay(
            attempt,
            base_delay_ms=self._settings.admission_base_delay_ms,
            max_delay_ms=self._settings.admission_max_delay_ms,
        )

    async def snapshot(self) -> AggregateState:
        return await self._ensure_aggregate()

    async def _ensure_aggregate(self) -> AggregateState:
        state = await self._store.get_aggregate()
        if state is not None:
            return state
        try:
            return await self._store.create_aggregate(AggregateState(updated_at=self._clock()))
        except ConflictError as exc:
            if exc.code != ConflictError.ALREADY_EXISTS:
                raise
        state = await self._store.get_aggregate()
        if state is None:
            raise ConflictError("Aggregate state vanished after creation")
        return state

    async def _update(
        self, mutate: Callable[[AggregateState], AggregateState], action: str
    ) -> AggregateState:
        """Read-modify-CAS loop; ``mutate`` is re-evaluated against fresh state."""
        attempts = self._settings.admission_max_attempts
        for attempt in range(attempts):
            state = await self._ensure_aggregate()
            updated = replace(mutate(state), updated_at=self._clock())
            try:
                return await self._store.update_aggregate(updated, state.version)
            except ConflictError as exc:
                if exc.code != ConflictError.STALE_VERSION:
                    raise
                logger.debug("Aggregate %s lost a race (attempt %d)", action, attempt + 1)
                await asyncio.sleep(self._delay(attempt))
        raise ConflictError(
            f"Aggregate {action} still contended after {attempts} attempts",
            code=ConflictError.STALE_VERSION,
        )

    # -- admission --------------------------------------------------------

    async def admit(self, user_id: str, session_id: str) -> AggregateState:
        """Reserve a slot for ``session_id``.

        Raises:
            AdmissionError: ``DUPLICATE_SESSION`` when the user already holds a
                live session, ``QUOTA_EXCEEDED`` when the cap is reached.
        """
        await self._claim_lease(user_id, session_id)
        cap = self.global_cap

        def increment(state: AggregateState) -> AggregateState:
            if state.active_session_count >= cap:
                raise AdmissionError(
                    f"Maximum concurrent sessions ({cap}) reached",
                    reason=AdmissionError.QUOTA_EXCEEDED,
                    details={
                        "activeSessions": state.active_session_count,
                        "maxCapacity": cap,
                    },
                )
            return replace(
                state,
                active_session_count=state.active_session_count + 1,
                total_provisioning_attempts=state.total_provisioning_attempts + 1,
            )

        try:
            state = await self._update(increment, "admission")
        except BaseException:
            await self._store.delete_lease(user_id, session_id)
            raise
        logger.info(
            "Admitted session %s for user %s (%d/%d)",
            session_id,
            user_id,
            state.active_session_count,
            cap,
        )
        return state

    async def _claim_lease(self, user_id: str, session_id: str) -> None:
        lease = UserLease(user_id=user_id, session_id=session_id, created_at=self._clock())
        attempts = self._settings.admission_max_attempts
        for _ in range(attempts):
            try:
                await self._store.create_lease(lease)
                return
            except ConflictError as exc:
                if exc.code != ConflictError.ALREADY_EXISTS:
                    raise

            holder = await self._store.get_lease(user_id)
            if holder is None:
                continue
            if holder.session_id == session_id:
                return
            held = await self._store.get_session(holder.session_id)
            if not await self._release_if_stale(holder, held):
                raise AdmissionError(
                    "User already has an active VPN session",
                    reason=AdmissionError.DUPLICATE_SESSION,
                    details={"existingSessionId": holder.session_id},
                )
        raise ConflictError(
            f"Lease for user {user_id} still contended after {attempts} attempts",
            code=ConflictError.STALE_VERSION,
        )

    async def _release_if_stale(self, lease: UserLease, holder: Session | None) -> bool:
        """Free a lease whose holder can no longer be live. False if it may be."""
        if holder is None:
            # Admitted but the session row is not written yet, or never will be.
            if self._clock() - lease.created_at < self._lease_grace:
                return False
            if await self._store.delete_lease(lease.user_id, lease.session_id):
                logger.warning(
                    "Dropped orphan lease of user %s (session %s never recorded)",
                    lease.user_id,
                    lease.session_id,
                )
            return True
        if not holder.is_terminal:
            return False
        logger.warning(
            "Releasing stale lease of user %s held by %s session %s",
            lease.user_id,
            holder.status.value,
            holder.session_id,
        )
        await self.release(holder, failed=holder.status is SessionStatus.FAILED)
        return True

    # -- release ----------------------------------------------------------

    async def release(
        self,
        session: Session,
        *,
        bytes_delta: int = 0,
        failed: bool = False,
    ) -> bool:
        """Return the session's slot. A second call for the same session is a no-op.

        Returns:
            True if this call performed the release.
        """
        if not await self._store.delete_lease(session.user_id, session.session_id):
            logger.debug("Session %s already released", session.session_id)
            return False

        delta = max(0, bytes_delta)

        def decrement(state: AggregateState) -> AggregateState:
            return replace(
                state,
                active_session_count=max(0, state.active_session_count - 1),
                total_bytes_transferred=state.total_bytes_transferred + delta,
                total_provisioning_failures=state.total_provisioning_failures + int(failed),
            )

        try:
            state = await self._update(decrement, "release")
        except ConflictError:
            logger.error(
                "Lease of session %s dropped but the counter was not decremented",
                session.session_id,
            )
            raise
        logger.info(
            "Released session %s (%d/%d)",
            session.session_id,
            state.active_session_count,
            self.global_cap,
        )
        return True

    async def reconcile(self) -> int:
        """Release leases whose holder is terminal or was never recorded.

        Heals a release that crashed after the session reached its terminal
        state. Returns the number of leases freed.
        """
        healed = 0
        for lease in await self._store.list_leases():
            holder = await self._store.get_session(lease.session_id)
            if holder is not None and not holder.is_terminal:
                continue
            if await self._release_if_stale(lease, holder):
                healed += 1
        if healed:
            logger.info("Quota reconcile freed %d stale lease(s)", healed)
        return healed
