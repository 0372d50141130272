"""Session provisioning."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from vpn_orchestrator.audit.artifacts import ConfigArtifactStore
from vpn_orchestrator.audit.db import AuditLog
from vpn_orchestrator.audit.models import AuditEvent, AuditEventType
from vpn_orchestrator.compute.base import ComputeInstance, ComputeProvisioner, ComputeSpec
from vpn_orchestrator.config import Settings
from vpn_orchestrator.crypto.wireguard import (
    CLIENT_ADDRESS,
    KeyPair,
    generate_keypair,
    render_client_config,
    render_qr_code,
)
from vpn_orchestrator.domain.requests import ProvisionRequest, validate_user_id
from vpn_orchestrator.domain.session import ClientConfig, Session, SessionStatus
from vpn_orchestrator.errors import ConflictError, ProviderError
from vpn_orchestrator.lifecycle.common import (
    MAX_WRITE_ATTEMPTS,
    load_owned_session,
    record_event,
)
from vpn_orchestrator.lifecycle.deprovision import TRIGGER_CANCEL, DeprovisionWorkflow
from vpn_orchestrator.lifecycle.quota import QuotaGuard
from vpn_orchestrator.lifecycle.state_machine import require_transition
from vpn_orchestrator.secrets.base import SecretManager
from vpn_orchestrator.store.gateway import AsyncSessionStore
from vpn_orchestrator.utils.aio import backoff_delay, run_blocking, within_budget
from vpn_orchestrator.utils.time import utc_now

logger = logging.getLogger(__name__)

SERVER_KEY_SECRET = "server-private-key"
CLIENT_KEY_SECRET = "client-private-key"


@dataclass(frozen=True)
class _SessionKeys:
    server: KeyPair
    client: KeyPair


class ProvisionWorkflow:
    def __init__(
        self,
        *,
        store: AsyncSessionStore,
        quota: QuotaGuard,
        compute: ComputeProvisioner,
        secrets: SecretManager,
        audit: AuditLog,
        artifacts: ConfigArtifactStore,
        deprovision: DeprovisionWorkflow,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._quota = quota
        self._compute = compute
        self._secrets = secrets
        self._audit = audit
        self._artifacts = artifacts
        self._deprovision = deprovision
        self._settings = settings
        self._timeouts = settings.timeouts
        self._lifecycle = settings.lifecycle
        self._clock = clock

    async def run(
        self,
        user_id: str,
        request: ProvisionRequest | dict[str, Any] | None = None,
    ) -> Session:
        """Admit, provision and activate a new session for ``user_id``.

        Raises:
            ValidationError: malformed input; nothing is created.
            AdmissionError: quota or duplicate-session rejection.
            ProviderError: compute creation failed; the session is FAILED.
        """
        user_id = validate_user_id(user_id)
        request = ProvisionRequest.parse(request)
        started = time.monotonic()

        now = self._clock()
        session = Session(
            session_id=str(uuid.uuid4()),
            user_id=user_id,
            status=SessionStatus.REQUESTED,
            created_at=now,
            last_activity_at=now,
            idle_timeout_minutes=(
                request.idle_timeout_minutes or self._lifecycle.default_idle_timeout_minutes
            ),
            vpn_port=self._settings.compute.vpn_port,
        )

        await self._quota.admit(user_id, session.session_id)
        try:
            session = await self._store.create_session(session)
        except Exception:
            if await self._was_recorded(session.session_id):
                # The write landed after all; the reaper fails it and frees the slot.
                logger.warning(
                    "Session %s was stored despite a failed create", session.session_id
                )
            else:
                await self._quota.release(session, failed=True)
            raise

        session = await self._advance(session, SessionStatus.PROVISIONING)
        await record_event(
            self._audit,
            AuditEvent.success(
                AuditEventType.VPN_PROVISION_START,
                "VPN provisioning started",
                session_id=session.session_id,
                user_id=user_id,
                metadata={"idleTimeoutMinutes": session.idle_timeout_minutes},
            ),
        )

        try:
            instance, keys = await within_budget(
                self._create_compute(session),
                self._timeouts.provision_seconds,
                "compute.create",
            )
        except Exception as exc:
            if isinstance(exc, ProviderError):
                error = exc
            else:
                error = ProviderError(str(exc), code="unexpected")
            await self._fail(session, error, started)
            raise ProviderError(
                f"VPN provisioning failed: {error.message}",
                code=error.code,
                transient=error.transient,
                instance_ref=error.instance_ref,
            ) from exc

        session = await self._advance(
            session,
            SessionStatus.ACTIVE,
            compute_instance_ref=instance.instance_ref,
            public_ip=instance.public_ip,
        )
        if session.status is not SessionStatus.ACTIVE:
            # Failed underneath us; the instance we just started has no owner.
            logger.warning(
                "Session %s became %s during provisioning; discarding instance %s",
                session.session_id,
                session.status.value,
                instance.instance_ref,
            )
            await self._discard(session.session_id, instance.instance_ref)
            return session

        duration_ms = int((time.monotonic() - started) * 1000)
        await record_event(
            self._audit,
            AuditEvent.success(
                AuditEventType.VPN_PROVISION_SUCCESS,
                "VPN provisioned",
                session_id=session.session_id,
                user_id=user_id,
                duration_ms=duration_ms,
                metadata={"instanceRef": instance.instance_ref, "endpoint": session.endpoint},
            ),
        )
        logger.info(
            "Session %s active at %s after %dms", session.session_id, session.endpoint, duration_ms
        )

        if session.cancel_requested:
            logger.info(
                "Session %s was stopped during provisioning; tearing down", session.session_id
            )
            return await self._deprovision.run(
                session.session_id, user_id, force=True, trigger=TRIGGER_CANCEL
            )

        await self._issue_client_config(session, keys, request)
        return session

    async def abandon(self, session: Session) -> Session:
        """Fail a session whose provisioning attempt is gone.

        Any instance the attempt started is looked up, recorded on the
        session and deleted, and the quota slot is released.

        Raises:
            ConflictError: the session made progress since it was read.
        """
        if session.status is SessionStatus.REQUESTED:
            session = await self._advance(session, SessionStatus.PROVISIONING)
        error = ProviderError(
            f"Provisioning of session {session.session_id} was abandoned",
            code="abandoned",
            transient=True,
        )
        return await self._fail(session, error, None)

    async def _was_recorded(self, session_id: str) -> bool:
        try:
            return await self._store.get_session(session_id) is not None
        except Exception as exc:
            logger.warning("Could not re-read session %s: %s", session_id, exc)
            return False

    async def _advance(self, session: Session, target: SessionStatus, **changes: Any) -> Session:
        """Versioned transition; re-read on conflict. A terminal record wins."""
        for _ in range(MAX_WRITE_ATTEMPTS):
            if session.is_terminal:
                return session
            updated = require_transition(session, target, now=self._clock(), **changes)
            try:
                return await self._store.update_session(updated, session.version)
            except ConflictError as exc:
                if exc.code != ConflictError.STALE_VERSION:
                    raise
            session = await load_owned_session(self._store, session.session_id, None)
        raise ConflictError(
            f"Session {session.session_id} kept changing during provisioning",
            code=ConflictError.STALE_VERSION,
        )

    async def _create_compute(self, session: Session) -> tuple[ComputeInstance, _SessionKeys]:
        keys = _SessionKeys(server=generate_keypair(), client=generate_keypair())
        server_secret = await self._secrets.store_session_secret(
            session.session_id, SERVER_KEY_SECRET, keys.server.private_key
        )
        await self._secrets.store_session_secret(
            session.session_id, CLIENT_KEY_SECRET, keys.client.private_key
        )
        spec = ComputeSpec(
            session_id=session.session_id,
            user_id=session.user_id,
            server_public_key=keys.server.public_key,
            client_public_key=keys.client.public_key,
            client_address=CLIENT_ADDRESS,
            server_key_secret_id=server_secret,
            vpn_port=session.vpn_port,
        )

        attempts = self._lifecycle.provision_max_attempts
        for attempt in range(attempts):
            try:
                return await self._compute.create(spec), keys
            except ProviderError as exc:
                retry = exc.transient and exc.instance_ref is None and attempt + 1 < attempts
                if not retry:
                    raise
                delay = backoff_delay(
                    attempt,
                    base_delay_ms=self._lifecycle.provision_retry_base_delay_ms,
                    max_delay_ms=self._lifecycle.provision_retry_max_delay_ms,
                )
                logger.warning(
                    "Compute create for session %s failed (%s), retry %d/%d in %.2fs",
                    session.session_id,
                    exc.code,
                    attempt + 1,
                    attempts - 1,
                    delay,
                )
                await asyncio.sleep(delay)
        raise ProviderError("Compute create made no attempts", code="no_attempts")

    async def _fail(
        self, session: Session, error: ProviderError, started: float | None
    ) -> Session:
        ref = error.instance_ref
        if ref is None:
            ref = await self._find_instance(session.session_id)

        failed = await self._advance(
            session,
            SessionStatus.FAILED,
            compute_instance_ref=ref,
            error_message=error.message,
        )
        await self._discard(failed.session_id, ref)
        await self._quota.release(failed, failed=True)

        await record_event(
            self._audit,
            AuditEvent.failure(
                AuditEventType.VPN_PROVISION_FAILURE,
                f"VPN provisioning failed: {error.message}",
                session_id=failed.session_id,
                user_id=failed.user_id,
                duration_ms=(
                    int((time.monotonic() - started) * 1000) if started is not None else None
                ),
                metadata={"code": error.code, "transient": error.transient, "instanceRef": ref},
            ),
        )
        logger.error("Provisioning of session %s failed: %s", failed.session_id, error.message)
        return failed

    async def _find_instance(self, session_id: str) -> str | None:
        try:
            return await within_budget(
                self._compute.find_instance(session_id),
                self._timeouts.status_seconds,
                "compute.find_instance",
            )
        except Exception as exc:
            logger.warning("Could not look up instance for session %s: %s", session_id, exc)
            return None

    async def _discard(self, session_id: str, instance_ref: str | None) -> None:
        """Best-effort removal of an instance and the session's secrets."""
        if instance_ref:
            try:
                await within_budget(
                    self._compute.delete(instance_ref),
                    self._timeouts.deprovision_seconds,
                    "compute.delete",
                )
            except Exception as exc:
                logger.warning("Failed to delete instance %s: %s", instance_ref, exc)
        try:
            await within_budget(
                self._secrets.cleanup_session_secrets(session_id),
                self._timeouts.deprovision_seconds,
                "secrets.cleanup",
            )
        except Exception as exc:
            logger.warning("Failed to clean up secrets of session %s: %s", session_id, exc)

    async def _issue_client_config(
        self, session: Session, keys: _SessionKeys, request: ProvisionRequest
    ) -> None:
        endpoint = session.endpoint
        if endpoint is None:
            logger.warning(
                "Session %s has no public endpoint; no client config", session.session_id
            )
            return
        content = render_client_config(
            client_private_key=keys.client.private_key,
            client_address=CLIENT_ADDRESS,
            server_public_key=keys.server.public_key,
            server_endpoint=endpoint,
            allowed_ips=request.allowed_ips,
            dns_servers=request.dns_servers,
        )
        try:
            location = await run_blocking(
                self._artifacts.write_client_config, session.session_id, content
            )
            qr_location = await self._write_qr_code(session.session_id, content)
            await self._store.create_client_config(
                ClientConfig(
                    session_id=session.session_id,
                    user_id=session.user_id,
                    client_public_key=keys.client.public_key,
                    client_address=CLIENT_ADDRESS,
                    server_endpoint=endpoint,
                    allowed_ips=request.allowed_ips,
                    dns_servers=request.dns_servers,
                    artifact_location=location,
                    qr_code_location=qr_location,
                    created_at=self._clock(),
                    expires_at=session.idle_deadline,
                )
            )
        except Exception as exc:
            logger.warning("Client config for session %s not stored: %s", session.session_id, exc)
            return
        await record_event(
            self._audit,
            AuditEvent.success(
                AuditEventType.CONFIG_GENERATED,
                "Client configuration generated",
                session_id=session.session_id,
                user_id=session.user_id,
                metadata={
                    "endpoint": endpoint,
                    "allowedIps": request.allowed_ips,
                    "qrCode": qr_location is not None,
                },
            ),
        )

    async def _write_qr_code(self, session_id: str, content: str) -> str | None:
        """Render and store the config's QR code; None if that fails."""
        try:
            svg = await run_blocking(render_qr_code, content)
            return await run_blocking(self._artifacts.write_qr_code, session_id, svg)
        except Exception as exc:
            logger.warning("QR code for session %s not generated: %s", session_id, exc)
            return None
