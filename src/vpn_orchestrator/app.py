"""Application context assembly."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache

from vpn_orchestrator.audit.artifacts import ConfigArtifactStore
from vpn_orchestrator.audit.db import SqliteAuditLog
from vpn_orchestrator.compute.base import ComputeProvisioner
from vpn_orchestrator.compute.ecs import EcsComputeProvisioner
from vpn_orchestrator.config import Settings, load_settings
from vpn_orchestrator.lifecycle.deprovision import DeprovisionWorkflow
from vpn_orchestrator.lifecycle.provision import ProvisionWorkflow
from vpn_orchestrator.lifecycle.quota import QuotaGuard
from vpn_orchestrator.lifecycle.reaper import IdleReaper
from vpn_orchestrator.lifecycle.service import SessionOrchestrator
from vpn_orchestrator.secrets.aws import AwsSecretManager
from vpn_orchestrator.secrets.base import SecretManager
from vpn_orchestrator.store.db import SqliteSessionStore
from vpn_orchestrator.store.gateway import AsyncSessionStore
from vpn_orchestrator.utils.time import utc_now


@dataclass
class AppContext:
    """Process-wide dependency container, built once at startup."""

    settings: Settings
    store: SqliteSessionStore
    audit: SqliteAuditLog
    artifacts: ConfigArtifactStore
    quota: QuotaGuard
    orchestrator: SessionOrchestrator
    reaper: IdleReaper

    def close(self) -> None:
        self.store.close()
        self.audit.close()


def build_app_context(
    settings: Settings,
    *,
    compute: ComputeProvisioner | None = None,
    secrets: SecretManager | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> AppContext:
    """Wire the orchestrator. ``compute``/``secrets`` default to the AWS adapters."""
    store = SqliteSessionStore(settings.storage.sqlite_path, wal=settings.storage.sqlite_wal)
    audit = SqliteAuditLog(settings.storage.sqlite_path, wal=settings.storage.sqlite_wal)
    artifacts = ConfigArtifactStore(settings.storage.config_artifact_path)
    compute = compute or EcsComputeProvisioner(settings)
    secrets = secrets or AwsSecretManager(settings)

    gateway = AsyncSessionStore(store, timeout_seconds=settings.timeouts.store_seconds)
    quota = QuotaGuard(
        gateway,
        settings.quota,
        lease_grace_seconds=2 * settings.timeouts.provision_seconds,
        clock=clock,
    )
    deprovision = DeprovisionWorkflow(
        store=gateway,
        quota=quota,
        compute=compute,
        secrets=secrets,
        audit=audit,
        artifacts=artifacts,
        timeouts=settings.timeouts,
        clock=clock,
    )
    provision = ProvisionWorkflow(
        store=gateway,
        quota=quota,
        compute=compute,
        secrets=secrets,
        audit=audit,
        artifacts=artifacts,
        deprovision=deprovision,
        settings=settings,
        clock=clock,
    )
    orchestrator = SessionOrchestrator(
        store=gateway,
        quota=quota,
        provision=provision,
        deprovision=deprovision,
        compute=compute,
        artifacts=artifacts,
        timeouts=settings.timeouts,
        clock=clock,
    )
    reaper = IdleReaper(
        store=gateway,
        provision=provision,
        deprovision=deprovision,
        quota=quota,
        audit=audit,
        lifecycle=settings.lifecycle,
        timeouts=settings.timeouts,
        audit_settings=settings.audit,
        clock=clock,
    )
    return AppContext(
        settings=settings,
        store=store,
        audit=audit,
        artifacts=artifacts,
        quota=quota,
        orchestrator=orchestrator,
        reaper=reaper,
    )


@lru_cache(maxsize=1)
def get_app_context() -> AppContext:
    """Cached ``AppContext`` built from ``load_settings()``."""
    return build_app_context(load_settings())
