from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from vpn_orchestrator.app import AppContext, build_app_context
from vpn_orchestrator.compute.base import ComputeInstance, ComputeSpec, ComputeStatus
from vpn_orchestrator.config import Settings
from vpn_orchestrator.store.db import SqliteSessionStore
from vpn_orchestrator.store.gateway import AsyncSessionStore

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeComputeProvisioner:
    def __init__(self) -> None:
        self.public_ip: str | None = "203.0.113.10"
        self.created: list[ComputeSpec] = []
        self.deleted: list[str] = []
        self.instances: dict[str, ComputeStatus] = {}
        self.by_session: dict[str, str] = {}
        self.logs: dict[str, str] = {}
        self.create_errors: list[Exception] = []
        self.create_gate: asyncio.Event | None = None
        self.delete_error: Exception | None = None
        self.logs_error: Exception | None = None
        self.status_error: Exception | None = None

    async def create(self, spec: ComputeSpec) -> ComputeInstance:
        self.created.append(spec)
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.create_errors:
            raise self.create_errors.pop(0)
        ref = f"arn:aws:ecs:us-east-1:111111111111:task/vpn-sessions/{uuid.uuid4().hex}"
        self.instances[ref] = ComputeStatus.RUNNING
        self.by_session[spec.session_id] = ref
        return ComputeInstance(instance_ref=ref, public_ip=self.public_ip, port=spec.vpn_port)

    async def delete(self, instance_ref: str) -> None:
        self.deleted.append(instance_ref)
        if self.delete_error is not None:
            raise self.delete_error
        self.instances.pop(instance_ref, None)

    async def find_instance(self, session_id: str) -> str | None:
        return self.by_session.get(session_id)

    async def get_logs(self, instance_ref: str) -> str:
        if self.logs_error is not None:
            raise self.logs_error
        return self.logs.get(instance_ref, "")

    async def get_status(self, instance_ref: str) -> ComputeStatus:
        if self.status_error is not None:
            raise self.status_error
        return self.instances.get(instance_ref, ComputeStatus.NOT_FOUND)


class FakeSecretManager:
    def __init__(self) -> None:
        self.secrets: dict[str, dict[str, str]] = {}
        self.cleanup_calls: list[str] = []
        self.cleanup_error: Exception | None = None

    async def store_session_secret(self, session_id: str, name: str, value: str) -> str:
        self.secrets.setdefault(session_id, {})[name] = value
        return f"vpn/{session_id}/{name}"

    async def cleanup_session_secrets(self, session_id: str) -> int:
        self.cleanup_calls.append(session_id)
        if self.cleanup_error is not None:
            raise self.cleanup_error
        return len(self.secrets.pop(session_id, {}))


def make_settings(tmp_path, **overrides: object) -> Settings:
    data: dict[str, object] = {
        "quota": {
            "global_session_cap": 3,
            "admission_base_delay_ms": 1,
            "admission_max_delay_ms": 5,
        },
        "lifecycle": {
            "provision_retry_base_delay_ms": 0,
            "provision_retry_max_delay_ms": 0,
            "reaper_interval_seconds": 0.1,
        },
        "storage": {
            "sqlite_path": str(tmp_path / "orchestrator.sqlite"),
            "config_artifact_path": str(tmp_path / "client_configs"),
        },
    }
    for section, values in overrides.items():
        merged = dict(data.get(section, {}))  # type: ignore[arg-type]
        merged.update(values)  # type: ignore[arg-type]
        data[section] = merged
    return Settings.model_validate(data)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def compute() -> FakeComputeProvisioner:
    return FakeComputeProvisioner()


@pytest.fixture
def secrets() -> FakeSecretManager:
    return FakeSecretManager()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def ctx(settings, compute, secrets, clock):
    app = build_app_context(settings, compute=compute, secrets=secrets, clock=clock)
    yield app
    app.close()


@pytest.fixture
def harness(ctx: AppContext, compute, secrets, clock) -> SimpleNamespace:
    """The wired context plus its fakes, for workflow-level tests."""
    return SimpleNamespace(
        ctx=ctx,
        orchestrator=ctx.orchestrator,
        store=ctx.store,
        audit=ctx.audit,
        quota=ctx.quota,
        reaper=ctx.reaper,
        compute=compute,
        secrets=secrets,
        clock=clock,
    )


@pytest.fixture
def sqlite_store(tmp_path):
    store = SqliteSessionStore(str(tmp_path / "sessions.sqlite"))
    yield store
    store.close()


@pytest.fixture
def gateway(sqlite_store) -> AsyncSessionStore:
    return AsyncSessionStore(sqlite_store, timeout_seconds=5.0)
