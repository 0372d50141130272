from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from vpn_orchestrator.app import build_app_context
from vpn_orchestrator.audit.models import AuditEventType, AuditOutcome
from vpn_orchestrator.crypto.wireguard import public_key_for
from vpn_orchestrator.domain.session import SessionStatus
from vpn_orchestrator.errors import (
    AdmissionError,
    ConflictError,
    InternalError,
    ProviderError,
    ValidationError,
)

from conftest import FakeComputeProvisioner, FakeSecretManager, make_settings


def _event_types(audit, session_id: str) -> list[AuditEventType]:
    return [event.event_type for event in audit.query(session_id=session_id)]


@pytest.mark.asyncio
async def test_provision_activates_session(harness) -> None:
    session = await harness.orchestrator.request_provision("alice")

    assert session.status is SessionStatus.ACTIVE
    assert session.user_id == "alice"
    assert session.compute_instance_ref in harness.compute.instances
    assert session.endpoint == "203.0.113.10:51820"
    assert session.idle_timeout_minutes == 10
    assert harness.store.get_session(session.session_id) == session

    state = await harness.orchestrator.capacity()
    assert state.active_session_count == 1
    assert state.total_provisioning_attempts == 1


@pytest.mark.asyncio
async def test_provision_stores_keys_as_secrets(harness) -> None:
    session = await harness.orchestrator.request_provision("alice")

    stored = harness.secrets.secrets[session.session_id]
    assert set(stored) == {"server-private-key", "client-private-key"}
    spec = harness.compute.created[0]
    assert spec.session_id == session.session_id
    assert spec.server_key_secret_id == f"vpn/{session.session_id}/server-private-key"
    assert spec.server_public_key == public_key_for(stored["server-private-key"])
    assert spec.client_public_key == public_key_for(stored["client-private-key"])


@pytest.mark.asyncio
async def test_provision_issues_client_config(harness) -> None:
    session = await harness.orchestrator.request_provision(
        "alice", {"allowed_ips": "10.0.0.0/8", "dns_servers": ["1.1.1.1"]}
    )

    config = harness.store.get_client_config(session.session_id)
    assert config.server_endpoint == "203.0.113.10:51820"
    assert config.expires_at == session.idle_deadline
    content = Path(config.artifact_location).read_text()
    assert "[Peer]" in content
    assert "AllowedIPs = 10.0.0.0/8" in content
    assert "DNS = 1.1.1.1" in content
    assert harness.secrets.secrets[session.session_id]["client-private-key"] in content
    qr = Path(config.qr_code_location)
    assert qr.parent == Path(config.artifact_location).parent
    assert "<svg" in qr.read_text()
    assert qr.stat().st_mode & 0o777 == 0o600

    assert _event_types(harness.audit, session.session_id) == [
        AuditEventType.VPN_PROVISION_START,
        AuditEventType.VPN_PROVISION_SUCCESS,
        AuditEventType.CONFIG_GENERATED,
    ]


@pytest.mark.asyncio
async def test_qr_code_failure_still_issues_client_config(harness, monkeypatch) -> None:
    def broken(content):
        raise ValueError("data overflow")

    monkeypatch.setattr("vpn_orchestrator.lifecycle.provision.render_qr_code", broken)
    session = await harness.orchestrator.request_provision("alice")

    bundle = await harness.orchestrator.get_client_config(session.session_id, "alice")
    assert bundle.content.startswith("[Interface]")
    assert bundle.qr_code is None
    [event] = harness.audit.query(event_type=AuditEventType.CONFIG_GENERATED)
    assert event.metadata["qrCode"] is False


@pytest.mark.asyncio
async def test_provision_without_public_ip_skips_client_config(harness) -> None:
    harness.compute.public_ip = None

    session = await harness.orchestrator.request_provision("alice")

    assert session.status is SessionStatus.ACTIVE
    assert harness.store.get_client_config(session.session_id) is None
    assert AuditEventType.CONFIG_GENERATED not in _event_types(harness.audit, session.session_id)


@pytest.mark.asyncio
async def test_custom_idle_timeout(harness) -> None:
    session = await harness.orchestrator.request_provision("alice", {"idle_timeout_minutes": 30})
    assert session.idle_timeout_minutes == 30


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"idle_timeout_minutes": 0},
        {"idle_timeout_minutes": 1441},
        {"allowed_ips": "not-a-network"},
        {"dns_servers": ["dns.example.com"]},
        {"unexpected": True},
    ],
)
async def test_invalid_request_creates_nothing(harness, payload) -> None:
    with pytest.raises(ValidationError):
        await harness.orchestrator.request_provision("alice", payload)

    assert harness.store.query_sessions() == []
    assert harness.compute.created == []
    assert (await harness.orchestrator.capacity()).active_session_count == 0


@pytest.mark.asyncio
async def test_second_provision_for_same_user_is_rejected(harness) -> None:
    await harness.orchestrator.request_provision("alice")

    with pytest.raises(AdmissionError) as exc_info:
        await harness.orchestrator.request_provision("alice")

    assert exc_info.value.reason == AdmissionError.DUPLICATE_SESSION
    assert len(harness.store.query_sessions(user_id="alice")) == 1
    assert len(harness.compute.created) == 1


@pytest.mark.asyncio
async def test_provider_failure_marks_session_failed(harness) -> None:
    harness.compute.create_errors = [ProviderError("no capacity", code="RunTaskFailure")]

    with pytest.raises(ProviderError) as exc_info:
        await harness.orchestrator.request_provision("alice")
    assert exc_info.value.code == "RunTaskFailure"

    [session] = harness.store.query_sessions(user_id="alice")
    assert session.status is SessionStatus.FAILED
    assert "no capacity" in session.error_message
    assert session.terminated_at is not None
    assert harness.secrets.secrets == {}
    assert harness.secrets.cleanup_calls == [session.session_id]

    state = await harness.orchestrator.capacity()
    assert state.active_session_count == 0
    assert state.total_provisioning_failures == 1

    [failure] = harness.audit.query(event_type=AuditEventType.VPN_PROVISION_FAILURE)
    assert failure.outcome is AuditOutcome.FAILURE
    assert failure.metadata["code"] == "RunTaskFailure"


@pytest.mark.asyncio
async def test_failure_after_instance_started_records_and_deletes_it(harness) -> None:
    ref = "arn:aws:ecs:us-east-1:111111111111:task/vpn-sessions/abc"
    harness.compute.create_errors = [
        ProviderError("stopped early", code="TaskStopped", instance_ref=ref)
    ]

    with pytest.raises(ProviderError):
        await harness.orchestrator.request_provision("alice")

    [session] = harness.store.query_sessions(user_id="alice")
    assert session.status is SessionStatus.FAILED
    assert session.compute_instance_ref == ref
    assert harness.compute.deleted == [ref]


@pytest.mark.asyncio
async def test_transient_provider_errors_are_retried(harness) -> None:
    harness.compute.create_errors = [
        ProviderError("throttled", code="ThrottlingException", transient=True),
        ProviderError("throttled", code="ThrottlingException", transient=True),
    ]

    session = await harness.orchestrator.request_provision("alice")

    assert session.status is SessionStatus.ACTIVE
    assert len(harness.compute.created) == 3


@pytest.mark.asyncio
async def test_user_can_provision_again_after_failure(harness) -> None:
    harness.compute.create_errors = [ProviderError("boom", code="RunTaskFailure")]
    with pytest.raises(ProviderError):
        await harness.orchestrator.request_provision("alice")

    session = await harness.orchestrator.request_provision("alice")
    assert session.status is SessionStatus.ACTIVE


@pytest.mark.asyncio
async def test_provision_budget_exceeded_fails_session(tmp_path, clock) -> None:
    compute = FakeComputeProvisioner()
    compute.create_gate = asyncio.Event()
    settings = make_settings(tmp_path, timeouts={"provision_seconds": 0.05})
    ctx = build_app_context(settings, compute=compute, secrets=FakeSecretManager(), clock=clock)
    try:
        with pytest.raises(ProviderError) as exc_info:
            await ctx.orchestrator.request_provision("alice")
        assert exc_info.value.code == ProviderError.TIMEOUT

        [session] = ctx.store.query_sessions(user_id="alice")
        assert session.status is SessionStatus.FAILED
        assert (await ctx.orchestrator.capacity()).active_session_count == 0
    finally:
        ctx.close()


@pytest.mark.asyncio
async def test_stop_during_provisioning_tears_down_after_activation(harness) -> None:
    harness.compute.create_gate = asyncio.Event()
    task = asyncio.create_task(harness.orchestrator.request_provision("alice"))
    while not harness.compute.created:
        await asyncio.sleep(0.01)

    [pending] = harness.store.query_sessions(user_id="alice")
    assert pending.status is SessionStatus.PROVISIONING

    with pytest.raises(ConflictError):
        await harness.orchestrator.request_deprovision(pending.session_id, "alice")

    flagged = await harness.orchestrator.request_deprovision(
        pending.session_id, "alice", force=True
    )
    assert flagged.status is SessionStatus.PROVISIONING
    assert flagged.cancel_requested is True

    harness.compute.create_gate.set()
    result = await task

    assert result.status is SessionStatus.TERMINATED
    assert result.compute_instance_ref is not None
    assert harness.compute.deleted == [result.compute_instance_ref]
    assert (await harness.orchestrator.capacity()).active_session_count == 0


@pytest.mark.asyncio
async def test_failed_create_without_a_row_releases_the_slot(harness, monkeypatch) -> None:
    def refuse(session):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(harness.store, "create_session", refuse)
    with pytest.raises(InternalError):
        await harness.orchestrator.request_provision("alice")

    state = await harness.orchestrator.capacity()
    assert state.active_session_count == 0
    assert state.total_provisioning_failures == 1
    assert harness.store.get_lease("alice") is None


@pytest.mark.asyncio
async def test_create_that_landed_despite_error_is_failed_by_reaper(harness, monkeypatch) -> None:
    original = harness.store.create_session

    def lands_then_fails(session):
        original(session)
        raise RuntimeError("connection reset after commit")

    monkeypatch.setattr(harness.store, "create_session", lands_then_fails)
    with pytest.raises(InternalError):
        await harness.orchestrator.request_provision("alice")
    monkeypatch.setattr(harness.store, "create_session", original)

    [orphan] = harness.store.query_sessions(user_id="alice")
    assert orphan.status is SessionStatus.REQUESTED
    assert harness.store.get_lease("alice").session_id == orphan.session_id
    assert (await harness.orchestrator.capacity()).active_session_count == 1

    harness.clock.advance(minutes=5)
    report = await harness.reaper.run_once()

    assert report.recovered == [orphan.session_id]
    assert harness.store.get_session(orphan.session_id).status is SessionStatus.FAILED
    state = await harness.orchestrator.capacity()
    assert state.active_session_count == 0
    assert state.total_provisioning_failures == 1
    session = await harness.orchestrator.request_provision("alice")
    assert session.status is SessionStatus.ACTIVE
