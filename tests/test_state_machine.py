from __future__ import annotations

import itertools
from dataclasses import replace
from datetime import timedelta

import pytest

from vpn_orchestrator.domain.session import Session, SessionStatus
from vpn_orchestrator.errors import ConflictError
from vpn_orchestrator.lifecycle.state_machine import (
    ALLOWED_TRANSITIONS,
    TransitionApplied,
    TransitionRejected,
    claim_termination,
    record_activity,
    request_cancel,
    require_transition,
    transition_to,
)

from conftest import T0

S = SessionStatus


def _session(status: SessionStatus, **kwargs: object) -> Session:
    return Session(
        session_id="0f8fad5b-d9cb-469f-a165-70867728950e",
        user_id="alice",
        status=status,
        created_at=T0,
        last_activity_at=T0,
        version=3,
        **kwargs,
    )


@pytest.mark.parametrize("current,target", list(itertools.product(S, S)))
def test_only_table_transitions_apply(current: SessionStatus, target: SessionStatus) -> None:
    result = transition_to(_session(current), target, now=T0)

    if current == target and current.is_terminal:
        assert isinstance(result, TransitionApplied)
        assert result.noop is True
    elif target in ALLOWED_TRANSITIONS[current]:
        assert isinstance(result, TransitionApplied)
        assert result.session.status is target
        assert result.noop is False
    else:
        assert isinstance(result, TransitionRejected)
        assert result.ok is False
        with pytest.raises(ConflictError) as exc_info:
            result.raise_error()
        assert exc_info.value.code == ConflictError.INVALID_STATE
        assert exc_info.value.details["currentStatus"] == current.value


def test_transition_does_not_touch_version_or_input() -> None:
    session = _session(S.ACTIVE)
    updated = require_transition(session, S.TERMINATING, now=T0)
    assert session.status is S.ACTIVE
    assert updated.version == session.version


def test_terminated_sets_terminated_at_once() -> None:
    session = _session(S.TERMINATING)
    now = T0 + timedelta(minutes=42)
    terminated = require_transition(session, S.TERMINATED, now=now)
    assert terminated.terminated_at == now
    assert terminated.duration == timedelta(minutes=42)
    assert terminated.duration_minutes == 42

    again = transition_to(terminated, S.TERMINATED, now=now + timedelta(hours=1))
    assert isinstance(again, TransitionApplied)
    assert again.noop is True
    assert again.session is terminated


def test_failed_records_error_and_ref() -> None:
    session = _session(S.PROVISIONING)
    failed = require_transition(
        session,
        S.FAILED,
        now=T0,
        compute_instance_ref="task/1",
        error_message="x" * 5000,
    )
    assert failed.compute_instance_ref == "task/1"
    assert failed.terminated_at == T0
    assert len(failed.error_message or "") == 1000


def test_activation_sets_ref_and_activity() -> None:
    session = _session(S.PROVISIONING)
    later = T0 + timedelta(seconds=30)
    active = require_transition(
        session, S.ACTIVE, now=later, compute_instance_ref="task/1", public_ip="203.0.113.5"
    )
    assert active.compute_instance_ref == "task/1"
    assert active.last_activity_at == later
    assert active.endpoint == "203.0.113.5:51820"


def test_compute_ref_is_immutable_once_set() -> None:
    session = _session(S.PROVISIONING, compute_instance_ref="task/1")
    with pytest.raises(ConflictError):
        transition_to(session, S.ACTIVE, now=T0, compute_instance_ref="task/2")

    same = require_transition(session, S.ACTIVE, now=T0, compute_instance_ref="task/1")
    assert same.compute_instance_ref == "task/1"


def test_compute_ref_only_attached_on_activation_or_failure() -> None:
    result = transition_to(_session(S.ACTIVE), S.TERMINATING, now=T0, compute_instance_ref="t")
    assert isinstance(result, TransitionRejected)


def test_bytes_transferred_never_decreases() -> None:
    session = _session(S.TERMINATING, bytes_transferred=1000)
    lower = require_transition(session, S.TERMINATED, now=T0, bytes_transferred=10)
    assert lower.bytes_transferred == 1000

    higher = require_transition(session, S.TERMINATED, now=T0, bytes_transferred=2048)
    assert higher.bytes_transferred == 2048


def test_record_activity_wakes_idle_session() -> None:
    session = _session(S.IDLE, bytes_transferred=100)
    later = T0 + timedelta(minutes=7)
    updated = record_activity(session, now=later, bytes_transferred=50)
    assert updated.status is S.ACTIVE
    assert updated.last_activity_at == later
    assert updated.bytes_transferred == 100


def test_record_activity_keeps_latest_timestamp() -> None:
    session = _session(S.ACTIVE)
    session = replace(session, last_activity_at=T0 + timedelta(minutes=5))
    updated = record_activity(session, now=T0, bytes_transferred=10)
    assert updated.last_activity_at == T0 + timedelta(minutes=5)
    assert updated.bytes_transferred == 10


@pytest.mark.parametrize("status", [S.TERMINATING, S.TERMINATED, S.FAILED, S.PROVISIONING])
def test_record_activity_rejected_outside_live_states(status: SessionStatus) -> None:
    with pytest.raises(ConflictError):
        record_activity(_session(status), now=T0)


def test_request_cancel_only_while_provisioning() -> None:
    flagged = request_cancel(_session(S.PROVISIONING))
    assert flagged.cancel_requested is True
    assert flagged.status is S.PROVISIONING

    with pytest.raises(ConflictError):
        request_cancel(_session(S.ACTIVE))


def test_transition_stamps_status_change_time() -> None:
    later = T0 + timedelta(minutes=3)
    provisioning = require_transition(_session(S.REQUESTED), S.PROVISIONING, now=later)
    assert provisioning.status_changed_at == later
    assert provisioning.in_status_for(later + timedelta(seconds=30)) == timedelta(seconds=30)

    # Never transitioned: measured from creation.
    assert _session(S.REQUESTED).in_status_for(later) == timedelta(minutes=3)


def test_claim_termination_restarts_cleanup_clock() -> None:
    later = T0 + timedelta(minutes=5)
    claimed = claim_termination(_session(S.TERMINATING, status_changed_at=T0), now=later)
    assert claimed.status is S.TERMINATING
    assert claimed.status_changed_at == later

    with pytest.raises(ConflictError):
        claim_termination(_session(S.ACTIVE), now=later)
