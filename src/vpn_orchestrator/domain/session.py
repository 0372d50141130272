"""Session, aggregate and client-configuration records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from vpn_orchestrator.utils.time import to_iso

DEFAULT_VPN_PORT = 51820
DEFAULT_IDLE_TIMEOUT_MINUTES = 10
MAX_ERROR_MESSAGE_LENGTH = 1000
AGGREGATE_STATE_ID = "current"


class SessionStatus(str, Enum):
    REQUESTED = "requested"
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    IDLE = "idle"
    TERMINATING = "terminating"
    TERMINATED = "terminated"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def counts_against_quota(self) -> bool:
        return self in ACTIVE_SET_STATUSES


TERMINAL_STATUSES = frozenset({SessionStatus.TERMINATED, SessionStatus.FAILED})

# Statuses counted by AggregateState.active_session_count.
ACTIVE_SET_STATUSES = frozenset(
    {
        SessionStatus.PROVISIONING,
        SessionStatus.ACTIVE,
        SessionStatus.IDLE,
        SessionStatus.TERMINATING,
    }
)

NON_TERMINAL_STATUSES = frozenset(SessionStatus) - TERMINAL_STATUSES

REAPABLE_STATUSES = frozenset({SessionStatus.ACTIVE, SessionStatus.IDLE})


@dataclass(frozen=True)
class Session:
    """One lifecycle instance of a provisioned VPN compute resource.

    Instances are immutable; use the functions in
    ``vpn_orchestrator.lifecycle.state_machine`` to derive updated copies.
    """

    session_id: str
    user_id: str
    status: SessionStatus
    created_at: datetime
    last_activity_at: datetime
    compute_instance_ref: str | None = None
    terminated_at: datetime | None = None
    bytes_transferred: int = 0
    idle_timeout_minutes: int = DEFAULT_IDLE_TIMEOUT_MINUTES
    public_ip: str | None = None
    vpn_port: int = DEFAULT_VPN_PORT
    error_message: str | None = None
    cancel_requested: bool = False
    status_changed_at: datetime | None = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_active(self) -> bool:
        return self.status.counts_against_quota

    @property
    def idle_timeout(self) -> timedelta:
        return timedelta(minutes=self.idle_timeout_minutes)

    @property
    def idle_deadline(self) -> datetime:
        return self.last_activity_at + self.idle_timeout

    @property
    def duration(self) -> timedelta | None:
        if self.terminated_at is None:
            return None
        return self.terminated_at - self.created_at

    @property
    def duration_minutes(self) -> int | None:
        duration = self.duration
        if duration is None:
            return None
        return round(duration.total_seconds() / 60)

    @property
    def endpoint(self) -> str | None:
        if not self.public_ip:
            return None
        return f"{self.public_ip}:{self.vpn_port}"

    def idle_for(self, now: datetime) -> timedelta:
        return now - self.last_activity_at

    def in_status_for(self, now: datetime) -> timedelta:
        return now - (self.status_changed_at or self.created_at)

    def to_dict(self) -> dict[str, object]:
        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "status": self.status.value,
            "computeInstanceRef": self.compute_instance_ref,
            "endpoint": (
                {"ipAddress": self.public_ip, "port": self.vpn_port}
                if self.public_ip
                else None
            ),
            "createdAt": to_iso(self.created_at),
            "lastActivityAt": to_iso(self.last_activity_at),
            "terminatedAt": to_iso(self.terminated_at),
            "idleTimeoutAt": to_iso(self.idle_deadline),
            "durationMinutes": self.duration_minutes,
            "bytesTransferred": self.bytes_transferred,
            "errorMessage": self.error_message,
        }


@dataclass(frozen=True)
class AggregateState:
    """Process-wide capacity counters, updated only by compare-and-swap."""

    active_session_count: int = 0
    total_bytes_transferred: int = 0
    total_provisioning_attempts: int = 0
    total_provisioning_failures: int = 0
    updated_at: datetime | None = None
    version: int = 0
    state_id: str = AGGREGATE_STATE_ID

    def utilization(self, global_cap: int) -> float:
        if global_cap <= 0:
            return 100.0
        return (self.active_session_count / global_cap) * 100

    @property
    def success_rate(self) -> float:
        if self.total_provisioning_attempts == 0:
            return 100.0
        successes = self.total_provisioning_attempts - self.total_provisioning_failures
        return (successes / self.total_provisioning_attempts) * 100

    def to_dict(self, global_cap: int | None = None) -> dict[str, object]:
        payload: dict[str, object] = {
            "activeSessions": self.active_session_count,
            "totalBytesTransferred": self.total_bytes_transferred,
            "totalProvisioningAttempts": self.total_provisioning_attempts,
            "totalProvisioningFailures": self.total_provisioning_failures,
            "successRate": self.success_rate,
            "lastUpdated": to_iso(self.updated_at),
        }
        if global_cap is not None:
            payload["maxCapacity"] = global_cap
            payload["quotaLimitReached"] = self.active_session_count >= global_cap
            payload["utilization"] = self.utilization(global_cap)
        return payload


@dataclass(frozen=True)
class UserLease:
    """Holds a user's single admission slot until the session is released."""

    user_id: str
    session_id: str
    created_at: datetime


@dataclass(frozen=True)
class ClientConfig:
    session_id: str
    user_id: str
    client_public_key: str
    client_address: str
    server_endpoint: str
    created_at: datetime
    expires_at: datetime
    allowed_ips: str = "0.0.0.0/0"
    dns_servers: tuple[str, ...] = field(default_factory=tuple)
    artifact_location: str | None = None
    qr_code_location: str | None = None
