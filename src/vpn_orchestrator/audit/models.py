"""Data models for operational audit events."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from uuid import uuid4

from vpn_orchestrator.utils.time import utc_now_iso


class AuditEventType(str, Enum):
    VPN_PROVISION_START = "vpn.provision.start"
    VPN_PROVISION_SUCCESS = "vpn.provision.success"
    VPN_PROVISION_FAILURE = "vpn.provision.failure"
    VPN_STOP_START = "vpn.stop.start"
    VPN_STOP_SUCCESS = "vpn.stop.success"
    VPN_STOP_FAILURE = "vpn.stop.failure"
    VPN_IDLE_DETECTED = "vpn.idle.detected"
    VPN_AUTO_SHUTDOWN = "vpn.auto.shutdown"
    CONFIG_GENERATED = "config.generated"


class AuditOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


MAX_MESSAGE_LENGTH = 2000


@dataclass(frozen=True)
class AuditEvent:
    event_type: AuditEventType
    outcome: AuditOutcome
    message: str
    session_id: str | None = None
    user_id: str | None = None
    duration_ms: int | None = None
    metadata: dict[str, object] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: str = field(default_factory=utc_now_iso)

    @classmethod
    def success(cls, event_type: AuditEventType, message: str, **kwargs: object) -> "AuditEvent":
        return cls(event_type=event_type, outcome=AuditOutcome.SUCCESS, message=message, **kwargs)

    @classmethod
    def failure(cls, event_type: AuditEventType, message: str, **kwargs: object) -> "AuditEvent":
        return cls(event_type=event_type, outcome=AuditOutcome.FAILURE, message=message, **kwargs)
