"""Domain records for the session lifecycle."""

from vpn_orchestrator.domain.requests import ProvisionRequest
from vpn_orchestrator.domain.session import (
    ACTIVE_SET_STATUSES,
    NON_TERMINAL_STATUSES,
    REAPABLE_STATUSES,
    TERMINAL_STATUSES,
    AggregateState,
    ClientConfig,
    Session,
    SessionStatus,
    UserLease,
)

__all__ = [
    "ACTIVE_SET_STATUSES",
    "NON_TERMINAL_STATUSES",
    "REAPABLE_STATUSES",
    "TERMINAL_STATUSES",
    "AggregateState",
    "ClientConfig",
    "ProvisionRequest",
    "Session",
    "SessionStatus",
    "UserLease",
]
