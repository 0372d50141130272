"""Compute provisioner contract."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol


class ComputeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    STOPPED = "stopped"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"

    @property
    def is_healthy(self) -> bool:
        return self is ComputeStatus.RUNNING


@dataclass(frozen=True)
class ComputeSpec:
    session_id: str
    user_id: str
    server_public_key: str
    client_public_key: str
    client_address: str
    server_key_secret_id: str
    vpn_port: int
    environment: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ComputeInstance:
    instance_ref: str
    public_ip: str | None
    port: int


class ComputeProvisioner(Protocol):
    async def create(self, spec: ComputeSpec) -> ComputeInstance:
        """Start an instance and wait until it serves traffic.

        Raises ``ProviderError``; ``instance_ref`` is set when an instance was
        started before the failure.
        """
        ...

    async def delete(self, instance_ref: str) -> None:
        """Stop an instance. Deleting an absent instance succeeds."""
        ...

    async def find_instance(self, session_id: str) -> str | None:
        """Return the instance started for ``session_id``, if any."""
        ...

    async def get_logs(self, instance_ref: str) -> str: ...

    async def get_status(self, instance_ref: str) -> ComputeStatus: ...
