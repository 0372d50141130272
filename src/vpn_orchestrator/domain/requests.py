"""Validated request models accepted by the orchestrator API."""

from __future__ import annotations

import ipaddress
import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from vpn_orchestrator.errors import ValidationError

DEFAULT_ALLOWED_IPS = "0.0.0.0/0"
DEFAULT_DNS_SERVERS = ("8.8.8.8", "8.8.4.4")


class ProvisionRequest(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    idle_timeout_minutes: int | None = Field(default=None, ge=1, le=1440)
    allowed_ips: str = Field(default=DEFAULT_ALLOWED_IPS)
    dns_servers: tuple[str, ...] = Field(default=DEFAULT_DNS_SERVERS, max_length=4)

    @field_validator("allowed_ips")
    @classmethod
    def _validate_allowed_ips(cls, value: str) -> str:
        networks = [item.strip() for item in value.split(",") if item.strip()]
        if not networks:
            raise ValueError("allowed_ips must contain at least one network")
        for network in networks:
            ipaddress.ip_network(network, strict=False)
        return ", ".join(networks)

    @field_validator("dns_servers")
    @classmethod
    def _validate_dns_servers(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        for server in value:
            ipaddress.ip_address(server)
        return value

    @classmethod
    def parse(cls, data: "ProvisionRequest | dict[str, Any] | None") -> "ProvisionRequest":
        """Build a request from loose input, mapping failures to ``ValidationError``."""
        if isinstance(data, ProvisionRequest):
            return data
        try:
            return cls.model_validate(data or {})
        except PydanticValidationError as exc:
            raise ValidationError(
                f"Invalid provision request: {exc.error_count()} error(s)",
                details={"errors": [err["msg"] for err in exc.errors()]},
            ) from exc


def validate_session_id(session_id: str) -> str:
    try:
        return str(uuid.UUID(str(session_id)))
    except (TypeError, ValueError) as exc:
        raise ValidationError("Invalid or missing sessionId") from exc


def validate_user_id(user_id: str) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError("userId is required")
    if len(user_id) > 256:
        raise ValidationError("userId must be at most 256 characters")
    return user_id


def validate_page(limit: int | None, offset: int) -> tuple[int | None, int]:
    if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
        raise ValidationError("limit must be a positive integer")
    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
        raise ValidationError("offset must be a non-negative integer")
    return limit, offset
